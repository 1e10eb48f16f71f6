"""
Block checksums

btrfs stores the checksum of everything after the 32 byte checksum
field. The algorithm is selected by the superblock, not the block.
"""

import hashlib
import struct
from typing import Optional

import crc32c
import xxhash

from .. import constants
from ..exceptions import UnknownChecksumError


def calculate_checksum(data: bytes, csum_type: int) -> Optional[bytes]:
    """
    Compute a checksum padded to the 32 byte on-disk field.

    Args:
        data: Checksummed bytes (block or superblock without its csum field)
        csum_type: One of the CSUM_TYPE_* codes

    Returns:
        32 byte checksum field, or None when the algorithm can't be verified
    """
    if data is None:
        return None

    data = bytes(data)
    if csum_type == constants.CSUM_TYPE_CRC32:
        return struct.pack('<I', crc32c.crc32c(data)).ljust(constants.CSUM_FIELD_SIZE, b'\0')
    elif csum_type == constants.CSUM_TYPE_XXHASH:
        return struct.pack('<Q', xxhash.xxh64(data).intdigest()).ljust(constants.CSUM_FIELD_SIZE, b'\0')
    elif csum_type == constants.CSUM_TYPE_SHA256:
        return hashlib.sha256(data).digest()
    elif csum_type == constants.CSUM_TYPE_BLAKE2:
        # BLAKE2b-256 support is not implemented, treated as unverifiable
        return None

    raise UnknownChecksumError(f"Unknown checksum ({csum_type})!")


def checksum_matches(checksum: Optional[bytes], expected: Optional[bytes]) -> bool:
    """Compare only over the expected checksum's length"""
    if not checksum or not expected:
        return False
    return bytes(checksum[:len(expected)]) == bytes(expected)


def strip_checksum(raw: bytes) -> bytes:
    """Checksum field without its trailing padding"""
    csum = bytes(raw).rstrip(b'\0 ')
    if not csum:
        csum = b'\0\0\0\0'
    return csum


def guess_checksum_type(csum: bytes) -> int:
    """Guess the algorithm from the stored checksum width when no superblock is known"""
    if len(csum) <= 4:
        return constants.CSUM_TYPE_CRC32
    elif len(csum) <= 8:
        return constants.CSUM_TYPE_XXHASH
    # Either SHA256 or BLAKE2, only the former can be verified
    return constants.CSUM_TYPE_SHA256
