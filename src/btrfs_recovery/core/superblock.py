"""
btrfs-recovery - Superblock

The superblock is the filesystem context every block is checked against:
fsid, generation ceiling, sector/node size and checksum algorithm.
"""

import struct
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .. import constants
from ..utils import checksum_info, encode_data, format_checksum
from .checksum import calculate_checksum, checksum_matches, strip_checksum
from .chunk_tree import ChunkData, DevItemData, read_chunk, read_dev_item
from .reader import ByteReader
from .structures import Key, KEY_FORMAT

SUPERBLOCK_FORMAT = '<32s16sQQ8sQQQQQQQQQIIIIIQQQQHBBB98s256sQQ16s224s2048s'
ROOT_BACKUP_FORMAT = '<QQQQQQQQQQQQQQQ32sBBBBBB10s'
ROOT_BACKUP_SIZE = struct.calcsize(ROOT_BACKUP_FORMAT)


@dataclass
class RootBackup:
    tree_root: int
    tree_root_gen: int
    chunk_root: int
    chunk_root_gen: int
    extent_root: int
    extent_root_gen: int
    fs_root: int
    fs_root_gen: int
    dev_root: int
    dev_root_gen: int
    csum_root: int
    csum_root_gen: int
    total_bytes: int
    bytes_used: int
    num_devices: int
    unused_64: bytes
    tree_root_level: int
    chunk_root_level: int
    extent_root_level: int
    fs_root_level: int
    dev_root_level: int
    csum_root_level: int
    unused_8: bytes


@dataclass
class SuperblockData:
    csum_field: bytes
    fsid: bytes
    bytenr: int
    flags: int
    magic: bytes
    generation: int
    root: int
    chunk_root: int
    log_root: int
    log_root_transid: int
    total_bytes: int
    bytes_used: int
    root_dir_objectid: int
    num_devices: int
    sectorsize: int
    nodesize: int
    unused_leafsize: int
    stripesize: int
    sys_chunk_array_size: int
    chunk_root_generation: int
    compat_flags: int
    compat_ro_flags: int
    incompat_flags: int
    csum_type: int
    root_level: int
    chunk_root_level: int
    log_root_level: int
    dev_item: DevItemData
    label: str
    cache_generation: int
    uuid_tree_generation: int
    metadata_uuid: bytes
    reserved: bytes
    sys_chunk_array: bytes
    super_roots: List[RootBackup] = field(default_factory=list)


def parse_superblock_data(buffer: bytes) -> SuperblockData:
    size = struct.calcsize(SUPERBLOCK_FORMAT)
    data = bytes(buffer).ljust(size + constants.NUM_BACKUP_ROOTS * ROOT_BACKUP_SIZE, b'\0')
    values = list(struct.unpack_from(SUPERBLOCK_FORMAT, data))
    values[27] = read_dev_item(ByteReader(values[27]))
    values[28] = values[28].split(b'\0', 1)[0].decode('utf-8', errors='replace')

    super_roots = []
    for i in range(constants.NUM_BACKUP_ROOTS):
        offset = size + i * ROOT_BACKUP_SIZE
        super_roots.append(RootBackup(*struct.unpack_from(ROOT_BACKUP_FORMAT, data, offset)))

    return SuperblockData(*values, super_roots=super_roots)


class Superblock:
    """Parsed superblock, unknown attributes are looked up on the decoded data"""

    def __init__(self, buffer: bytes):
        self.buffer = bytes(buffer)
        self.data = parse_superblock_data(self.buffer)

    def __getattr__(self, name):
        if name == 'data':
            raise AttributeError(name)
        return getattr(self.data, name)

    @property
    def csum(self) -> bytes:
        return strip_checksum(self.data.csum_field)

    def get_checksum(self) -> Optional[bytes]:
        return calculate_checksum(self.buffer[constants.CSUM_FIELD_SIZE:constants.SUPERBLOCK_SIZE],
                                  self.data.csum_type)

    def is_valid(self) -> bool:
        if self.data.magic != constants.SUPERBLOCK_MAGIC:
            return False
        return checksum_matches(self.get_checksum(), self.csum)

    def sys_chunks(self) -> List[Tuple[Key, ChunkData]]:
        """Decode the system chunk array (key, chunk) pairs"""
        reader = ByteReader(self.data.sys_chunk_array[:self.data.sys_chunk_array_size])
        chunks = []
        while not reader.eof():
            key = Key(*reader.unpack(KEY_FORMAT))
            chunks.append((key, read_chunk(reader)))
        return chunks

    def describe(self) -> str:
        data = self.data
        info = checksum_info(self.get_checksum(), self.csum, data.csum_type)
        lines = [
            f"Superblock: {data.bytenr}",
            f"FSID: {data.fsid.hex()}",
            f"Checksum: {format_checksum(self.csum)} ({info})",
            f"Magic: {data.magic.decode('ascii', errors='replace')}",
            f"Label: {data.label}",
            f"Flags: {data.flags}",
            f"Generation: {data.generation}",
            f"Root: {data.root}",
            f"ChunkRoot: {data.chunk_root}",
            f"Devices: {data.num_devices}",
            f"Sectorsize: {data.sectorsize}",
            f"Nodesize: {data.nodesize}",
            f"DEV UUID: {data.dev_item.uuid.hex()}",
            f"DEV FSID: {data.dev_item.fsid.hex()}",
        ]
        return '\n'.join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return encode_data(asdict(self.data))
