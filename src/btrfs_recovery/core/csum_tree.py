"""
btrfs-recovery - Checksum tree items

An EXTENT_CSUM item is a packed array of data checksums, one per sector,
starting at the logical address in key.offset.
"""

from dataclasses import dataclass
from typing import Dict, List

from .. import constants
from .checksum import calculate_checksum


@dataclass
class CsumData:
    csums: List[bytes]


def data_csum_size(csum_type: int) -> int:
    return constants.DATA_CSUM_SIZES.get(csum_type, 4)


def parse_csum_item(item, data: bytes, csum_type: int = constants.CSUM_TYPE_CRC32):
    width = data_csum_size(csum_type)
    size = max(min(item.size or 0, len(data)), width)
    size -= size % width
    item.data = CsumData([bytes(data[i:i + width]) for i in range(0, size, width)])
    item.size_read = size


def validate_csum_item(item, header, filesystem_state=None, throughout=True):
    """
    With a filesystem the stored checksums are compared against the data
    they cover, otherwise only obviously blank checksums are rejected.
    """
    item.corruption.head = (item.key.objectid != constants.EXTENT_CSUM_OBJECTID or
                            item.key.offset % header.block.sectorsize != 0)

    if filesystem_state is not None and throughout:
        item.corruption.data = item.data is None
        item_csums = filesystem_state.get_block_checksums(header.block).get(item.id)
        if item_csums and item.data is not None:
            item.corruption.data = False
            for csum_id, actual_checksums in item_csums.items():
                stored = item.data.csums[csum_id] if item.data and csum_id < len(item.data.csums) else None
                item.corruption.data = stored not in actual_checksums
                if item.corruption.data:
                    break
    else:
        item.corruption.data = item.data is None or not item.data.csums
        if item.data is not None:
            for csum in item.data.csums:
                if all(b == 0 for b in csum) or all(b == 0xFF for b in csum):
                    item.corruption.data = True
                    break

    return item.corruption.is_valid()


def get_block_checksums(block, filesystem_state) -> Dict[int, Dict[int, List[bytes]]]:
    """
    Checksum the data sectors every csum item of a block refers to.

    Only the first item's logical address is resolved; the same
    logical to physical delta is assumed for the rest of the block.

    Returns:
        {item id: {csum index: [distinct checksums over all mirrors]}}
    """
    all_checksums: Dict[int, Dict[int, List[bytes]]] = {}
    if filesystem_state is None or not block.items:
        return all_checksums

    sectorsize = block.sectorsize
    csum_type = block.get_checksum_type()
    first = block.items[0]
    if first.key is None:
        return all_checksums

    for info, device_io in filesystem_state.each_offset(first.key.offset):
        offset_diff = info.logical - info.physical
        for item in block.items:
            item_checksums = all_checksums.setdefault(item.id, {})
            if item.data is None:
                continue
            for csum_id, csum in enumerate(item.data.csums):
                device_io.seek(item.key.offset - offset_diff + csum_id * sectorsize)
                data = device_io.read(sectorsize)
                actual = calculate_checksum(data, csum_type)
                if actual is None:
                    continue
                actual = actual[:len(csum)]
                checksums = item_checksums.setdefault(csum_id, [])
                if actual not in checksums:
                    checksums.append(actual)

    return all_checksums
