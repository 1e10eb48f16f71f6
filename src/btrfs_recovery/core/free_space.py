"""
btrfs-recovery - Free space cache headers

Untyped items keyed by FREE_SPACE_OBJECTID in the root tree.
"""

from dataclasses import dataclass

from .. import constants
from .fs_tree import MAX_GENERATION_LEEWAY
from .reader import ByteReader
from .structures import Key, KEY_FORMAT

MAX_FREE_SPACE_BITMAPS = 10_000


@dataclass
class FreeSpaceHeaderData:
    location: Key
    generation: int
    entries: int
    bitmaps: int


def parse_free_space_header(item, data: bytes):
    reader = ByteReader(data)
    location = Key(*reader.unpack(KEY_FORMAT))
    item.data = FreeSpaceHeaderData(location, *reader.unpack('<QQQ'))
    item.size_read = reader.tell()


def validate_free_space_header(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = item.key.offset % header.block.sectorsize != 0

    item.corruption.data = item.data is None
    if item.corruption.data:
        return item.corruption.is_valid()

    data = item.data
    is_valid = (data.generation <= header.generation + MAX_GENERATION_LEEWAY and
                data.generation > 0 and
                data.bitmaps < MAX_FREE_SPACE_BITMAPS and
                data.location.objectid > 0 and
                data.location.type == constants.INODE_ITEM and
                data.location.offset == 0)

    item.corruption.data = not is_valid
    return item.corruption.is_valid()


def validate_untyped(item, header, filesystem_state=None, throughout=True):
    if item.key.objectid == constants.FREE_SPACE_OBJECTID:
        return validate_free_space_header(item, header, filesystem_state, throughout)

    item.corruption.head = True
    item.corruption.data = True
    return False
