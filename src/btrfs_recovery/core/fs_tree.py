"""
btrfs-recovery - FS tree items

Inodes, inode back references, directory entries, xattrs and root items.
"""

import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .. import constants
from .reader import ByteReader
from .structures import Key, KEY_FORMAT, Timespec

INODE_NODATASUM = 1 << 0
INODE_NODATACOW = 1 << 1
INODE_READONLY = 1 << 2
INODE_NOCOMPRESS = 1 << 3
INODE_PREALLOC = 1 << 4
INODE_SYNC = 1 << 5
INODE_IMMUTABLE = 1 << 6
INODE_APPEND = 1 << 7
INODE_NODUMP = 1 << 8
INODE_NOATIME = 1 << 9
INODE_DIRSYNC = 1 << 10
INODE_COMPRESS = 1 << 11

INODE_MAX = 1 << 15
INODE_ROOT_ITEM_INIT = 1 << 31

MAX_INDEX = 100_000_000

FT_UNKNOWN = 0
FT_REG_FILE = 1
FT_DIR = 2
FT_CHRDEV = 3
FT_BLKDEV = 4
FT_FIFO = 5
FT_SOCK = 6
FT_SYMLINK = 7
FT_XATTR = 8
FT_MAX = 9

# Shared with the extent tree validators
MAX_ALLOWED_REFS = 1000
MAX_GENERATION_LEEWAY = 0

INODE_FORMAT = '<QQQQQIIIIQQQ32s12s12s12s12s'
ROOT_ITEM_FORMAT = '<QQQQQQQI17sBBQ16s16s16sQQQQ12s12s12s12s64s'


@dataclass
class InodeData:
    generation: int
    transid: int
    size: int
    nbytes: int
    block_group: int
    nlink: int
    uid: int
    gid: int
    mode: int
    rdev: int
    flags: int
    sequence: int
    reserved: bytes
    atime: Timespec
    ctime: Timespec
    mtime: Timespec
    otime: Timespec


@dataclass
class InodeRefData:
    index: int
    length: int
    name: bytes


@dataclass
class DirItemData:
    location: Key
    transid: int
    data_length: int
    name_length: int
    type: int
    name: bytes
    xattrs: bytes


@dataclass
class RootItemData:
    inode: InodeData
    generation: int
    root_dir_id: int
    bytenr: int
    byte_limit: int
    bytes_used: int
    last_snapshot: int
    flags: int
    refs: int
    drop_progress: Key
    drop_level: int
    level: int
    generation_v2: int
    uuid: bytes
    parent_uuid: bytes
    received_uuid: bytes
    ctransid: int
    otransid: int
    stransid: int
    rtransid: int
    ctime: Timespec
    otime: Timespec
    stime: Timespec
    rtime: Timespec
    reserved: bytes


def unpack_timespec(data: bytes) -> Timespec:
    return Timespec(*struct.unpack('<QI', data))


def max_timestamp() -> int:
    """Timestamps beyond 20 years from now are treated as garbage"""
    return int(datetime(datetime.now().year + 20, 1, 1, tzinfo=timezone.utc).timestamp())


def read_inode(reader: ByteReader) -> InodeData:
    values = list(reader.unpack(INODE_FORMAT))
    for i in range(13, 17):
        values[i] = unpack_timespec(values[i])
    return InodeData(*values)


def parse_inode_item(item, data: bytes):
    reader = ByteReader(data)
    item.data = read_inode(reader)
    item.size_read = reader.tell()


def parse_inode_ref(item, data: bytes):
    reader = ByteReader(data)
    index, length = reader.unpack('<QH')
    name = reader.read(length)
    item.data = InodeRefData(index, length, name)
    item.size_read = reader.tell()


def parse_dir_item(item, data: bytes):
    """Also used for DIR_INDEX and XATTR_ITEM, they share one layout"""
    reader = ByteReader(data)
    location = Key(*reader.unpack(KEY_FORMAT))
    transid, data_length, name_length, entry_type = reader.unpack('<QHHB')
    name = reader.read(name_length)
    xattrs = reader.read(data_length)
    item.data = DirItemData(location, transid, data_length, name_length, entry_type, name, xattrs)
    item.size_read = reader.tell()


def parse_root_item(item, data: bytes):
    reader = ByteReader(data)
    inode = read_inode(reader)
    values = list(reader.unpack(ROOT_ITEM_FORMAT))
    values[8] = Key(*struct.unpack(KEY_FORMAT, values[8]))
    for i in range(19, 23):
        values[i] = unpack_timespec(values[i])
    item.data = RootItemData(inode, *values)
    item.size_read = reader.tell()


def is_valid_inode_data(data: Optional[InodeData], header) -> bool:
    if data is None:
        return False

    limit = max_timestamp()
    return (data.generation <= header.generation + MAX_GENERATION_LEEWAY and
            data.generation > 0 and
            data.nlink < MAX_ALLOWED_REFS and
            (data.flags & (INODE_ROOT_ITEM_INIT - 1)) < INODE_MAX and
            data.atime.sec < limit and
            data.ctime.sec < limit and
            data.mtime.sec < limit and
            data.otime.sec < limit)


def validate_inode_item(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = not item.key.is_valid_objectid(True) or item.key.offset != 0
    item.corruption.data = not is_valid_inode_data(item.data, header)
    return item.corruption.is_valid()


def validate_inode_ref(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = not item.key.is_valid_objectid(True) or item.key.offset == 0

    if item.data is None:
        item.corruption.data = True
        return item.corruption.is_valid()

    item.corruption.data = not (item.data.index < MAX_INDEX and len(item.data.name) > 0)
    return item.corruption.is_valid()


def validate_dir_item(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = not item.key.is_valid_objectid(True)

    item.corruption.data = item.data is None
    if item.corruption.data:
        return item.corruption.is_valid()

    data = item.data
    is_valid = data.transid <= header.generation and data.type < FT_MAX

    if is_valid and data.type != FT_XATTR:
        is_valid = (data.location.objectid > 0 and
                    data.location.type in (constants.INODE_ITEM, constants.ROOT_ITEM))
    elif is_valid:
        is_valid = (data.location.as_tuple() == (0, 0, 0) and
                    len(data.xattrs) > 0)

    item.corruption.data = not is_valid
    return item.corruption.is_valid()


def validate_root_item(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = not item.key.is_valid_objectid(True) or item.key.offset != 0

    item.corruption.data = item.data is None
    if item.corruption.data:
        return item.corruption.is_valid()

    data = item.data
    limit = max_timestamp()
    is_valid = (is_valid_inode_data(data.inode, header) and
                data.generation <= header.generation + MAX_GENERATION_LEEWAY and
                data.generation > 0 and
                data.bytenr % header.block.sectorsize == 0 and
                data.refs <= MAX_ALLOWED_REFS and
                data.ctime.sec < limit and
                data.otime.sec < limit and
                data.stime.sec < limit and
                data.rtime.sec < limit)

    item.corruption.data = not is_valid
    return item.corruption.is_valid()
