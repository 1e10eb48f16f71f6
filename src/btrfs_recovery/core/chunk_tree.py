"""
btrfs-recovery - Chunk tree items

Device items and chunk items. Chunk items are also what the superblock's
system chunk array is made of.
"""

from dataclasses import dataclass, field
from typing import List

from .. import constants
from .reader import ByteReader

MIN_DEVICE_SIZE = 10_000_000  # 10 MB

DEV_ITEM_FORMAT = '<QQQIIIQQQIBB16s16s'
CHUNK_FORMAT = '<QQQQIIIHH'
STRIPE_FORMAT = '<QQ16s'

MAX_STRIPES = 200
MAX_SUB_STRIPES = 50


@dataclass
class DevItemData:
    devid: int
    total_bytes: int
    bytes_used: int
    io_align: int
    io_width: int
    sector_size: int
    type: int
    generation: int
    start_offset: int
    dev_group: int
    seek_speed: int
    bandwidth: int
    uuid: bytes
    fsid: bytes


@dataclass
class Stripe:
    devid: int
    offset: int
    dev_uuid: bytes


@dataclass
class ChunkData:
    length: int
    owner: int
    stripe_len: int
    type: int
    io_align: int
    io_width: int
    sector_size: int
    num_stripes: int
    sub_stripes: int
    stripes: List[Stripe] = field(default_factory=list)


def read_dev_item(reader: ByteReader) -> DevItemData:
    return DevItemData(*reader.unpack(DEV_ITEM_FORMAT))


def read_chunk(reader: ByteReader) -> ChunkData:
    chunk = ChunkData(*reader.unpack(CHUNK_FORMAT))
    for _ in range(chunk.num_stripes):
        chunk.stripes.append(Stripe(*reader.unpack(STRIPE_FORMAT)))
    return chunk


def parse_dev_item(item, data: bytes):
    reader = ByteReader(data)
    item.data = read_dev_item(reader)
    item.size_read = reader.tell()


def parse_chunk_item(item, data: bytes):
    reader = ByteReader(data)
    item.data = read_chunk(reader)
    item.size_read = reader.tell()


def validate_dev_item(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = item.key.objectid != constants.ROOT_TREE_OBJECTID or item.key.offset < 1

    item.corruption.data = item.data is None
    if item.corruption.data:
        return item.corruption.is_valid()

    data = item.data
    sectorsize = header.block.sectorsize
    is_valid = (data.devid > 0 and
                data.total_bytes > MIN_DEVICE_SIZE and data.bytes_used > 0 and
                data.io_align % sectorsize == 0 and
                data.io_width % sectorsize == 0 and
                data.sector_size > 0 and sectorsize % data.sector_size == 0 and
                data.fsid == header.fsid)

    item.corruption.data = not is_valid
    return item.corruption.is_valid()


def validate_chunk_item(item, header, filesystem_state=None, throughout=True):
    item.corruption.head = (item.key.objectid != constants.FIRST_CHUNK_TREE_OBJECTID or
                            item.key.offset % header.block.sectorsize != 0)

    item.corruption.data = item.data is None
    if item.corruption.data:
        return item.corruption.is_valid()

    data = item.data
    is_valid = (data.length > 0 and data.owner == constants.EXTENT_TREE_OBJECTID and
                data.sector_size > 0 and
                data.stripe_len % data.sector_size == 0 and
                data.io_align % data.sector_size == 0 and
                data.io_width % data.sector_size == 0 and
                header.block.sectorsize % data.sector_size == 0 and
                0 < data.num_stripes < MAX_STRIPES and
                0 <= data.sub_stripes < MAX_SUB_STRIPES and
                all(stripe.devid >= 1 for stripe in data.stripes))

    item.corruption.data = not is_valid
    return item.corruption.is_valid()
