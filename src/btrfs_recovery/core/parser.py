"""
btrfs-recovery - Block parser

Decodes block headers, item records and item payloads. Payload decoding
is tolerant: anything that does not fit its layout is left undecoded and
reported as data corruption by the validator.
"""

import logging
import struct
from typing import List, Optional

from .. import constants
from ..exceptions import ItemDecodeError
from . import chunk_tree, csum_tree, extent_tree, free_space, fs_tree
from .structures import HEADER_FORMAT, KEY_FORMAT, Header, Key, LeafItem, NodeItem

logger = logging.getLogger(__name__)

PAYLOAD_PARSERS = {
    constants.INODE_ITEM: fs_tree.parse_inode_item,
    constants.INODE_REF: fs_tree.parse_inode_ref,
    constants.XATTR_ITEM: fs_tree.parse_dir_item,
    constants.DIR_ITEM: fs_tree.parse_dir_item,
    constants.DIR_INDEX: fs_tree.parse_dir_item,
    constants.ROOT_ITEM: fs_tree.parse_root_item,
    constants.EXTENT_DATA: extent_tree.parse_extent_data,
    constants.EXTENT_ITEM: extent_tree.parse_extent_item,
    constants.METADATA_ITEM: extent_tree.parse_extent_item,
    constants.EXTENT_DATA_REF: extent_tree.parse_extent_data_ref,
    constants.SHARED_DATA_REF: extent_tree.parse_shared_data_ref,
    constants.BLOCK_GROUP_ITEM: extent_tree.parse_block_group_item,
    constants.DEV_ITEM: chunk_tree.parse_dev_item,
    constants.CHUNK_ITEM: chunk_tree.parse_chunk_item,
}


def parse_key(data: bytes, offset: int = 0) -> Key:
    return Key(*struct.unpack_from(KEY_FORMAT, data, offset))


def parse_header(buffer: bytes, block=None) -> Header:
    """
    Decode the block header.

    A buffer shorter than a header still yields a Header, zero filled and
    with level None so it never counts as valid.
    """
    data = bytes(buffer[:constants.HEADER_SIZE])
    short = len(data) < constants.HEADER_SIZE
    values = list(struct.unpack(HEADER_FORMAT, data.ljust(constants.HEADER_SIZE, b'\0')))
    if short:
        values[-1] = None
    return Header(*values, block=block)


def parse_node_item(item: NodeItem, buffer: bytes, start: Optional[int] = None) -> NodeItem:
    """Decode a node item record, by default the one at the slot of item.id"""
    if start is None:
        start = constants.HEADER_SIZE + item.id * constants.NODE_ITEM_SIZE
    if start + constants.KEY_SIZE > len(buffer):
        return item
    item.key = parse_key(buffer, start)

    start += constants.KEY_SIZE
    if start + 16 > len(buffer):
        return item
    item.block_number, item.generation = struct.unpack_from('<QQ', buffer, start)
    return item


def parse_leaf_item_head(item: LeafItem, buffer: bytes, start: Optional[int] = None) -> LeafItem:
    if start is None:
        start = constants.HEADER_SIZE + item.id * constants.LEAF_ITEM_SIZE
    if start + constants.KEY_SIZE > len(buffer):
        return item
    item.key = parse_key(buffer, start)

    start += constants.KEY_SIZE
    if start + 8 > len(buffer):
        return item
    item.offset, item.size = struct.unpack_from('<II', buffer, start)
    return item


def parse_leaf_item(item: LeafItem, buffer: bytes, csum_type: int = constants.CSUM_TYPE_CRC32) -> LeafItem:
    parse_leaf_item_head(item, buffer)

    if item.offset is not None:
        start = constants.HEADER_SIZE + item.offset
        data = bytes(buffer[start:start + item.size])
        if data:
            parse_leaf_item_data(item, data, csum_type)

    return item


def parse_leaf_item_data(item: LeafItem, data: bytes, csum_type: int = constants.CSUM_TYPE_CRC32) -> LeafItem:
    """Decode an item payload according to its key type"""
    item.data = None
    item.size_read = None
    key_type = item.key.type

    try:
        if key_type == constants.EXTENT_CSUM:
            csum_tree.parse_csum_item(item, data, csum_type)
        elif key_type == constants.UNTYPED:
            if item.key.objectid == constants.FREE_SPACE_OBJECTID:
                free_space.parse_free_space_header(item, data)
        elif key_type in PAYLOAD_PARSERS:
            PAYLOAD_PARSERS[key_type](item, data)
        else:
            item.data = data[:item.size]
            item.size_read = len(item.data)
    except ItemDecodeError as e:
        logger.debug(f"Item #{item.id} type {key_type}: {e}")
        item.data = None
        item.size_read = None

    return item


def parse_items(count: int, buffer: bytes, is_leaf: bool,
                csum_type: int = constants.CSUM_TYPE_CRC32) -> List:
    items = []
    for item_id in range(count):
        if is_leaf:
            items.append(parse_leaf_item(LeafItem(item_id), buffer, csum_type))
        else:
            items.append(parse_node_item(NodeItem(item_id), buffer))
    return items
