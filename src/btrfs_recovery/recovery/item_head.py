"""
btrfs-recovery - In-place block edits

Low level helpers shared by the repair strategies: rewriting item
records, header and checksum inside a block buffer and scanning a buffer
for displaced item records.
"""

import struct
from typing import List

from .. import constants
from ..core.block import Block
from ..core.parser import parse_leaf_item, parse_leaf_item_head, parse_node_item
from ..core.structures import LeafItem, NodeItem
from ..core.validator import validate_item

LEAF_ITEM_HEAD_FORMAT = '<qBQII'
NODE_ITEM_HEAD_FORMAT = '<qBQQQ'


def item_record_size(block: Block) -> int:
    return constants.LEAF_ITEM_SIZE if block.is_leaf() else constants.NODE_ITEM_SIZE


def pack_leaf_item_head(item: LeafItem) -> bytes:
    return struct.pack(LEAF_ITEM_HEAD_FORMAT, item.key.objectid, item.key.type, item.key.offset,
                       item.offset, item.size or 0)


def pack_node_item_head(item: NodeItem) -> bytes:
    return struct.pack(NODE_ITEM_HEAD_FORMAT, item.key.objectid, item.key.type, item.key.offset,
                       item.block_number, item.generation)


def write_buffer(block: Block, offset: int, data: bytes):
    """Overwrite bytes in place, never past the end of the block"""
    data = bytes(data[:max(len(block.buffer) - offset, 0)])
    block.buffer[offset:offset + len(data)] = data


def update_header(block: Block):
    """Write the (edited) header fields back into the buffer"""
    data = block.header.pack()
    block.buffer[0:len(data)] = data
    block.reparse_header()


def fix_checksum(block: Block):
    csum = block.get_checksum()
    if csum:
        block.buffer[0:len(csum)] = csum
        block.reparse_header()


def write_item_head(block: Block, item_id: int, data: bytes, filesystem_state=None):
    """
    Overwrite one item record in the buffer and re-read that item.

    Leaf items get their payload decoded again from the (possibly new)
    offset.

    Returns:
        The freshly parsed and validated item
    """
    record_size = item_record_size(block)
    offset = constants.HEADER_SIZE + record_size * item_id
    block.buffer[offset:offset + record_size] = data

    if block.is_leaf():
        item = parse_leaf_item(LeafItem(item_id), block.buffer, block.get_checksum_type())
    else:
        item = parse_node_item(NodeItem(item_id), block.buffer)
    block.items[item_id] = item

    validate_item(item, block.header, filesystem_state)
    return item


def update_node_item_head(block: Block, item: NodeItem, filesystem_state=None):
    return write_item_head(block, item.id, pack_node_item_head(item), filesystem_state)


def find_add_item(items: List, current_offset: int, max_offset: int, block: Block, item_id: int) -> int:
    """
    Scan forward byte by byte for the next plausible item record.

    Records are decoded at every position after current_offset and the
    first one whose head validates is appended to items.

    Returns:
        Buffer position where the scan stopped
    """
    current_offset += 1
    record_size = item_record_size(block)
    while current_offset + record_size <= max_offset:
        if block.is_leaf():
            item = parse_leaf_item_head(LeafItem(item_id), block.buffer, current_offset)
        else:
            item = parse_node_item(NodeItem(item_id), block.buffer, current_offset)
        validate_item(item, block.header)
        if item.key is not None and not item.corruption.head:
            items.append(item)
            break
        current_offset += 1

    return current_offset
