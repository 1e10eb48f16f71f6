"""
btrfs-recovery - Leaf item repair strategies

Each strategy works on a validated copy of the block and leaves it
validated. Item records and payloads are taken from mirror blocks or
recovered from what is left in the block itself.
"""

import logging
from typing import List

from .. import constants
from ..core.block import Block
from ..core.parser import parse_leaf_item_data
from ..core.structures import Key, LeafItem
from ..core.validator import validate_item
from .item_head import find_add_item, pack_leaf_item_head, write_buffer, write_item_head

logger = logging.getLogger(__name__)


def recover_leaf_item_sizes(corrupted_block: Block):
    """Items with a trusted offset but bad size get the size their payload decoded to"""
    for item in list(corrupted_block.items):
        if not item.corruption.offset and item.corruption.size and item.size_read is not None:
            item.size = item.size_read
            write_item_head(corrupted_block, item.id, pack_leaf_item_head(item))


def find_min_leaf_offset(items: List[LeafItem]) -> int:
    """Item records end before the record of the last item with a bad offset"""
    min_offset = constants.MAX_ITEMS * constants.LEAF_ITEM_SIZE
    for item in reversed(items):
        if item.corruption.offset:
            min_offset = min(min_offset, (item.id + 1) * constants.LEAF_ITEM_SIZE)
            break
    return constants.HEADER_SIZE + min_offset


def recover_leaf_item_keys(corrupted_block: Block, mirror_blocks: List[Block]):
    """
    Restore keys of items whose head is corrupted.

    Candidate records are the intact records of each mirror plus any
    displaced records found by scanning, and records found by scanning
    this block from the first corrupted item on. A candidate at the same
    payload offset gives its key.
    """
    corrupted_items = [item for item in corrupted_block.items if item.corruption.head]
    if not corrupted_items:
        return

    mirror_blocks_items = []
    for block in mirror_blocks:
        if not block.is_leaf():
            continue
        items = []
        for item in block.items:
            if item.corruption.head:
                break
            items.append(item)
        if not items:
            continue

        max_offset = find_min_leaf_offset(block.items)
        item_id = items[-1].id + 1
        current_offset = constants.HEADER_SIZE + constants.LEAF_ITEM_SIZE * item_id
        while True:
            current_offset = find_add_item(items, current_offset, max_offset, block, item_id)
            if current_offset >= max_offset:
                break
            item_id += 1
        mirror_blocks_items.append(items)

    found_items: List[LeafItem] = []
    max_offset = find_min_leaf_offset(corrupted_block.items)
    current_offset = constants.HEADER_SIZE + constants.LEAF_ITEM_SIZE * corrupted_items[0].id
    for item in corrupted_items:
        current_offset = find_add_item(found_items, current_offset, max_offset, corrupted_block, item.id)

    for item in corrupted_items:
        fixed = fix_leaf_item_key(found_items, item, corrupted_block)
        if not fixed:
            for mirror_items in mirror_blocks_items:
                fixed = fix_leaf_item_key(mirror_items, item, corrupted_block)
                if fixed:
                    break

        if fixed:
            write_item_head(corrupted_block, item.id, pack_leaf_item_head(item))


def fix_leaf_item_key(other_items: List[LeafItem], item: LeafItem, block: Block) -> bool:
    """Take the key (and size) of the first candidate at the same offset, consuming it"""
    if item.offset is None:
        return False

    for i, other_item in enumerate(other_items):
        if other_item.offset != item.offset:
            continue

        item.key = Key(*other_item.key.as_tuple())
        if item.size != other_item.size:
            item.size = other_item.size
            offset = constants.HEADER_SIZE + item.offset
            parse_leaf_item_data(item, bytes(block.buffer[offset:offset + item.size]),
                                 block.get_checksum_type())
            validate_item(item, block.header)
        del other_items[i]
        return True

    return False


def copy_leaf_item_data(corrupted_block: Block, mirror_blocks: List[Block], filesystem_state=None,
                        throughout: bool = True):
    """Copy the payload of a valid mirror item with the same key over a corrupted payload"""
    for corrupted_item in list(corrupted_block.items):
        if not corrupted_item.corruption.data or corrupted_item.corruption.offset:
            continue

        for block in mirror_blocks:
            if not block.is_leaf():
                continue
            for candidate in block.items:
                if not candidate.is_valid() or candidate.key.as_tuple() != corrupted_item.key.as_tuple():
                    continue

                item = candidate.copy()
                item.id = corrupted_item.id
                corrupted_block.items[corrupted_item.id] = item
                candidate_offset = constants.HEADER_SIZE + item.offset
                data = bytes(block.buffer[candidate_offset:candidate_offset + item.size])
                write_buffer(corrupted_block, constants.HEADER_SIZE + corrupted_item.offset, data)

                parse_leaf_item_data(item, data, corrupted_block.get_checksum_type())
                validate_item(item, corrupted_block.header, filesystem_state, throughout)
                if item.is_valid():
                    break
            if corrupted_block.items[corrupted_item.id].is_valid():
                break

    # Copied payloads may overlap their neighbours
    corrupted_block.reparse_items()
    corrupted_block.validate(filesystem_state, False)


def mirror_leaf_item_data(corrupted_block: Block, mirror_blocks: List[Block], filesystem_state=None,
                          throughout: bool = True):
    """Take whatever differing bytes a mirror holds at the same offset if they decode cleanly"""
    for item in list(corrupted_block.items):
        if not item.corruption.data or item.corruption.offset:
            continue

        offset = constants.HEADER_SIZE + item.offset
        current = bytes(corrupted_block.buffer[offset:offset + item.size])
        item_clone = item.copy()
        for block in mirror_blocks:
            data = bytes(block.buffer[offset:offset + item_clone.size])
            if not data or data == current:
                continue
            parse_leaf_item_data(item_clone, data, corrupted_block.get_checksum_type())
            validate_item(item_clone, corrupted_block.header, filesystem_state, throughout)
            if not item_clone.corruption.data:
                corrupted_block.items[item_clone.id] = item_clone
                write_buffer(corrupted_block, offset, data)
                break

    # Copied payloads may overlap their neighbours
    corrupted_block.reparse_items()
    corrupted_block.validate(filesystem_state, throughout)


def restore_leaf_items(corrupted_block: Block, mirror_blocks: List[Block], filesystem_state=None,
                       throughout: bool = True):
    """
    Rebuild the tail of the item table from a valid mirror.

    The mirror item keyed right after the last good item and all items
    following it are copied, packing payloads backwards from the previous
    item's offset.
    """
    items = corrupted_block.items
    fix_from = next((i for i, item in enumerate(items) if not item.is_valid()), None)
    if fix_from:
        fix_from = max(fix_from - 1, 1)
        last_good = items[fix_from - 1].key.as_tuple()
        for block in mirror_blocks:
            if (not block.is_valid() or not block.is_leaf() or
                    block.header.owner != corrupted_block.header.owner):
                continue

            item_match = next((item for item in block.items if item.key.as_tuple() >= last_good), None)
            if item_match is None:
                continue
            source_index = item_match.id
            if item_match.key.as_tuple() == last_good:
                source_index += 1

            count = min(len(items) - fix_from, len(block.items) - source_index)
            min_offset = constants.LEAF_ITEM_SIZE * corrupted_block.header.nritems
            for i in range(count):
                item = block.items[source_index + i].copy()
                item.id = fix_from + i
                source_offset = constants.HEADER_SIZE + item.offset
                item.offset = corrupted_block.items[item.id - 1].offset - item.size
                if item.offset < min_offset:
                    logger.debug(f"Block {corrupted_block.header.bytenr}: no room to restore item #{item.id}")
                    break
                write_buffer(corrupted_block, constants.HEADER_SIZE + item.offset,
                             block.buffer[source_offset:source_offset + item.size])
                write_item_head(corrupted_block, item.id, pack_leaf_item_head(item))
            if count:
                break

    corrupted_block.validate(filesystem_state, throughout)
