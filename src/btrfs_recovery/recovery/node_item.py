"""
btrfs-recovery - Node item repair
"""

import logging
from typing import Dict, List

from .. import constants
from ..core.block import Block
from ..core.structures import NodeItem
from .item_head import find_add_item, update_node_item_head

logger = logging.getLogger(__name__)


def recover_node_items(corrupted_block: Block, mirror_blocks: List[Block]):
    """
    Refill corrupted node slots.

    Item records are pooled from this block (scanning from the first
    corrupted slot) and from the intact prefix of each mirror extended by
    scanning. Records past the last good key are deduplicated by key
    offset, the newest generation wins, and written to the corrupted
    slots in key order.
    """
    corrupted_items = [item for item in corrupted_block.items if item.is_corrupted()]
    if not corrupted_items:
        return

    found_items: List[NodeItem] = []
    max_offset = len(corrupted_block.buffer)
    for block in [corrupted_block] + mirror_blocks:
        if not block.is_node():
            continue
        items: List[NodeItem] = []
        if block is corrupted_block:
            item_id = corrupted_items[0].id
        else:
            for item in block.items:
                if not item.is_valid():
                    break
                items.append(item)
            if not items:
                continue
            item_id = items[-1].id + 1

        current_offset = constants.HEADER_SIZE + constants.NODE_ITEM_SIZE * item_id
        while True:
            current_offset = find_add_item(items, current_offset, max_offset, block, item_id)
            if current_offset >= max_offset:
                break
            item_id += 1
        found_items.extend(items)

    first_id = corrupted_items[0].id
    last_good_offset = corrupted_block.items[first_id - 1].key.offset if first_id > 0 else -1

    good_items: Dict[int, NodeItem] = {}
    for item in found_items:
        if item.key.offset <= last_good_offset:
            continue
        known = good_items.get(item.key.offset)
        if known is None or item.generation > known.generation:
            good_items[item.key.offset] = item

    replacements = sorted(good_items.values(), key=lambda item: item.key.offset)
    for corrupted_item, replacement in zip(corrupted_items, replacements):
        item = NodeItem(corrupted_item.id)
        item.key = replacement.key
        item.block_number = replacement.block_number
        item.generation = replacement.generation
        update_node_item_head(corrupted_block, item)
        logger.debug(f"Block {corrupted_block.header.bytenr}: node item #{item.id} "
                     f"now points at {item.block_number}")
