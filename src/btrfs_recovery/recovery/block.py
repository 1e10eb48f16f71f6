"""
btrfs-recovery - Block repair engine

fix_block turns a set of copies of one logical block (mirrors, older
generations, header swapped variants) into a single block. A repair is
proven correct when the repaired bytes hash to the checksum the base
copy carried on disk.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .. import constants
from ..core.block import Block
from ..utils import swap_header
from .csum_tree import fix_csum_data
from .extent_tree import fix_extent_refs, recover_extent_items
from .item_head import fix_checksum, item_record_size, update_header, write_item_head
from .leaf_item import (copy_leaf_item_data, mirror_leaf_item_data, recover_leaf_item_keys,
                        recover_leaf_item_sizes, restore_leaf_items)
from .node_item import recover_node_items

logger = logging.getLogger(__name__)

MAX_TREE_OBJECTID = 10_000_000
MAX_PERMUTATIONS = 1000


@dataclass
class FixResult:
    """Outcome of fix_block, successful means the original bytes were reconstructed"""
    block: Optional[Block] = None
    successful: bool = False


def fix_block(blocks: List[Block], filesystem_state=None, tree: Optional[int] = None,
              max_permutations: int = MAX_PERMUTATIONS) -> FixResult:
    """
    Reconstruct one block from several candidate copies.

    Every ordering of the candidates (bounded by max_permutations, plus
    each candidate on its own when there are several) is tried with the
    first block as base and the rest as mirrors. The strict pass uses
    full validation, the relaxed pass only structural validation.

    Args:
        blocks: Candidate copies of the same logical block
        filesystem_state: Optional FilesystemState used for validation
        tree: Expected owner, the newest plausible owner when omitted
        max_permutations: Cap on the number of orderings tried

    Returns:
        FixResult with the accepted block, or the least corrupted candidate
    """
    if not blocks:
        return FixResult()

    for block in blocks:
        if not block.is_validated():
            block.validate(filesystem_state)

    should_try_single = len(blocks) > 1
    blocks = add_header_swapped(blocks, filesystem_state)
    blocks = sort_mirrors(blocks)

    max_generations: Dict[int, int] = {}
    for block in blocks:
        owner = block.header.owner
        if owner > MAX_TREE_OBJECTID or owner < constants.MIN_VALID_OBJECTID or is_out_of_place(block):
            continue
        max_generations[owner] = max(block.header.generation, max_generations.get(owner, 0))

    if tree is None and max_generations:
        tree = max(max_generations.items(), key=lambda owner_generation: owner_generation[1])[0]

    orders = list(itertools.islice(itertools.permutations(range(len(blocks))), max_permutations))
    if should_try_single:
        for i, block in enumerate(blocks):
            if not should_reject(block, max_generations, tree):
                orders.append((i,))

    repaired_block = None
    candidate_blocks: List[Block] = []
    good_checksums = set()
    for throughout in (True, False):
        for order in orders:
            ordered_blocks = [blocks[i] for i in order]
            first = ordered_blocks[0]
            if should_reject(first, max_generations, tree):
                continue

            expected_csum = first.header.csum
            checksum_match = first.checksum_matches()
            if checksum_match:
                good_checksums.add(expected_csum)
            has_header_swapped = first.header_swapped

            corrupted_block = first.copy()
            corrupted_block.validate(filesystem_state, throughout)

            mirror_blocks = [mirror for mirror in ordered_blocks[1:] if not is_foreign(mirror, tree)]
            block = repair_block(corrupted_block, mirror_blocks, filesystem_state, throughout)

            if ((not checksum_match or has_header_swapped) and block.is_valid() and
                    expected_csum == block.header.csum):
                repaired_block = block
                break
            elif throughout:
                for candidate in (first, block):
                    if not any(candidate is known for known in candidate_blocks):
                        candidate_blocks.append(candidate)

        if repaired_block is not None:
            break

    if repaired_block is not None:
        logger.debug(f"Block {repaired_block.header.bytenr}: reconstructed with original checksum")
        return FixResult(repaired_block, True)

    if not candidate_blocks:
        logger.debug(f"Block {blocks[0].header.bytenr}: no acceptable candidates")
        return FixResult()

    result_block = min(candidate_blocks, key=candidate_rank)
    successful = bool(result_block.is_valid()) and result_block.header.csum in good_checksums
    return FixResult(result_block, successful)


def candidate_rank(block: Block):
    """Sort key for best-effort results, lower is better"""
    corrupted = len(block.get_corrupted_items())
    # Ties go to the candidate keeping more items
    return corrupted - block.header.nritems, -block.header.nritems


def is_out_of_place(block: Block) -> bool:
    """Block of another filesystem or from a generation the superblock never reached"""
    superblock = block.superblock
    if superblock is None:
        return False
    return block.header.fsid != superblock.fsid or block.header.generation > superblock.generation


def is_foreign(block: Block, tree: Optional[int]) -> bool:
    return block.header.owner != tree or is_out_of_place(block)


def should_reject(block: Block, max_generations: Dict[int, int], tree: Optional[int]) -> bool:
    """Foreign blocks and stale copies never serve as the base of a repair"""
    if is_foreign(block, tree):
        return True
    return block.header.generation < max_generations.get(block.header.owner, 0)


def repair_block(corrupted_block: Block, mirror_blocks: List[Block], filesystem_state=None,
                 throughout: bool = True) -> Block:
    """Apply every item level strategy to a validated block, then finalize it"""
    copy_item_headers(corrupted_block, mirror_blocks, filesystem_state)

    if corrupted_block.is_leaf():
        if corrupted_block.header.owner == constants.EXTENT_TREE_OBJECTID:
            recover_extent_items(corrupted_block)
            fix_extent_refs(corrupted_block, filesystem_state)

        recover_leaf_item_sizes(corrupted_block)
        recover_leaf_item_keys(corrupted_block, mirror_blocks)
        copy_leaf_item_data(corrupted_block, mirror_blocks, filesystem_state, throughout)
        mirror_leaf_item_data(corrupted_block, mirror_blocks, filesystem_state, throughout)
        restore_leaf_items(corrupted_block, mirror_blocks, filesystem_state, throughout)

        if corrupted_block.header.owner == constants.CSUM_TREE_OBJECTID:
            fix_csum_data(corrupted_block, filesystem_state)
    else:
        recover_node_items(corrupted_block, mirror_blocks)

    remove_corrupted_items(corrupted_block)
    zero_free_space(corrupted_block)
    fix_checksum(corrupted_block)

    corrupted_block.reparse()
    corrupted_block.validate(filesystem_state, throughout)
    return corrupted_block


def add_header_swapped(blocks: List[Block], filesystem_state=None) -> List[Block]:
    """Sometimes the block header lands 512 bytes too far, try the swapped variant too"""
    extra_blocks = []
    for block in blocks:
        if block.header.is_valid():
            continue
        swapped = Block(swap_header(block.buffer), block.superblock)
        swapped.device = block.device
        swapped.device_offset = block.device_offset
        swapped.header_swapped = True
        swapped.validate(filesystem_state)
        extra_blocks.append(swapped)

    return blocks + extra_blocks


def sort_mirrors(blocks: List[Block]) -> List[Block]:
    return sorted(blocks, key=lambda block: (-block.header.generation, len(block.get_corrupted_items())))


def copy_item_headers(corrupted_block: Block, mirror_blocks: List[Block], filesystem_state=None):
    """Copy the raw item record of every item with a corrupted head from a matching mirror"""
    record_size = item_record_size(corrupted_block)
    for item in list(corrupted_block.items):
        if not item.corruption.head:
            continue
        for block in mirror_blocks:
            if (block.header.owner != corrupted_block.header.owner or
                    block.header.nritems != corrupted_block.header.nritems or
                    item.id >= len(block.items) or
                    block.items[item.id].corruption.head):
                continue

            offset = constants.HEADER_SIZE + record_size * item.id
            write_item_head(corrupted_block, item.id, block.buffer[offset:offset + record_size],
                            filesystem_state)
            break


def remove_corrupted_items(block: Block):
    """Drop the run of invalid items at the end and shrink nritems accordingly"""
    items = block.items
    last_valid = None
    for i in range(len(items) - 1, -1, -1):
        if items[i].is_valid():
            last_valid = i
            break

    if last_valid is not None and block.header.nritems - last_valid > 1:
        del items[last_valid + 1:]
        block.header.nritems = len(items)
    update_header(block)


def zero_free_space(block: Block):
    """Node blocks keep zeros after the last item record"""
    if not block.is_node() or not block.items:
        return
    offset = constants.HEADER_SIZE + constants.NODE_ITEM_SIZE * (block.items[-1].id + 1)
    if offset < len(block.buffer):
        block.buffer[offset:] = bytes(len(block.buffer) - offset)
