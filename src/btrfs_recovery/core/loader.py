"""
btrfs-recovery - Block loading

Read blocks from raw bytes or devices and validate them against the
filesystem they belong to.
"""

import logging
from typing import Dict, Iterator, List, Optional, Union

from .. import constants
from ..utils import swap_header as swap_header_bytes
from .block import Block

logger = logging.getLogger(__name__)


def _select_state(block: Block, filesystem_states: Optional[Dict]):
    if not filesystem_states:
        return None
    if len(filesystem_states) == 1:
        return next(iter(filesystem_states.values()))
    return filesystem_states.get(block.header.fsid)


def load_block(data, superblock=None, filesystem_states: Optional[Dict] = None,
               swap_header: bool = False) -> Block:
    """
    Parse and validate one block.

    Args:
        data: Block bytes or a readable file object positioned at the block
        superblock: Filesystem context, determines node size and checksum type
        filesystem_states: {fsid: FilesystemState}, selects the validation context
        swap_header: Exchange the first two 512 byte halves before parsing

    Returns:
        Validated block
    """
    size = superblock.nodesize if superblock is not None else constants.BLOCK_SIZE
    if hasattr(data, 'read'):
        data = data.read(size) or b''
    if swap_header:
        data = swap_header_bytes(data[:size])

    block = Block(data, superblock)
    block.header_swapped = swap_header
    block.validate(_select_state(block, filesystem_states))
    return block


def load_block_at(offset: int, device, filesystem_state, swap_header: bool = False) -> Optional[Block]:
    """Read an unvalidated block at a physical device offset, None when the device is missing"""
    nodesize = filesystem_state.superblock.nodesize
    with filesystem_state.using_device(device) as io:
        if io is None:
            return None
        io.seek(offset)
        data = io.read(nodesize)

    if swap_header:
        data = swap_header_bytes(data)
    block = Block(data, filesystem_state.superblock)
    block.device = device
    block.device_offset = offset
    block.header_swapped = swap_header
    return block


def each_block(block_numbers: Union[int, List[int]], filesystem_state, superblock_override=None,
               swap_header: bool = False, skip_mirrors: bool = False) -> Iterator[Block]:
    """
    Yield every readable copy of the given blocks, validated.

    Args:
        skip_mirrors: Only yield the first copy of each block number
    """
    seen: Dict[int, set] = {}
    for info, io in filesystem_state.each_offset(block_numbers):
        copies = seen.get(info.logical)
        if copies is not None and (skip_mirrors or (info.device_uuid, info.physical) in copies):
            continue

        superblock = superblock_override or filesystem_state.superblock
        data = io.read(superblock.nodesize)
        if not data:
            continue

        block = load_block(data, superblock, {filesystem_state.fsid: filesystem_state}, swap_header)
        block.device = info.device_uuid
        block.device_offset = info.physical
        seen.setdefault(info.logical, set()).add((info.device_uuid, info.physical))
        yield block


def load_blocks_by_ids(block_numbers: Union[int, List[int]], filesystem_states: Dict,
                       superblock_override=None, swap_header: bool = False) -> List[Block]:
    blocks = []
    for state in filesystem_states.values():
        blocks.extend(each_block(block_numbers, state, superblock_override, swap_header))
    return blocks


def validate_tree(block: Block, filesystem_states: Dict) -> Union[bool, Block]:
    """
    Validate a block and, for nodes, every block below it.

    Returns:
        True when the whole subtree is valid, otherwise the first invalid block
    """
    if not block.is_node():
        return block.is_valid()

    children = load_blocks_by_ids([item.block_number for item in block.items], filesystem_states)
    for child in children:
        if not child.is_valid():
            return child
        invalid = validate_tree(child, filesystem_states)
        if invalid is not True:
            return invalid
    return True
