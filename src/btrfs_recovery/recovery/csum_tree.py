"""
btrfs-recovery - Checksum tree repair
"""

import logging

from .. import constants
from ..core.block import Block
from ..exceptions import UnresolvedAmbiguityError
from .item_head import write_buffer

logger = logging.getLogger(__name__)


def fix_csum_data(corrupted_block: Block, filesystem_state=None):
    """
    Rewrite stored data checksums that disagree with the data on disk.

    Raises:
        UnresolvedAmbiguityError: The mirrors of a data sector hash differently
    """
    if filesystem_state is None:
        return

    all_checksums = filesystem_state.get_block_checksums(corrupted_block)
    if not all_checksums:
        return

    for item in corrupted_block.items:
        if item.is_valid() or item.corruption.head or item.data is None:
            continue
        item_checksums = all_checksums.get(item.id, {})
        for csum_id, csum in enumerate(item.data.csums):
            actual_checksums = item_checksums.get(csum_id, [])
            if len(actual_checksums) > 1:
                raise UnresolvedAmbiguityError(
                    f"Block {corrupted_block.header.bytenr}: copies of the data behind "
                    f"checksum {csum_id} of item #{item.id} differ")
            if not actual_checksums or csum == actual_checksums[0]:
                continue

            actual = actual_checksums[0]
            item.corruption.data = False
            item.data.csums[csum_id] = actual
            offset = constants.HEADER_SIZE + item.offset + csum_id * len(csum)
            write_buffer(corrupted_block, offset, actual)
            logger.debug(f"Block {corrupted_block.header.bytenr}: item #{item.id} checksum {csum_id} "
                         f"{csum.hex()} -> {actual.hex()}")
