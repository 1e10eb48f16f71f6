"""
btrfs-recovery - Extent tree repair

Extent tree leaves hold items of a few well known sizes, which makes it
possible to guess where a lost item starts. Inline back references can
be checked against the reference index.
"""

import logging
import struct

from .. import constants
from ..core import extent_tree
from ..core.block import Block
from ..core.structures import LeafCorruption
from ..exceptions import ItemDecodeError, UnresolvedAmbiguityError
from .item_head import pack_leaf_item_head, write_buffer, write_item_head

logger = logging.getLogger(__name__)

COMMON_ITEM_SIZES = [24, 33, 37, 42, 50, 53, 66, 79, 90]

ITEM_CODECS = {
    constants.EXTENT_ITEM: (extent_tree.parse_extent_item, extent_tree.validate_extent_item),
    constants.METADATA_ITEM: (extent_tree.parse_extent_item, extent_tree.validate_extent_item),
    constants.BLOCK_GROUP_ITEM: (extent_tree.parse_block_group_item, extent_tree.validate_block_group_item),
}


def is_metadata_block(block: Block) -> bool:
    """Whether the first valid extent record of the block is a METADATA_ITEM"""
    for item in block.items:
        if not item.is_valid():
            continue
        if item.key.type == constants.METADATA_ITEM:
            return True
        elif item.key.type == constants.EXTENT_ITEM:
            return False
    return False


def recover_extent_items(corrupted_block: Block):
    """
    Guess offset, size and type of items with a corrupted offset.

    The payload is assumed to end where the previous item starts (the
    block end for the first item). Common item sizes are tried and the
    first guess that decodes to a valid extent or block group item is
    written back.
    """
    corrupted_items = [item for item in corrupted_block.items if item.corruption.offset]
    if not corrupted_items:
        return

    metadata = is_metadata_block(corrupted_block)
    block_end = corrupted_block.size - constants.HEADER_SIZE
    min_offset = constants.LEAF_ITEM_SIZE * corrupted_block.item_count

    for item in corrupted_items:
        if item.key is None:
            continue
        if item.id > 0:
            other_item = corrupted_block.items[item.id - 1]
            if other_item.corruption.offset:
                continue
            end = other_item.offset
        else:
            end = block_end

        orig_offset, orig_size, orig_type = item.offset, item.size, item.key.type
        fixed = False
        for size in COMMON_ITEM_SIZES:
            offset = end - size
            if offset < min_offset or constants.HEADER_SIZE + offset + size > corrupted_block.size:
                continue

            item_types = [constants.METADATA_ITEM if metadata else constants.EXTENT_ITEM]
            if size == 24:
                item_types.append(constants.BLOCK_GROUP_ITEM)

            start = constants.HEADER_SIZE + offset
            data = bytes(corrupted_block.buffer[start:start + size])
            for item_type in item_types:
                parse, validate = ITEM_CODECS[item_type]
                item.key.type = item_type
                item.offset = offset
                item.data = None
                item.size_read = None
                try:
                    parse(item, data)
                except ItemDecodeError as e:
                    logger.debug(f"Item #{item.id} as type {item_type} at {offset}: {e}")
                    continue
                item.size = item.size_read
                item.corruption = LeafCorruption()
                item.corruption.set_valid()
                validate(item, corrupted_block.header, None, False)
                fixed = not item.corruption.data
                if fixed:
                    break

            if fixed:
                break

        if fixed:
            logger.debug(f"Block {corrupted_block.header.bytenr}: item #{item.id} recovered at offset "
                         f"{item.offset} with size {item.size}")
            write_item_head(corrupted_block, item.id, pack_leaf_item_head(item))
        else:
            item.offset, item.size, item.key.type = orig_offset, orig_size, orig_type
            item.corruption.offset = True
            item.corruption.size = True


def fix_extent_refs(corrupted_block: Block, filesystem_state=None):
    """
    Repair reference counts and inline data refs of extent items.

    A data ref that no EXTENT_DATA item backs is rewritten to the single
    EXTENT_DATA item pointing at this extent. Several such items are an
    unresolvable ambiguity.

    Raises:
        UnresolvedAmbiguityError: Back references of different blocks point at the extent
    """
    index = filesystem_state.index if filesystem_state is not None else None
    for item in corrupted_block.items:
        if (item.key is None or item.data is None or not item.corruption.data or
                item.key.type not in (constants.EXTENT_ITEM, constants.METADATA_ITEM)):
            continue

        fixed = False
        if item.data.refs < len(item.data.inline):
            item.data.refs = len(item.data.inline)
            if extent_tree.validate_extent_item(item, corrupted_block.header):
                fixed = True

        if not item.corruption.head and index is not None and index.has_key_data:
            for inline in item.data.inline:
                if inline.type != constants.EXTENT_DATA_REF:
                    continue
                data_ref = inline.data_ref
                extent_datas = index.find_items(constants.EXTENT_DATA, data_ref.objectid, data_ref.offset)
                if any(extent_data['owner'] == data_ref.root and extent_data['data'] == item.key.objectid
                       for extent_data in extent_datas):
                    continue

                extent_datas = index.find_extent_backref(item.key.objectid)
                block_numbers = {extent_data['bytenr'] for extent_data in extent_datas}
                if len(block_numbers) == 1:
                    backref = extent_datas[0]
                    data_ref.root = backref['owner']
                    data_ref.objectid = backref['objectid']
                    data_ref.offset = backref['offset']
                    fixed = True
                elif len(block_numbers) > 1:
                    raise UnresolvedAmbiguityError(
                        f"Extent {item.key.objectid} is referenced from blocks "
                        f"{', '.join(str(bytenr) for bytenr in sorted(block_numbers))}")

        if fixed:
            data = write_extent_item(item)
            write_buffer(corrupted_block, constants.HEADER_SIZE + item.offset, data)


def write_extent_item(item) -> bytes:
    """Serialize an extent item payload with its inline references"""
    data = item.data
    output = struct.pack(extent_tree.EXTENT_ITEM_FORMAT, data.refs, data.generation, data.flags)
    for inline in data.inline:
        output += struct.pack('<B', inline.type)
        if inline.type == constants.EXTENT_DATA_REF:
            ref = inline.data_ref
            output += struct.pack(extent_tree.EXTENT_DATA_REF_FORMAT, ref.root, ref.objectid,
                                  ref.offset, ref.count)
        elif inline.type == constants.SHARED_DATA_REF:
            ref = inline.shared_ref
            output += struct.pack(extent_tree.SHARED_DATA_REF_FORMAT, ref.parent, ref.count)
        elif inline.type in (constants.TREE_BLOCK_REF, constants.SHARED_BLOCK_REF):
            output += struct.pack('<Q', inline.offset)
        else:
            raise ValueError(f"Invalid extent inline ref type {inline.type}")
    return output
