"""
btrfs-recovery - Block validator

Assigns a corruption vector to every item of a block. Leaf items go
through a fixed cascade (offset, size, key, payload) and are then
checked against their neighbours; node items are checked for a sane key,
child pointer and child generation.
"""

from functools import lru_cache
from typing import Callable, FrozenSet, List, Tuple

from .. import constants
from . import chunk_tree, csum_tree, extent_tree, free_space, fs_tree
from .structures import LeafCorruption, LeafItem, NodeCorruption, NodeItem

MAX_DATA_SIZE = 7800
MAX_BLOCK = 0x1000000000000

LEAF_VALIDATORS = {
    constants.UNTYPED: free_space.validate_untyped,
    constants.INODE_ITEM: fs_tree.validate_inode_item,
    constants.INODE_REF: fs_tree.validate_inode_ref,
    constants.XATTR_ITEM: fs_tree.validate_dir_item,
    constants.DIR_ITEM: fs_tree.validate_dir_item,
    constants.DIR_INDEX: fs_tree.validate_dir_item,
    constants.EXTENT_DATA: extent_tree.validate_extent_data,
    constants.EXTENT_CSUM: csum_tree.validate_csum_item,
    constants.ROOT_ITEM: fs_tree.validate_root_item,
    constants.EXTENT_ITEM: extent_tree.validate_extent_item,
    constants.METADATA_ITEM: extent_tree.validate_extent_item,
    constants.EXTENT_DATA_REF: extent_tree.validate_extent_data_ref,
    constants.SHARED_DATA_REF: extent_tree.validate_shared_data_ref,
    constants.BLOCK_GROUP_ITEM: extent_tree.validate_block_group_item,
    constants.DEV_ITEM: chunk_tree.validate_dev_item,
    constants.CHUNK_ITEM: chunk_tree.validate_chunk_item,
}

KeyRules = Tuple[FrozenSet[int], Callable]


@lru_cache(maxsize=None)
def rules_for(tree: int) -> KeyRules:
    """
    Key types a tree may hold plus a predicate every key must satisfy.

    Trees without dedicated rules are treated as filesystem trees.
    """
    if tree == constants.ROOT_TREE_OBJECTID:
        types = {constants.UNTYPED, constants.INODE_ITEM, constants.INODE_REF,
                 constants.DIR_ITEM, constants.EXTENT_DATA, constants.ROOT_ITEM}

        def is_valid_key(key):
            return key.objectid > 0 or (key.type == constants.UNTYPED and
                                        key.objectid == constants.FREE_SPACE_OBJECTID)
    elif tree == constants.EXTENT_TREE_OBJECTID:
        types = {constants.EXTENT_ITEM, constants.METADATA_ITEM, constants.EXTENT_DATA_REF,
                 constants.SHARED_DATA_REF, constants.BLOCK_GROUP_ITEM}

        def is_valid_key(key):
            return key.is_valid_objectid(key.type != constants.BLOCK_GROUP_ITEM) and key.offset >= 0
    elif tree == constants.CSUM_TREE_OBJECTID:
        types = {constants.EXTENT_CSUM}

        def is_valid_key(key):
            return key.objectid == constants.EXTENT_CSUM_OBJECTID and key.offset > 0
    elif tree == constants.CHUNK_TREE_OBJECTID:
        types = {constants.DEV_ITEM, constants.CHUNK_ITEM}

        def is_valid_key(key):
            return key.is_valid_objectid() and key.offset > 0
    else:
        types = {constants.INODE_ITEM, constants.INODE_REF, constants.XATTR_ITEM,
                 constants.DIR_ITEM, constants.DIR_INDEX, constants.EXTENT_DATA,
                 constants.VERITY_DESC_ITEM}

        def is_valid_key(key):
            return key.offset >= 0

    return frozenset(types), is_valid_key


def is_valid_key_for(key, tree: int) -> bool:
    types, is_valid_key = rules_for(tree)
    return key.type in types and is_valid_key(key)


def block_size_of(header) -> int:
    return header.block.size if header.block is not None else constants.BLOCK_SIZE


def validate_leaf_item(item: LeafItem, header, filesystem_state=None, throughout=True) -> bool:
    item.corruption = LeafCorruption()
    corruption = item.corruption
    if item.key is None or item.offset is None:
        return corruption.is_valid()

    block_size = block_size_of(header)
    if (constants.HEADER_SIZE + item.offset + 4 > block_size or
            item.offset < constants.LEAF_ITEM_SIZE * header.nritems):
        return corruption.is_valid()
    corruption.offset = False

    if (item.size <= 0 or item.size > MAX_DATA_SIZE or
            constants.HEADER_SIZE + item.offset + item.size > block_size):
        return corruption.is_valid()
    corruption.size = False

    if not is_valid_key_for(item.key, header.owner):
        return corruption.is_valid()

    validate = LEAF_VALIDATORS.get(item.key.type)
    if validate is None:
        return corruption.is_valid()

    corruption.set_valid()
    validate(item, header, filesystem_state, throughout)
    if not corruption.data:
        corruption.size = item.size != item.size_read

    return corruption.is_valid()


def validate_node_item(item: NodeItem, header, filesystem_state=None, throughout=True) -> bool:
    item.corruption = NodeCorruption()
    corruption = item.corruption
    if item.key is None:
        return corruption.is_valid()

    corruption.key = not is_valid_key_for(item.key, header.owner)

    if item.block_number is not None:
        sectorsize = header.block.sectorsize if header.block is not None else constants.SECTOR_SIZE
        corruption.block = (item.block_number <= 0 or
                            item.block_number & (sectorsize - 1) != 0 or
                            item.block_number >= MAX_BLOCK)

    if item.generation is not None:
        corruption.generation = item.generation <= 0

    return corruption.is_valid()


def validate_item(item, header, filesystem_state=None, throughout=True) -> bool:
    if isinstance(item, LeafItem):
        return validate_leaf_item(item, header, filesystem_state, throughout)
    return validate_node_item(item, header, filesystem_state, throughout)


def validate_node_items(items: List[NodeItem], header, filesystem_state=None, throughout=True) -> bool:
    """Validate every node item, two items pointing at the same child are both faulted"""
    all_valid = True
    seen = {}
    for i, item in enumerate(items):
        if not validate_node_item(item, header, filesystem_state, throughout):
            all_valid = False
        if item.block_number in seen:
            item.corruption.block = True
            items[seen[item.block_number]].corruption.block = True
            all_valid = False
        else:
            seen[item.block_number] = i
    return all_valid


def validate_leaf_items(items: List[LeafItem], header, filesystem_state=None, throughout=True) -> bool:
    """
    Validate every leaf item plus the rules that span items.

    Keys must be strictly increasing, item payloads must be packed back
    to back from the end of the block, and no two items may share an
    offset or a key.
    """
    all_valid = True
    offsets = {}
    keys = {}
    max_objectid = None
    if filesystem_state is not None and filesystem_state.superblock is not None:
        nodesize = filesystem_state.superblock.nodesize
    else:
        nodesize = block_size_of(header)

    for i, item in enumerate(items):
        if not validate_leaf_item(item, header, filesystem_state, throughout):
            all_valid = False
        if item.corruption.offset:
            continue

        prev_item = items[i - 1] if i > 0 else None
        if not item.corruption.head:
            if max_objectid is not None and item.key.objectid < max_objectid:
                item.corruption.head = True
                all_valid = False
            elif (prev_item is not None and prev_item.key is not None and
                  item.key.objectid == prev_item.key.objectid and
                  item.key.as_tuple()[1:] <= prev_item.key.as_tuple()[1:]):
                item.corruption.head = True
                all_valid = False
        max_objectid = item.key.objectid if max_objectid is None else max(max_objectid, item.key.objectid)

        if prev_item is None:
            item.corruption.offset = item.offset + item.size != nodesize - constants.HEADER_SIZE
        elif not prev_item.corruption.offset:
            item.corruption.offset = item.offset + item.size != prev_item.offset

        if item.offset in offsets:
            item.corruption.offset = True
            offsets[item.offset].corruption.offset = True
            all_valid = False
        else:
            offsets[item.offset] = item

        key = item.key.as_tuple()
        if key in keys:
            item.corruption.head = True
            keys[key].corruption.head = True
            all_valid = False
        else:
            keys[key] = item

        if item.corruption.is_corrupted():
            all_valid = False

    return all_valid
