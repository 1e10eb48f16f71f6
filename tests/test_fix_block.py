"""Tests for the block repair engine.

Tests cover:
1. Reconstruction from mirrors with the original checksum
2. Header swapped copies
3. Partial repairs when no copy is intact
4. Foreign candidates (other tree, other filesystem, future generation)
5. Node blocks and checksum tree leaves
6. Item records rebuilt from a mirror with a different item count
7. Extent tree items recovered without any mirror
"""

import struct

import pytest

from btrfs_recovery import constants
from btrfs_recovery.core.block import Block
from btrfs_recovery.core.checksum import calculate_checksum
from btrfs_recovery.core.superblock import Superblock
from btrfs_recovery.exceptions import UnresolvedAmbiguityError
from btrfs_recovery.recovery.block import FixResult, candidate_rank, fix_block, is_foreign, should_reject
from btrfs_recovery.recovery.database import ReferenceIndex
from btrfs_recovery.recovery.extent_tree import fix_extent_refs
from btrfs_recovery.recovery.leaf_item import recover_leaf_item_keys, restore_leaf_items
from btrfs_recovery.utils import swap_header

from conftest import (DEVICE_UUID, FSID, SECTORSIZE, build_leaf, build_node, build_superblock, corrupt,
                      default_leaf_items, leaf_payload_offset, load, record_block)

BYTENR = 0x400000
EXTENT_LEAF = 0x410000
EXTENT_START = 0x1000000
FILE_LEAF = 0x500000


@pytest.fixture
def good_leaf():
    return build_leaf(BYTENR)


def corrupt_item_data(buffer, item_id):
    """Overwrite the INODE_REF index of an item, leaving the stored checksum as it was"""
    return corrupt(buffer, leaf_payload_offset(buffer, item_id))


class TestFixFromMirrors:
    """Copies that differ in a few items are merged back into the original block."""

    def test_corrupted_payload_restored_from_mirror(self, good_leaf):
        """A damaged item payload is taken from the intact mirror."""
        damaged = load(corrupt_item_data(good_leaf, 2))
        assert damaged.is_valid() is False
        assert [item.id for item in damaged.get_corrupted_items()] == [2]

        result = fix_block([damaged, load(good_leaf)])

        assert result.successful is True
        assert bytes(result.block.buffer) == good_leaf

    def test_corrupted_item_record_restored_from_mirror(self, good_leaf):
        """An item record pointing outside the block is copied from the mirror."""
        record = constants.HEADER_SIZE + 3 * constants.LEAF_ITEM_SIZE + constants.KEY_SIZE
        damaged = load(corrupt(good_leaf, record, b'\xff\xff\x00\x00'))
        assert damaged.items[3].corruption.offset

        result = fix_block([load(good_leaf), damaged])

        assert result.successful is True
        assert bytes(result.block.buffer) == good_leaf

    def test_intact_block_is_kept(self, good_leaf):
        """Fixing a block that is already fine changes nothing."""
        result = fix_block([load(good_leaf)])

        assert result.successful is True
        assert bytes(result.block.buffer) == good_leaf

    def test_swapped_header_restored(self, good_leaf):
        """A block whose header landed 512 bytes too far is swapped back."""
        swapped = load(swap_header(good_leaf))
        assert not swapped.header.is_valid()

        result = fix_block([swapped])

        assert result.successful is True
        assert result.block.header_swapped is True
        assert bytes(result.block.buffer) == good_leaf

    def test_no_blocks(self):
        """Nothing to work with gives an empty result."""
        assert fix_block([]) == FixResult()


class TestPartialRepair:
    """Without an intact copy the best structurally valid block wins."""

    def test_unrecoverable_tail_item_is_dropped(self, good_leaf):
        """Both copies lost the last item, the other damage is repaired and the tail dropped."""
        first = load(corrupt_item_data(corrupt_item_data(good_leaf, 1), 4))
        second = load(corrupt_item_data(good_leaf, 4))

        result = fix_block([first, second])

        assert result.successful is False
        assert result.block.is_valid() is True
        assert result.block.header.nritems == 4
        assert result.block.get_corrupted_items() == []
        assert result.block.checksum_matches()

    def test_result_better_than_every_input(self, good_leaf):
        """The result has fewer corrupted items than any of the inputs."""
        first = load(corrupt_item_data(corrupt_item_data(good_leaf, 1), 4))
        second = load(corrupt_item_data(good_leaf, 4))

        result = fix_block([first, second])

        for block in (first, second):
            assert len(result.block.get_corrupted_items()) < len(block.get_corrupted_items())


class TestCandidateRanking:
    """Best-effort results are ranked by corrupted items relative to the item count."""

    @staticmethod
    def damaged_leaf(count, damaged):
        buffer = build_leaf(BYTENR, items=default_leaf_items(count))
        for item_id in range(damaged):
            buffer = corrupt_item_data(buffer, item_id)
        return load(buffer)

    def test_fewer_corrupted_items_win(self):
        worse = self.damaged_leaf(5, 2)
        better = self.damaged_leaf(5, 1)

        assert min([worse, better], key=candidate_rank) is better

    def test_equal_scores_keep_more_items(self):
        """10 items with 5 damaged ties with 8 items with 3 damaged, the larger block wins."""
        larger = self.damaged_leaf(10, 5)
        smaller = self.damaged_leaf(8, 3)
        assert len(larger.get_corrupted_items()) == 5
        assert len(smaller.get_corrupted_items()) == 3
        assert candidate_rank(larger)[0] == candidate_rank(smaller)[0]

        assert min([smaller, larger], key=candidate_rank) is larger


class TestItemTableRecovery:
    """Item records rebuilt from a mirror that holds one more item, so records can't be copied by slot."""

    @pytest.fixture
    def longer_mirror(self):
        return load(build_leaf(BYTENR, items=default_leaf_items(6)))

    def test_key_taken_from_record_at_same_offset(self, good_leaf, longer_mirror):
        """A record with a garbage key type gets the key of the mirror record sharing its payload offset."""
        type_position = constants.HEADER_SIZE + 2 * constants.LEAF_ITEM_SIZE + 8
        damaged = load(corrupt(good_leaf, type_position, b'\xaa'))
        assert damaged.items[2].corruption.head
        assert not damaged.items[2].corruption.offset

        result = fix_block([damaged, longer_mirror])

        assert result.successful is True
        assert bytes(result.block.buffer) == good_leaf

    def test_recover_leaf_item_keys(self, good_leaf, longer_mirror):
        type_position = constants.HEADER_SIZE + 2 * constants.LEAF_ITEM_SIZE + 8
        damaged = load(corrupt(good_leaf, type_position, b'\xaa'))

        recover_leaf_item_keys(damaged, [longer_mirror])

        assert damaged.items[2].key.as_tuple() == (259, constants.INODE_REF, 256)
        assert damaged.items[2].is_valid()
        assert bytes(damaged.buffer) == good_leaf

    def test_lost_records_restored_from_mirror(self, good_leaf, longer_mirror):
        """Zeroed records of the last two items are rebuilt from the mirror items following the last good key."""
        records = constants.HEADER_SIZE + 3 * constants.LEAF_ITEM_SIZE
        damaged = load(corrupt(good_leaf, records, bytes(2 * constants.LEAF_ITEM_SIZE)))
        assert [item.id for item in damaged.get_corrupted_items()] == [3, 4]

        result = fix_block([damaged, longer_mirror])

        assert result.successful is True
        assert bytes(result.block.buffer) == good_leaf

    def test_restore_leaf_items(self, good_leaf, longer_mirror):
        records = constants.HEADER_SIZE + 3 * constants.LEAF_ITEM_SIZE
        damaged = load(corrupt(good_leaf, records, bytes(2 * constants.LEAF_ITEM_SIZE)))

        restore_leaf_items(damaged, [longer_mirror])

        assert damaged.is_valid() is True
        assert [item.key.objectid for item in damaged.items] == [257, 258, 259, 260, 261]
        assert bytes(damaged.buffer) == good_leaf

    def test_other_tree_mirror_not_restored_from(self, good_leaf):
        records = constants.HEADER_SIZE + 3 * constants.LEAF_ITEM_SIZE
        damaged = load(corrupt(good_leaf, records, bytes(2 * constants.LEAF_ITEM_SIZE)))
        other_tree = load(build_leaf(BYTENR, owner=constants.ROOT_TREE_DIR_OBJECTID,
                                     items=default_leaf_items(6)))

        restore_leaf_items(damaged, [other_tree])

        assert damaged.is_valid() is False
        assert bytes(damaged.buffer) != good_leaf


def extent_payload(objectid=257, offset=0, refs=1):
    """EXTENT_ITEM of a data extent with one inline EXTENT_DATA_REF"""
    return (struct.pack('<QQQ', refs, 5, 1) + struct.pack('<B', constants.EXTENT_DATA_REF) +
            struct.pack('<QQQI', constants.FS_TREE_OBJECTID, objectid, offset, 1))


def extent_leaf(count=3):
    items = [((EXTENT_START + i * SECTORSIZE, constants.EXTENT_ITEM, SECTORSIZE),
              extent_payload(offset=i * SECTORSIZE))
             for i in range(count)]
    return build_leaf(EXTENT_LEAF, owner=constants.EXTENT_TREE_OBJECTID, items=items)


def record_file_extent(database, leaf, objectid, offset, disk_bytenr):
    """Index an EXTENT_DATA key of a file tree leaf pointing at disk_bytenr"""
    record_block(database, build_leaf(leaf), leaf)
    database.conn.execute(
        "INSERT INTO keys (deviceUuid, bytenr, objectid, type, offset, data) VALUES (?, ?, ?, ?, ?, ?)",
        (DEVICE_UUID, leaf, objectid, constants.EXTENT_DATA, offset, disk_bytenr))
    database.conn.commit()


class TestExtentTreeRepair:
    """Extent tree leaves are repaired from their own content, no mirror is available."""

    @pytest.fixture
    def good_extents(self):
        return extent_leaf()

    def test_lost_item_offset_recovered(self, good_extents):
        """The payload of item 1 ends where item 0 starts, only its size has to be guessed."""
        record = constants.HEADER_SIZE + constants.LEAF_ITEM_SIZE + constants.KEY_SIZE
        damaged = load(corrupt(good_extents, record, struct.pack('<I', 0xFFFF0000)))
        assert damaged.items[1].corruption.offset

        result = fix_block([damaged], tree=constants.EXTENT_TREE_OBJECTID)

        assert result.successful is True
        assert result.block.items[1].size == 53
        assert bytes(result.block.buffer) == good_extents

    def test_zero_refs_raised_to_inline_count(self, good_extents):
        damaged = load(corrupt(good_extents, leaf_payload_offset(good_extents, 1), struct.pack('<Q', 0)))
        assert damaged.items[1].corruption.data

        result = fix_block([damaged], tree=constants.EXTENT_TREE_OBJECTID)

        assert result.successful is True
        assert result.block.items[1].data.refs == 1
        assert bytes(result.block.buffer) == good_extents

    def test_data_ref_rewritten_from_single_backref(self, state, database):
        """An inline data ref naming the wrong inode is rewritten from the one file extent using the extent."""
        good = build_leaf(EXTENT_LEAF, owner=constants.EXTENT_TREE_OBJECTID,
                          items=[((EXTENT_START, constants.EXTENT_ITEM, SECTORSIZE), extent_payload())])
        objectid_position = leaf_payload_offset(good, 0) + 33
        damaged_buffer = corrupt(good, objectid_position, struct.pack('<Q', 999))
        record_file_extent(database, FILE_LEAF, 257, 0, EXTENT_START)
        state.index = ReferenceIndex(database, state.device_uuids)
        damaged = load(damaged_buffer, state.superblock, state)
        assert damaged.items[0].corruption.data

        result = fix_block([damaged], state, constants.EXTENT_TREE_OBJECTID)

        assert result.successful is True
        assert result.block.items[0].data.inline[0].data_ref.objectid == 257
        assert bytes(result.block.buffer) == good

    def test_backrefs_from_several_blocks_are_ambiguous(self, state, database):
        good = build_leaf(EXTENT_LEAF, owner=constants.EXTENT_TREE_OBJECTID,
                          items=[((EXTENT_START, constants.EXTENT_ITEM, SECTORSIZE), extent_payload())])
        damaged_buffer = corrupt(good, leaf_payload_offset(good, 0) + 33, struct.pack('<Q', 999))
        record_file_extent(database, FILE_LEAF, 257, 0, EXTENT_START)
        record_file_extent(database, FILE_LEAF + 0x4000, 258, 0, EXTENT_START)
        state.index = ReferenceIndex(database, state.device_uuids)
        damaged = load(damaged_buffer, state.superblock, state)

        with pytest.raises(UnresolvedAmbiguityError):
            fix_extent_refs(damaged, state)


class TestForeignCandidates:
    """Copies that can't belong to this block are neither accepted nor used as mirrors."""

    def test_other_tree_is_not_a_mirror(self, good_leaf):
        """An intact block of another tree never donates items."""
        damaged = load(corrupt_item_data(good_leaf, 2))
        other_tree = load(build_leaf(BYTENR, owner=constants.ROOT_TREE_DIR_OBJECTID))
        assert other_tree.is_valid()

        result = fix_block([damaged, other_tree], tree=constants.FS_TREE_OBJECTID)

        assert result.successful is False
        assert result.block.header.owner == constants.FS_TREE_OBJECTID
        assert result.block.items[2].is_corrupted()

    def test_future_generation_is_ignored(self, good_leaf):
        """A block newer than the superblock neither wins nor makes the real block look stale."""
        superblock = Superblock(build_superblock())
        damaged = load(corrupt_item_data(good_leaf, 2), superblock)
        future = load(build_leaf(BYTENR, generation=superblock.generation + 50), superblock)
        assert future.is_valid()

        result = fix_block([damaged, future], tree=constants.FS_TREE_OBJECTID)

        assert result.block is not None
        assert result.block.header.generation == 10
        assert result.block.items[2].is_corrupted()
        assert result.successful is False

    def test_other_filesystem_is_foreign(self, good_leaf):
        superblock = Superblock(build_superblock())
        stranger = load(build_leaf(BYTENR, fsid=b'\x99' * 16), superblock)

        assert is_foreign(stranger, constants.FS_TREE_OBJECTID)

    def test_stale_copy_is_rejected_as_base(self, good_leaf):
        """Older generations may serve as mirrors but never as the base of a repair."""
        stale = load(build_leaf(BYTENR, generation=5))

        assert not is_foreign(stale, constants.FS_TREE_OBJECTID)
        assert should_reject(stale, {constants.FS_TREE_OBJECTID: 10}, constants.FS_TREE_OBJECTID)


class TestNodeRepair:

    CHILDREN = [
        ((256, constants.INODE_ITEM, 0), 0x500000, 9),
        ((300, constants.INODE_ITEM, 0), 0x504000, 9),
        ((400, constants.INODE_ITEM, 0), 0x508000, 10),
    ]

    def test_zeroed_child_generation_restored(self):
        """A node item with a zero child generation is copied from the mirror."""
        good = build_node(BYTENR, self.CHILDREN)
        position = constants.HEADER_SIZE + constants.NODE_ITEM_SIZE + constants.KEY_SIZE + 8
        damaged = load(corrupt(good, position, b'\0' * 8))
        assert damaged.items[1].corruption.generation

        result = fix_block([damaged, load(good)])

        assert result.successful is True
        assert bytes(result.block.buffer) == good

    def test_duplicate_child_pointers_are_corrupted(self):
        children = [self.CHILDREN[0], (self.CHILDREN[1][0], 0x500000, 9)]
        block = load(build_node(BYTENR, children))

        assert block.items[0].corruption.block
        assert block.items[1].corruption.block


class TestChecksumTreeRepair:
    """Data checksums are recomputed from the data sectors they cover."""

    LOGICAL = 0x800000
    DATA_OFFSET = 0x180000
    MIRROR_OFFSET = 0x1A0000

    @staticmethod
    def sector(fill: int) -> bytes:
        return bytes([fill]) * SECTORSIZE

    def csum_leaf(self, stored):
        payload = b''.join(stored)
        items = [((constants.EXTENT_CSUM_OBJECTID, constants.EXTENT_CSUM, self.LOGICAL), payload)]
        return build_leaf(BYTENR, owner=constants.CSUM_TREE_OBJECTID, items=items)

    @staticmethod
    def data_csum(data: bytes) -> bytes:
        return calculate_checksum(data, constants.CSUM_TYPE_CRC32)[:4]

    def test_wrong_data_checksum_rewritten(self, device, resolver, state):
        device.place(self.DATA_OFFSET, self.sector(1) + self.sector(2))
        resolver.add(self.LOGICAL, DEVICE_UUID, self.DATA_OFFSET)
        leaf = self.csum_leaf([self.data_csum(self.sector(1)), b'\x12\x34\x56\x78'])
        block = load(leaf, state.superblock, state)
        assert block.items[0].corruption.data

        result = fix_block([block], state, constants.CSUM_TREE_OBJECTID)

        assert result.block.is_valid() is True
        assert result.block.items[0].data.csums[1] == self.data_csum(self.sector(2))
        # The stored block checksum covered the wrong value
        assert result.successful is False

    def test_differing_data_mirrors_are_ambiguous(self, device, resolver, state):
        device.place(self.DATA_OFFSET, self.sector(1) + self.sector(2))
        device.place(self.MIRROR_OFFSET, self.sector(1) + self.sector(3))
        resolver.add(self.LOGICAL, DEVICE_UUID, self.DATA_OFFSET)
        resolver.add(self.LOGICAL, DEVICE_UUID, self.MIRROR_OFFSET)
        leaf = self.csum_leaf([self.data_csum(self.sector(1)), b'\x12\x34\x56\x78'])
        block = load(leaf, state.superblock, state)

        with pytest.raises(UnresolvedAmbiguityError):
            fix_block([block], state, constants.CSUM_TREE_OBJECTID)


def test_generation_ceiling_uses_superblock():
    """Blocks are only judged against a superblock of their own filesystem."""
    superblock = Superblock(build_superblock())
    block = Block(build_leaf(BYTENR), superblock)

    assert superblock.fsid == FSID
    assert not is_foreign(block, constants.FS_TREE_OBJECTID)
    assert is_foreign(block, constants.EXTENT_TREE_OBJECTID)
    assert struct.unpack_from('<Q', block.buffer, 48)[0] == BYTENR
