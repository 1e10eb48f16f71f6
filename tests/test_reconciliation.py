"""Tests for filesystem wide reconciliation against the reference index.

Tests cover:
1. Tree selectors and statistics merging
2. Generation mismatches fixed from a newer copy
3. Invalid blocks fixed from their mirrors
4. Dry-run never touching the devices
5. Parent keys patched from the first key of the child
6. Older unreferenced copies used when no copy has the expected generation
"""

import pytest

from btrfs_recovery import constants
from btrfs_recovery.exceptions import UnknownTreeError, UnresolvedAmbiguityError
from btrfs_recovery.recovery.filesystem import FilesystemReconciler, RecoveryStats, resolve_tree, sum_stats

from conftest import (DEVICE_UUID, FSID, build_leaf, build_node, corrupt, default_leaf_items, leaf_payload_offset,
                      record_block, record_ref)

LEAF = 0x400000
NODE = 0x404000
FIRST = 0x100000
SECOND = 0x140000
PARENT = 0x180000
ROOT = 0x408000
ROOT_OFFSET = 0x1C0000
OLD_LEAF = 0x40C000
OLD_LEAF_OFFSET = 0x1C4000
OLD_NODE = 0x410000
OLD_NODE_OFFSET = 0x1C8000
STALE_KEY = (200, constants.INODE_REF, 256)


def reconciler_for(database, state, tmp_path, repair=False):
    return FilesystemReconciler(database, {state.fsid: state}, tmp_path / 'backup', repair=repair)


def backups(tmp_path):
    backup_dir = tmp_path / 'backup'
    return sorted(backup_dir.iterdir()) if backup_dir.exists() else []


class TestTreeSelector:

    def test_all_trees(self):
        assert resolve_tree('all') is None
        assert resolve_tree(None) is None

    def test_named_tree(self):
        assert resolve_tree('fs') == constants.FS_TREE_OBJECTID
        assert resolve_tree('extent') == constants.EXTENT_TREE_OBJECTID

    def test_tree_id(self):
        assert resolve_tree(constants.CSUM_TREE_OBJECTID) == constants.CSUM_TREE_OBJECTID

    def test_unknown_tree(self):
        with pytest.raises(UnknownTreeError):
            resolve_tree('quota')


class TestStats:

    def test_sum_stats(self):
        first = RecoveryStats({FSID: [1, 2]}, correctly_fixed=1, skipped_blocks={1: [{}]})
        second = RecoveryStats({FSID: [2, 3]}, correctly_fixed=1, partially_fixed=1, skipped_blocks={3: [{}]})

        total = sum_stats([first, second])

        assert total.corrupted_blocks == {FSID: [1, 2, 3]}
        assert total.corrupted_count == 3
        assert total.correctly_fixed == 2
        assert total.partially_fixed == 1
        assert total.skipped_blocks == {3: [{}]}
        assert first.corrupted_blocks == {FSID: [1, 2]}

    def test_discard_corrupted(self):
        stats = RecoveryStats({FSID: [1, 2]})
        stats.discard_corrupted(FSID, 2)
        stats.discard_corrupted(FSID, 5)

        assert stats.corrupted_blocks == {FSID: [1]}


@pytest.fixture
def good_leaf():
    return build_leaf(LEAF)


@pytest.fixture
def damaged_leaf(good_leaf):
    return corrupt(good_leaf, leaf_payload_offset(good_leaf, 2))


@pytest.fixture
def parent_node(device, database):
    node = build_node(NODE, [((257, constants.INODE_REF, 256), LEAF, 10)])
    device.place(PARENT, node)
    record_block(database, node, PARENT)
    record_ref(database, NODE, LEAF, 10)
    return node


class TestInvalidBlocks:
    """A leaf with a damaged DUP copy and an intact one."""

    @pytest.fixture
    def mirrored_leaf(self, device, database, parent_node, good_leaf, damaged_leaf):
        device.place(FIRST, damaged_leaf)
        device.place(SECOND, good_leaf)
        record_block(database, damaged_leaf, FIRST, is_valid=False)
        record_block(database, good_leaf, SECOND)

    def test_dry_run(self, indexed_state, database, device, tmp_path, mirrored_leaf, damaged_leaf):
        stats = reconciler_for(database, indexed_state, tmp_path).run()

        assert stats.corrupted_count == 1
        assert stats.correctly_fixed == 1
        assert stats.partially_fixed == 0
        assert stats.skipped_blocks == {}
        assert device.writes == 0
        assert device.read(FIRST) == damaged_leaf
        assert backups(tmp_path) == []

    def test_repair(self, indexed_state, database, device, tmp_path, mirrored_leaf, good_leaf, damaged_leaf):
        stats = reconciler_for(database, indexed_state, tmp_path, repair=True).run('fs')

        assert stats.correctly_fixed == 1
        assert device.read(FIRST) == good_leaf
        assert device.read(SECOND) == good_leaf
        saved = backups(tmp_path)
        assert len(saved) == 1
        assert saved[0].name.startswith(f"{LEAF}_{DEVICE_UUID.hex()}_{FIRST}_")
        assert saved[0].read_bytes() == damaged_leaf

    def test_other_tree_selected(self, indexed_state, database, device, tmp_path, mirrored_leaf):
        stats = reconciler_for(database, indexed_state, tmp_path, repair=True).run('extent')

        assert stats.corrupted_count == 0
        assert device.writes == 0

    def test_single_damaged_copy_is_skipped(self, indexed_state, database, device, tmp_path, parent_node,
                                            damaged_leaf):
        device.place(FIRST, damaged_leaf)
        record_block(database, damaged_leaf, FIRST, is_valid=False)

        stats = reconciler_for(database, indexed_state, tmp_path, repair=True).run()

        assert stats.corrupted_count == 1
        assert stats.correctly_fixed == 0
        assert list(stats.skipped_blocks) == [LEAF]
        assert device.writes == 0

    def test_already_fixed_on_disk(self, indexed_state, database, device, tmp_path, parent_node, good_leaf):
        """The index is older than the device contents."""
        device.place(FIRST, good_leaf)
        record_block(database, good_leaf, FIRST, is_valid=False)

        stats = reconciler_for(database, indexed_state, tmp_path, repair=True).run()

        assert stats.corrupted_count == 0
        assert device.writes == 0


class TestGenerationMismatches:
    """The parent expects a newer generation than the copy at this offset holds."""

    @pytest.fixture
    def stale_copy(self, device, database, parent_node):
        stale = build_leaf(LEAF, generation=9)
        fresh = build_leaf(LEAF, generation=10)
        device.place(FIRST, stale)
        device.place(SECOND, fresh)
        record_block(database, stale, FIRST)
        record_block(database, fresh, SECOND)
        return stale, fresh

    def test_dry_run(self, indexed_state, database, device, tmp_path, stale_copy):
        stale, fresh = stale_copy

        stats = reconciler_for(database, indexed_state, tmp_path).run()

        assert stats.corrupted_count == 1
        assert stats.correctly_fixed == 1
        assert device.writes == 0
        assert device.read(FIRST) == stale

    def test_repair(self, indexed_state, database, device, tmp_path, stale_copy):
        stale, fresh = stale_copy

        stats = reconciler_for(database, indexed_state, tmp_path, repair=True).run()

        assert stats.correctly_fixed == 1
        assert device.read(FIRST) == fresh
        assert [path.read_bytes() for path in backups(tmp_path)] == [stale]

    def test_limited_to_block_numbers(self, indexed_state, database, device, tmp_path, stale_copy):
        stats = reconciler_for(database, indexed_state, tmp_path, repair=True).run(block_numbers=[NODE])

        assert stats.corrupted_count == 0
        assert device.writes == 0


def record_branch_mismatch(database, bytenr, child, key, device_uuid=DEVICE_UUID):
    """The indexer found the first key of bytenr differing from its parent's key"""
    database.conn.execute(
        "INSERT INTO corruptBranches (deviceUuid, bytenr, child, objectid, type, offset) VALUES (?, ?, ?, ?, ?, ?)",
        (device_uuid, bytenr, child, *key))
    database.conn.commit()


class TestBranchMismatches:
    """The root points at a node with a key that differs from the node's first key."""

    @pytest.fixture
    def stale_root(self, device, database, parent_node):
        root = build_node(ROOT, [(STALE_KEY, NODE, 10)], level=2)
        device.place(ROOT_OFFSET, root)
        record_block(database, root, ROOT_OFFSET)
        record_ref(database, ROOT, NODE, 10, key=STALE_KEY)
        record_branch_mismatch(database, NODE, LEAF, (257, constants.INODE_REF, 256))
        return root

    @pytest.fixture
    def child_leaf(self, device, database):
        leaf = build_leaf(LEAF)
        device.place(FIRST, leaf)
        record_block(database, leaf, FIRST)
        return leaf

    def test_parent_key_patched(self, indexed_state, database, device, tmp_path, stale_root, child_leaf):
        """The child agrees with the node, so the root's key is the one that is wrong."""
        stats = reconciler_for(database, indexed_state, tmp_path, repair=True).run()

        assert stats.corrupted_count == 1
        assert stats.correctly_fixed == 1
        assert device.read(ROOT_OFFSET) == build_node(ROOT, [((257, constants.INODE_REF, 256), NODE, 10)], level=2)
        assert [path.read_bytes() for path in backups(tmp_path)] == [stale_root]

    def test_dry_run(self, indexed_state, database, device, tmp_path, stale_root, child_leaf):
        stats = reconciler_for(database, indexed_state, tmp_path).run()

        assert stats.correctly_fixed == 1
        assert device.writes == 0
        assert device.read(ROOT_OFFSET) == stale_root

    def test_already_patched_parent_is_left_alone(self, indexed_state, database, device, tmp_path, stale_root,
                                                  child_leaf):
        patched = build_node(ROOT, [((257, constants.INODE_REF, 256), NODE, 10)], level=2)
        device.place(ROOT_OFFSET, patched)

        stats = reconciler_for(database, indexed_state, tmp_path, repair=True).run()

        assert stats.correctly_fixed == 0
        assert device.writes == 0

    def test_child_with_other_first_key_is_ambiguous(self, indexed_state, database, device, tmp_path, stale_root):
        """Node and child disagree too, there is no telling which key is right."""
        leaf = build_leaf(LEAF, items=default_leaf_items()[1:])
        device.place(FIRST, leaf)
        record_block(database, leaf, FIRST)

        with pytest.raises(UnresolvedAmbiguityError):
            reconciler_for(database, indexed_state, tmp_path, repair=True).run()
        assert device.writes == 0


class TestUnreferencedReplacement:
    """No copy of the expected generation exists, an older unreferenced copy of the leaf is used."""

    @pytest.fixture
    def stale_leaf(self, device, database, parent_node):
        stale = build_leaf(LEAF, generation=8)
        device.place(FIRST, stale)
        record_block(database, stale, FIRST)
        return stale

    @pytest.fixture
    def unreferenced_copy(self, device, database):
        """Leaf and the node that pointed at it before the tree was rewritten elsewhere"""
        old_leaf = build_leaf(OLD_LEAF, generation=7)
        old_node = build_node(OLD_NODE, [((257, constants.INODE_REF, 256), OLD_LEAF, 7)], generation=7)
        device.place(OLD_LEAF_OFFSET, old_leaf)
        device.place(OLD_NODE_OFFSET, old_node)
        record_block(database, old_leaf, OLD_LEAF_OFFSET)
        record_block(database, old_node, OLD_NODE_OFFSET)

    def test_previous_block_found(self, indexed_state, database, tmp_path, parent_node, stale_leaf,
                                  unreferenced_copy):
        reconciler = reconciler_for(database, indexed_state, tmp_path)
        parent_blocks = reconciler.find_parents(DEVICE_UUID, constants.FS_TREE_OBJECTID, NODE, indexed_state)
        unreferenced = database.unreferenced_blocks(FSID, constants.FS_TREE_OBJECTID)
        assert sorted(row['bytenr'] for row in unreferenced) == [OLD_LEAF, OLD_NODE]

        previous = reconciler.find_previous_block({'bytenr': LEAF, 'expectedOwner': constants.FS_TREE_OBJECTID},
                                                  parent_blocks, unreferenced, indexed_state)

        assert previous.header.bytenr == OLD_LEAF
        assert previous.device_offset == OLD_LEAF_OFFSET

    def test_repair(self, indexed_state, database, device, tmp_path, stale_leaf, unreferenced_copy):
        """The old copy is written in place with the expected block number and generation."""
        stats = reconciler_for(database, indexed_state, tmp_path, repair=True).run()

        assert stats.corrupted_count == 1
        assert stats.correctly_fixed == 0
        assert stats.partially_fixed == 1
        assert device.read(FIRST) == build_leaf(LEAF, generation=10)
        assert device.read(OLD_LEAF_OFFSET) == build_leaf(OLD_LEAF, generation=7)
        assert [path.read_bytes() for path in backups(tmp_path)] == [stale_leaf]

    def test_dry_run(self, indexed_state, database, device, tmp_path, stale_leaf, unreferenced_copy):
        stats = reconciler_for(database, indexed_state, tmp_path).run()

        assert stats.partially_fixed == 1
        assert device.writes == 0
        assert device.read(FIRST) == stale_leaf

    def test_nothing_to_fall_back_to(self, indexed_state, database, device, tmp_path, stale_leaf):
        stats = reconciler_for(database, indexed_state, tmp_path, repair=True).run()

        assert stats.partially_fixed == 0
        assert list(stats.skipped_blocks) == [LEAF]
        assert device.writes == 0
