"""Tests for device access, backups and dry-run writes."""

import xxhash

from btrfs_recovery.core.block import Block
from btrfs_recovery.core.loader import each_block, load_block_at
from btrfs_recovery.recovery.device_io import (block_backup_filename, copy_block, copy_block_to_file,
                                               restore_backup, swap_header_on_device, write_block)
from btrfs_recovery.utils import swap_header

from conftest import DEVICE_UUID, NODESIZE, build_leaf, corrupt, leaf_payload_offset

LEAF = 0x400000
FIRST = 0x100000
SECOND = 0x140000
MISSING_DEVICE = b'\x66' * 16


class TestFilesystemState:

    def test_device_known_by_uuid(self, state, device):
        assert state.device_uuids == [DEVICE_UUID]
        with state.using_device(DEVICE_UUID) as io:
            io.seek(0x10040)
            assert io.read(8) == b'_BHRfS_M'

    def test_unknown_device_yields_none(self, state):
        with state.using_device(MISSING_DEVICE) as io:
            assert io is None

    def test_offsets_of_a_block(self, state, resolver):
        resolver.add(LEAF, DEVICE_UUID, FIRST)
        resolver.add(LEAF, DEVICE_UUID, SECOND)

        infos = state.get_offsets_info([LEAF])[LEAF]

        assert [info.physical for info in infos] == [FIRST, SECOND]
        assert state.get_offsets_info([0x800000]) == {0x800000: []}

    def test_each_block_yields_every_copy(self, state, resolver, device):
        good = build_leaf(LEAF)
        device.place(FIRST, corrupt(good, leaf_payload_offset(good, 0)))
        device.place(SECOND, good)
        resolver.add(LEAF, DEVICE_UUID, FIRST)
        resolver.add(LEAF, DEVICE_UUID, SECOND)

        blocks = list(each_block(LEAF, state))

        assert [block.device_offset for block in blocks] == [FIRST, SECOND]
        assert [block.is_valid() for block in blocks] == [False, True]
        assert all(block.device == DEVICE_UUID for block in blocks)

    def test_copy_on_missing_device_skipped(self, state, resolver, device):
        device.place(FIRST, build_leaf(LEAF))
        resolver.add(LEAF, MISSING_DEVICE, SECOND)
        resolver.add(LEAF, DEVICE_UUID, FIRST)

        assert [block.device_offset for block in each_block(LEAF, state)] == [FIRST]
        assert load_block_at(SECOND, MISSING_DEVICE, state) is None


class TestBackups:

    def test_backup_filename(self):
        assert block_backup_filename(LEAF, DEVICE_UUID, FIRST) == f"{LEAF}_{DEVICE_UUID.hex()}_{FIRST}.bin"
        assert block_backup_filename(LEAF, '/dev/sdb', FIRST) == f"{LEAF}_/dev/sdb_{FIRST}.bin"

    def test_backup_named_after_content(self, state, device, tmp_path):
        leaf = build_leaf(LEAF)
        device.place(FIRST, leaf)
        target = tmp_path / block_backup_filename(LEAF, DEVICE_UUID, FIRST)

        path = copy_block_to_file(DEVICE_UUID, FIRST, state, target)

        digest = format(xxhash.xxh64(leaf).intdigest(), 'x')
        assert path.name == f"{LEAF}_{DEVICE_UUID.hex()}_{FIRST}_{digest}.bin"
        assert path.read_bytes() == leaf

    def test_pretend_backup_writes_nothing(self, state, device, tmp_path):
        device.place(FIRST, build_leaf(LEAF))

        path = copy_block_to_file(DEVICE_UUID, FIRST, state, tmp_path / 'backup' / 'block.bin', pretend=True)

        assert path is not None
        assert not path.exists()
        assert not (tmp_path / 'backup').exists()

    def test_backup_of_missing_device(self, state, tmp_path):
        assert copy_block_to_file(MISSING_DEVICE, FIRST, state, tmp_path / 'block.bin') is None


class TestWrites:

    def test_copy_block(self, state, device):
        leaf = build_leaf(LEAF)
        device.place(FIRST, leaf)

        assert copy_block(DEVICE_UUID, FIRST, state, DEVICE_UUID, SECOND) == NODESIZE
        assert device.read(SECOND) == leaf

    def test_pretend_copy_writes_nothing(self, state, device):
        device.place(FIRST, build_leaf(LEAF))

        assert copy_block(DEVICE_UUID, FIRST, state, DEVICE_UUID, SECOND, pretend=True) == 0
        assert device.writes == 0
        assert device.read(SECOND) == bytes(NODESIZE)

    def test_copy_to_missing_device(self, state, device):
        device.place(FIRST, build_leaf(LEAF))

        assert copy_block(DEVICE_UUID, FIRST, state, MISSING_DEVICE, SECOND) is None

    def test_swap_header_on_device(self, state, device):
        leaf = build_leaf(LEAF)
        device.place(FIRST, swap_header(leaf))

        assert swap_header_on_device(DEVICE_UUID, FIRST, state, pretend=True) == 0
        assert device.writes == 0
        assert swap_header_on_device(DEVICE_UUID, FIRST, state) == 1024
        assert device.read(FIRST) == leaf

    def test_write_block(self, state, device):
        block = Block(build_leaf(LEAF))

        assert write_block(block, DEVICE_UUID, FIRST, state) == NODESIZE
        assert device.read(FIRST) == bytes(block.buffer)

    def test_restore_backup(self, state, device, tmp_path):
        leaf = build_leaf(LEAF)
        backup = tmp_path / 'block.bin'
        backup.write_bytes(leaf)

        assert restore_backup(backup, DEVICE_UUID, FIRST, state) == NODESIZE
        assert device.read(FIRST) == leaf

    def test_write_after_read_sees_new_bytes(self, state, device):
        """Cached read handles don't hide what was just written."""
        device.place(FIRST, build_leaf(LEAF, generation=3))
        assert load_block_at(FIRST, DEVICE_UUID, state).header.generation == 3

        write_block(Block(build_leaf(LEAF, generation=4)), DEVICE_UUID, FIRST, state)

        assert load_block_at(FIRST, DEVICE_UUID, state).header.generation == 4
