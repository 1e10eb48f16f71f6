"""Shared fixtures: synthetic btrfs blocks, in-memory devices and reference index."""

import struct

import pytest

from btrfs_recovery import constants
from btrfs_recovery.core.block import Block
from btrfs_recovery.core.checksum import calculate_checksum
from btrfs_recovery.core.filesystem_state import FilesystemState
from btrfs_recovery.core.offsets import StaticOffsetResolver
from btrfs_recovery.core.structures import HEADER_FORMAT
from btrfs_recovery.core.superblock import SUPERBLOCK_FORMAT
from btrfs_recovery.recovery.database import Database, ReferenceIndex

NODESIZE = 16384
SECTORSIZE = 4096
FSID = bytes(range(1, 17))
DEVICE_UUID = bytes(range(17, 33))
CHUNK_TREE_UUID = b'\x42' * 16
SUPER_GENERATION = 100
DEVICE_SIZE = 0x200000


def with_checksum(buffer, csum_type=constants.CSUM_TYPE_CRC32) -> bytes:
    buffer = bytearray(buffer)
    csum = calculate_checksum(buffer[constants.CSUM_FIELD_SIZE:], csum_type)
    buffer[0:constants.CSUM_FIELD_SIZE] = csum
    return bytes(buffer)


def inode_ref(index: int, name: bytes) -> bytes:
    return struct.pack('<QH', index, len(name)) + name


def default_leaf_items(count: int = 5):
    """INODE_REF items of files in the top level directory"""
    return [((257 + i, constants.INODE_REF, 256), inode_ref(2 + i, f"file_{i}.txt".encode()))
            for i in range(count)]


def build_leaf(bytenr: int, generation: int = 10, owner: int = constants.FS_TREE_OBJECTID, items=None,
               fsid: bytes = FSID, nodesize: int = NODESIZE, checksum: bool = True) -> bytes:
    """
    Leaf block with payloads packed backwards from the end of the block.

    Args:
        items: [((objectid, type, offset), payload), ...]
    """
    items = default_leaf_items() if items is None else items
    buffer = bytearray(nodesize)
    buffer[0:constants.HEADER_SIZE] = struct.pack(HEADER_FORMAT, b'\0' * 32, fsid, bytenr, 1, CHUNK_TREE_UUID,
                                                  generation, owner, len(items), 0)
    data_end = nodesize - constants.HEADER_SIZE
    for i, (key, payload) in enumerate(items):
        data_end -= len(payload)
        record = struct.pack('<qBQII', *key, data_end, len(payload))
        start = constants.HEADER_SIZE + i * constants.LEAF_ITEM_SIZE
        buffer[start:start + constants.LEAF_ITEM_SIZE] = record
        start = constants.HEADER_SIZE + data_end
        buffer[start:start + len(payload)] = payload
    return with_checksum(buffer) if checksum else bytes(buffer)


def build_node(bytenr: int, children, generation: int = 10, owner: int = constants.FS_TREE_OBJECTID,
               level: int = 1, fsid: bytes = FSID, nodesize: int = NODESIZE) -> bytes:
    """
    Node block.

    Args:
        children: [((objectid, type, offset), child_bytenr, child_generation), ...]
    """
    buffer = bytearray(nodesize)
    buffer[0:constants.HEADER_SIZE] = struct.pack(HEADER_FORMAT, b'\0' * 32, fsid, bytenr, 1, CHUNK_TREE_UUID,
                                                  generation, owner, len(children), level)
    for i, (key, child, child_generation) in enumerate(children):
        start = constants.HEADER_SIZE + i * constants.NODE_ITEM_SIZE
        buffer[start:start + constants.NODE_ITEM_SIZE] = struct.pack('<qBQQQ', *key, child, child_generation)
    return with_checksum(buffer)


def leaf_payload_offset(buffer, item_id: int) -> int:
    """Absolute position of an item's payload inside a leaf buffer"""
    start = constants.HEADER_SIZE + item_id * constants.LEAF_ITEM_SIZE + constants.KEY_SIZE
    offset, = struct.unpack_from('<I', buffer, start)
    return constants.HEADER_SIZE + offset


def corrupt(buffer, position: int, value: bytes = b'\xff' * 8) -> bytes:
    """Overwrite bytes without touching the stored checksum"""
    buffer = bytearray(buffer)
    buffer[position:position + len(value)] = value
    return bytes(buffer)


def build_superblock(fsid: bytes = FSID, device_uuid: bytes = DEVICE_UUID, generation: int = SUPER_GENERATION,
                     nodesize: int = NODESIZE, csum_type: int = constants.CSUM_TYPE_CRC32,
                     num_devices: int = 1) -> bytes:
    dev_item = struct.pack('<QQQIIIQQQIBB16s16s', 1, DEVICE_SIZE, 0, SECTORSIZE, SECTORSIZE, SECTORSIZE,
                           0, 0, 0, 0, 0, 0, device_uuid, fsid)
    data = struct.pack(
        SUPERBLOCK_FORMAT,
        b'\0' * 32, fsid, constants.SUPERBLOCK_OFFSETS[0], 0, constants.SUPERBLOCK_MAGIC,
        generation, 0, 0, 0, 0, DEVICE_SIZE, 0, 6, num_devices,
        SECTORSIZE, nodesize, nodesize, SECTORSIZE, 0,
        generation, 0, 0, 0,
        csum_type, 0, 0, 0,
        dev_item, b'test', 0, 0, b'\0' * 16, b'\0' * 224, b'\0' * 2048,
    )
    buffer = bytearray(data.ljust(constants.SUPERBLOCK_SIZE, b'\0'))
    csum = calculate_checksum(buffer[constants.CSUM_FIELD_SIZE:], csum_type)
    buffer[0:constants.CSUM_FIELD_SIZE] = csum
    return bytes(buffer)


class DeviceHandle:
    """File-like view of a MemoryDevice, writes go straight to the device"""

    def __init__(self, device, writable: bool):
        self.device = device
        self.writable = writable
        self.position = 0
        self.closed = False

    def seek(self, offset: int, whence: int = 0) -> int:
        if whence == 0:
            self.position = offset
        elif whence == 1:
            self.position += offset
        else:
            self.position = len(self.device.data) + offset
        return self.position

    def tell(self) -> int:
        return self.position

    def read(self, size: int = -1) -> bytes:
        end = None if size is None or size < 0 else self.position + size
        data = bytes(self.device.data[self.position:end])
        self.position += len(data)
        return data

    def write(self, data) -> int:
        if not self.writable:
            raise OSError("Device opened read-only")
        data = bytes(data)
        end = self.position + len(data)
        if end > len(self.device.data):
            self.device.data.extend(bytes(end - len(self.device.data)))
        self.device.data[self.position:end] = data
        self.device.writes += 1
        self.position = end
        return len(data)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class MemoryDevice:
    """Block device kept in memory, counts every write"""

    def __init__(self, name: str, size: int = DEVICE_SIZE):
        self.name = name
        self.data = bytearray(size)
        self.writes = 0

    def open(self, mode: str) -> DeviceHandle:
        return DeviceHandle(self, '+' in mode or 'w' in mode)

    def place(self, offset: int, data: bytes):
        self.data[offset:offset + len(data)] = data

    def read(self, offset: int, size: int = NODESIZE) -> bytes:
        return bytes(self.data[offset:offset + size])

    def __str__(self):
        return f"memory:{self.name}"


def make_device(name: str = "sda", **superblock_options) -> MemoryDevice:
    device = MemoryDevice(name)
    device.place(constants.SUPERBLOCK_OFFSETS[0], build_superblock(**superblock_options))
    return device


def load(buffer, superblock=None, state=None) -> Block:
    block = Block(buffer, superblock)
    block.validate(state)
    return block


@pytest.fixture
def device():
    return make_device()


@pytest.fixture
def resolver():
    return StaticOffsetResolver()


@pytest.fixture
def state(device, resolver):
    fs = FilesystemState(device, resolver)
    yield fs
    fs.close()


@pytest.fixture
def database():
    db = Database(':memory:')
    db.create_schema()
    yield db
    db.close()


@pytest.fixture
def indexed_state(state, database):
    state.index = ReferenceIndex(database, state.device_uuids)
    return state


def record_block(database, block_buffer, offset: int, device_uuid: bytes = DEVICE_UUID, is_valid: bool = True,
                 fsid: bytes = FSID):
    """Insert a blocks row describing a block buffer placed at a device offset"""
    block = Block(block_buffer)
    header = block.header
    database.conn.execute(
        "INSERT INTO blocks (fsid, deviceUuid, offset, owner, level, bytenr, generation, isValid, csum) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (fsid, device_uuid, offset, header.owner, header.level, header.bytenr, header.generation,
         int(is_valid), header.csum))
    database.conn.commit()


def record_ref(database, parent: int, child: int, child_generation: int, owner: int = constants.FS_TREE_OBJECTID,
               key=(257, constants.INODE_REF, 256), device_uuid: bytes = DEVICE_UUID):
    database.conn.execute(
        "INSERT INTO refs (deviceUuid, bytenr, child, childGeneration, owner, objectid, type, offset) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (device_uuid, parent, child, child_generation, owner, *key))
    database.conn.commit()
