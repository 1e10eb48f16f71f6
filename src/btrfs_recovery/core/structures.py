"""
btrfs-recovery - Block structures

Keys, block headers, leaf/node item records and their corruption vectors.
"""

import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .. import constants
from ..utils import encode_data
from .checksum import guess_checksum_type, strip_checksum

KEY_FORMAT = '<qBQ'
HEADER_FORMAT = '<32s16sQQ16sQqIB'


@dataclass
class Key:
    """Btrfs disk key, ordered by (objectid, type, offset)"""
    objectid: int
    type: int
    offset: int

    def as_tuple(self):
        return (self.objectid, self.type, self.offset)

    def is_valid_objectid(self, strict: bool = True) -> bool:
        return self.objectid > 0 or (not strict and self.objectid == 0)

    def pack(self) -> bytes:
        return struct.pack(KEY_FORMAT, self.objectid, self.type, self.offset)

    def to_dict(self) -> Dict[str, int]:
        return {'objectid': self.objectid, 'type': self.type, 'offset': self.offset}


@dataclass
class Timespec:
    sec: int
    nsec: int

    @property
    def datetime(self) -> Optional[datetime]:
        try:
            return datetime.fromtimestamp(self.sec, tz=timezone.utc).replace(microsecond=self.nsec // 1000)
        except (OverflowError, OSError, ValueError):
            return None


@dataclass
class Header:
    """Block header, the first HEADER_SIZE bytes of every tree block"""
    csum_field: bytes
    fsid: bytes
    bytenr: int
    flags: int
    chunk_tree_uuid: bytes
    generation: int
    owner: int
    nritems: int
    level: Optional[int]
    block: Any = field(default=None, repr=False, compare=False)

    @property
    def csum(self) -> bytes:
        return strip_checksum(self.csum_field)

    @csum.setter
    def csum(self, value: bytes):
        self.csum_field = bytes(value)[:constants.CSUM_FIELD_SIZE].ljust(constants.CSUM_FIELD_SIZE, b'\0')

    def is_node(self) -> bool:
        return self.level is not None and self.level > 0

    def is_leaf(self) -> bool:
        return self.level == 0

    def is_valid(self) -> bool:
        if self.level is None:
            return False

        return (self.generation > 0 and
                0 < self.nritems < constants.MAX_ITEMS and
                0 <= self.level <= constants.MAX_LEVEL)

    def get_checksum_type(self) -> int:
        return guess_checksum_type(self.csum)

    def pack(self) -> bytes:
        return struct.pack(HEADER_FORMAT, self.csum_field, self.fsid, self.bytenr,
                           self.flags, self.chunk_tree_uuid, self.generation,
                           self.owner, self.nritems, self.level or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'csum': '0x' + self.csum_field.hex(),
            'fsid': '0x' + self.fsid.hex(),
            'bytenr': self.bytenr,
            'flags': self.flags,
            'chunkTreeUUID': '0x' + self.chunk_tree_uuid.hex(),
            'generation': self.generation,
            'owner': self.owner,
            'nritems': self.nritems,
            'level': self.level,
        }


class LeafCorruption:
    """
    Independent corruption categories of a leaf item.

    head is also reported when offset or size are faulted. Validation
    starts with every category set and clears them as checks pass.
    """

    def __init__(self):
        self.reset()

    @property
    def head(self) -> bool:
        return self._head or self.offset or self.size

    @head.setter
    def head(self, value: bool):
        self._head = value

    def is_corrupted(self) -> bool:
        return self.head or self.data

    def is_valid(self) -> bool:
        return not self.is_corrupted()

    def reset(self):
        self._head = True
        self.offset = True
        self.size = True
        self.data = True

    def set_valid(self):
        self._head = False
        self.offset = False
        self.size = False
        self.data = False

    def __str__(self):
        if self.offset:
            return 'offset'
        if self.head:
            return 'head'
        if self.data:
            return 'data'
        return 'none'


class NodeCorruption:
    """Corruption categories of a node item (key, child pointer, child generation)"""

    def __init__(self):
        self.reset()

    @property
    def head(self) -> bool:
        return self.key or self.block or self.generation

    def is_corrupted(self) -> bool:
        return self.head

    def is_valid(self) -> bool:
        return not self.is_corrupted()

    def reset(self):
        self.key = True
        self.block = True
        self.generation = True

    def set_valid(self):
        self.key = False
        self.block = False
        self.generation = False

    def __str__(self):
        names = [name for name in ('key', 'block', 'generation') if getattr(self, name)]
        return ','.join(names) or 'none'


class LeafItem:
    """Leaf item record plus its decoded payload"""

    def __init__(self, item_id: int):
        self.id = item_id
        self.key: Optional[Key] = None
        self.offset: Optional[int] = None
        self.size: Optional[int] = None
        self.size_read: Optional[int] = None
        self.data = None
        self.corruption: Optional[LeafCorruption] = None

    def is_valid(self) -> Optional[bool]:
        if self.corruption is None:
            return None
        return self.corruption.is_valid()

    def is_corrupted(self) -> Optional[bool]:
        if self.corruption is None:
            return None
        return self.corruption.is_corrupted()

    def copy(self) -> 'LeafItem':
        """Shallow copy, the key is duplicated so it can be edited independently"""
        item = LeafItem(self.id)
        item.key = Key(*self.key.as_tuple()) if self.key else None
        item.offset = self.offset
        item.size = self.size
        item.size_read = self.size_read
        item.data = self.data
        item.corruption = self.corruption
        return item

    def pack_head(self) -> bytes:
        return self.key.pack() + struct.pack('<II', self.offset, self.size or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'corrupted': self.is_corrupted(),
            'key': self.key.to_dict() if self.key else None,
            'offset': self.offset,
            'size': self.size,
            'sizeRead': self.size_read,
            'data': encode_data(self.data),
        }


class NodeItem:
    """Node item record pointing at a child block"""

    def __init__(self, item_id: int):
        self.id = item_id
        self.key: Optional[Key] = None
        self.block_number: Optional[int] = None
        self.generation: Optional[int] = None
        self.corruption: Optional[NodeCorruption] = None

    def is_valid(self) -> Optional[bool]:
        if self.corruption is None:
            return None
        return self.corruption.is_valid()

    def is_corrupted(self) -> Optional[bool]:
        if self.corruption is None:
            return None
        return self.corruption.is_corrupted()

    def pack_head(self) -> bytes:
        return self.key.pack() + struct.pack('<QQ', self.block_number, self.generation)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'corrupted': self.is_corrupted(),
            'key': self.key.to_dict() if self.key else None,
            'blockNumber': self.block_number,
            'generation': self.generation,
        }
