"""
btrfs-recovery - Tree block

A Block owns one mutable buffer. Header and items are parsed lazily and
must be re-parsed after any in-place edit of the buffer.
"""

from typing import Any, Dict, List, Optional

from .. import constants
from ..exceptions import BlockNotValidatedError
from ..utils import checksum_info, format_checksum, format_tree
from .checksum import calculate_checksum, checksum_matches
from .parser import parse_header, parse_items
from .structures import Header
from .validator import validate_leaf_items, validate_node_items


class Block:
    """One copy of a tree block as read from a device (or a repaired clone)"""

    def __init__(self, buffer, superblock=None):
        if buffer is None:
            raise ValueError("Invalid buffer!")
        self.buffer = bytearray(buffer)
        self.superblock = superblock
        self.device = None
        self.device_offset: Optional[int] = None
        self.header_swapped = False
        self._header: Optional[Header] = None
        self._items: Optional[List] = None
        self._is_valid: Optional[bool] = None
        self._is_validated = False

    @property
    def header(self) -> Header:
        if self._header is None:
            self._header = parse_header(self.buffer, self)
        return self._header

    @property
    def items(self) -> List:
        if self._items is None:
            self._items = parse_items(self.item_count, self.buffer, self.is_leaf(),
                                      self.get_checksum_type())
        return self._items

    def reparse(self):
        """Drop cached header and items, the buffer is the only source of truth"""
        self._header = None
        self._items = None

    def reparse_header(self):
        self._header = None

    def reparse_items(self):
        self._items = None

    def is_leaf(self) -> bool:
        return self.header.is_leaf()

    def is_node(self) -> bool:
        return self.header.is_node()

    @property
    def item_count(self) -> int:
        return min(self.header.nritems, constants.MAX_ITEMS)

    @property
    def size(self) -> int:
        if self.superblock is not None:
            return self.superblock.nodesize
        return constants.BLOCK_SIZE

    @property
    def sectorsize(self) -> int:
        if self.superblock is not None:
            return self.superblock.sectorsize
        return constants.SECTOR_SIZE

    def get_checksum_type(self) -> int:
        if self.superblock is not None:
            return self.superblock.csum_type
        return self.header.get_checksum_type()

    def get_checksum(self) -> Optional[bytes]:
        return calculate_checksum(self.buffer[constants.CSUM_FIELD_SIZE:], self.get_checksum_type())

    def checksum_matches(self) -> bool:
        return checksum_matches(self.get_checksum(), self.header.csum)

    def is_valid(self) -> Optional[bool]:
        if not self._is_validated:
            return None
        return self._is_valid

    def is_validated(self) -> bool:
        return self._is_validated

    def validate(self, filesystem_state=None, throughout: bool = True) -> bool:
        if self.is_leaf():
            self._is_valid = validate_leaf_items(self.items, self.header, filesystem_state, throughout)
        else:
            self._is_valid = validate_node_items(self.items, self.header, filesystem_state, throughout)
        self._is_validated = True
        return self._is_valid

    def get_corrupted_items(self) -> List:
        if not self._is_validated:
            raise BlockNotValidatedError("Block is not validated!")
        return [item for item in self.items if item.is_corrupted()]

    def copy(self) -> 'Block':
        block = Block(bytes(self.buffer), self.superblock)
        block.device = self.device
        block.device_offset = self.device_offset
        block.header_swapped = self.header_swapped
        return block

    def describe(self) -> str:
        """Header summary followed by one line per corrupted item"""
        header = self.header
        lines = [f"Block: {header.bytenr}", f"FSID: {header.fsid.hex()}"]
        info = checksum_info(self.get_checksum(), header.csum, self.get_checksum_type())
        lines.append(f"Checksum: {format_checksum(header.csum)} ({info})")
        lines.append(f"Owner: {format_tree(header.owner, True)}")
        lines.append(f"Flags: {header.flags}")
        lines.append(f"Generation: {header.generation}")
        lines.append(f"Items: {header.nritems}")
        if header.level is not None:
            lines.append(f"Level: {header.level} ({'LEAF' if header.level == 0 else 'NODE'})")

        if self._is_validated:
            for item in self.items:
                if not item.is_corrupted():
                    continue
                if self.is_leaf():
                    item_type = item.key.type if item.key else None
                    lines.append(f"Corrupted item {item.corruption} for #{item.id}: {item.offset}, type {item_type}")
                else:
                    item_type = item.key.type if item.key else None
                    lines.append(f"Corrupted item for #{item.id}: type: {item_type}, "
                                 f"block {item.block_number}, gen {item.generation}")
        return '\n'.join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'header': self.header.to_dict(),
            'items': [item.to_dict() for item in self.items],
        }

    def __repr__(self):
        return f"<Block bytenr={self.header.bytenr} gen={self.header.generation} owner={self.header.owner}>"
