"""
btrfs-recovery - Filesystem state

Per filesystem context: the superblock, the devices that make it up,
cached read handles, logical to physical offset lookups and an optional
reference index.
"""

import logging
import weakref
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .. import constants
from ..exceptions import FilesystemError
from ..utils import device_to_string
from . import loader
from .block import Block
from .csum_tree import get_block_checksums
from .offsets import ChunkMapResolver, OffsetInfo
from .superblock import Superblock

logger = logging.getLogger(__name__)


def open_device(device, mode: str):
    """Devices are paths or objects with their own open(mode)"""
    if hasattr(device, 'open'):
        return device.open(mode)
    return open(device, mode)


class FilesystemState:
    """
    Everything known about one filesystem (one fsid).

    Args:
        device: First device, its superblock becomes the filesystem context
        resolver: Offset resolver, the chunk tree is used when omitted
        index: Optional ReferenceIndex for cross reference checks
    """

    def __init__(self, device, resolver=None, index=None):
        self.devices: Dict[bytes, Any] = {}
        self.resolver = resolver or ChunkMapResolver()
        self.index = index
        self._open_devices: Dict[str, Any] = {}
        self._offset_infos: Dict[int, List[OffsetInfo]] = {}
        self._data_cache: Dict[str, Dict[Any, Any]] = {}
        self.superblock: Optional[Superblock] = None

        if not self._load_superblock(device):
            raise FilesystemError(f"Invalid superblock on {device_to_string(device)}!")

        self.add_device(self.superblock.dev_item.uuid, device)

    def _load_superblock(self, device) -> Optional[Superblock]:
        with self.using_device(device) as io:
            io.seek(constants.SUPERBLOCK_OFFSETS[0])
            superblock = Superblock(io.read(constants.SUPERBLOCK_SIZE))
        if superblock.magic != constants.SUPERBLOCK_MAGIC:
            return None
        self.superblock = superblock
        return superblock

    @property
    def fsid(self) -> bytes:
        return self.superblock.fsid

    def add_device(self, device_uuid: bytes, device):
        self.devices[bytes(device_uuid)] = device

    def missing_device_count(self) -> int:
        return self.superblock.num_devices - len(self.devices)

    @property
    def device_uuids(self) -> List[bytes]:
        return list(self.devices.keys())

    def _resolve_device(self, device):
        if isinstance(device, (bytes, bytearray)):
            return self.devices.get(bytes(device))
        return device

    @contextmanager
    def using_device(self, device: Union[bytes, Any], write: bool = False) -> Iterator:
        """
        Yield an open handle for a device path, device object or device uuid.

        Read handles are cached for the lifetime of the state. A write
        closes the cached read handle first and uses its own rb+ handle.
        Unknown device uuids yield None.
        """
        device = self._resolve_device(device)
        if device is None:
            yield None
            return

        name = device_to_string(device)
        if write:
            cached = self._open_devices.pop(name, None)
            if cached is not None:
                cached.close()
            with open_device(device, 'rb+') as handle:
                yield handle
            return

        if name not in self._open_devices:
            self._open_devices[name] = open_device(device, 'rb')
        yield self._open_devices[name]

    def close(self):
        for handle in self._open_devices.values():
            handle.close()
        self._open_devices.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def get_offsets_info(self, block_numbers: Iterable[int]) -> Dict[int, List[OffsetInfo]]:
        block_numbers = list(block_numbers)
        missing = [bytenr for bytenr in block_numbers if bytenr not in self._offset_infos]
        if missing:
            resolved = self.resolver.resolve(self, missing)
            for bytenr in missing:
                self._offset_infos[bytenr] = resolved.get(bytenr, [])
        return {bytenr: self._offset_infos[bytenr] for bytenr in block_numbers}

    def each_offset(self, block_numbers: Union[int, Iterable[int]]) -> Iterator[Tuple[OffsetInfo, Any]]:
        """
        Yield (info, io) for every physical copy of the given blocks.

        The handle is positioned at info.physical. Copies on devices that
        are not present are skipped.
        """
        if isinstance(block_numbers, int):
            block_numbers = [block_numbers]

        for bytenr, infos in self.get_offsets_info(block_numbers).items():
            for info in infos:
                with self.using_device(info.device_uuid) as io:
                    if io is None:
                        logger.debug(f"Block {bytenr}: device {info.device_uuid.hex()} is missing")
                        continue
                    io.seek(info.physical)
                    yield info, io

    def data_cache(self, kind: str, key: Any, factory: Callable[[], Any], weak: bool = False) -> Any:
        """Compute once per key, weak caches drop entries with their key object"""
        cache = self._data_cache.setdefault(kind, weakref.WeakKeyDictionary() if weak else {})
        if key not in cache:
            cache[key] = factory()
        return cache[key]

    def get_block_checksums(self, block: Block) -> Dict[int, Dict[int, List[bytes]]]:
        return self.data_cache('csums', block, lambda: get_block_checksums(block, self), weak=True)

    def each_block(self, block_numbers, superblock_override=None, swap_header: bool = False,
                   skip_mirrors: bool = False) -> Iterator[Block]:
        return loader.each_block(block_numbers, self, superblock_override, swap_header, skip_mirrors)

    def find_valid_header_block(self, bytenr: int) -> Optional[Block]:
        """First copy of a block whose header passes the basic checks"""
        for info, io in self.each_offset(bytenr):
            data = io.read(self.superblock.nodesize)
            if not data:
                continue
            block = Block(data, self.superblock)
            if block.header.is_valid():
                return block
        return None
