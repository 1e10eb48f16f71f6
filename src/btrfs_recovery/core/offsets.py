"""
btrfs-recovery - Logical to physical address resolution

Every resolver answers the same question: where on which device do the
copies of a logical block live. Results are
{bytenr: [OffsetInfo(device_uuid, physical, logical), ...]}.
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from .. import constants
from .chunk_tree import ChunkData
from .extent_tree import BLOCK_GROUP_RAID0, BLOCK_GROUP_RAID10, BLOCK_GROUP_RAID5, BLOCK_GROUP_RAID6
from .parser import parse_header, parse_items

logger = logging.getLogger(__name__)

OffsetMap = Dict[int, List['OffsetInfo']]


@dataclass(frozen=True)
class OffsetInfo:
    device_uuid: bytes
    physical: int
    logical: int


@dataclass
class Chunk:
    """A chunk item together with the logical address it starts at"""
    logical_start: int
    data: ChunkData

    def contains(self, logical: int) -> bool:
        return self.logical_start <= logical < self.logical_start + self.data.length


def map_chunk(chunk: Chunk, logical: int) -> List[OffsetInfo]:
    """
    Map a logical address inside a chunk to its physical copies.

    Args:
        chunk: Chunk containing the address
        logical: Logical address

    Returns:
        One OffsetInfo per copy, empty for unsupported profiles
    """
    data = chunk.data
    offset = logical - chunk.logical_start
    profile = data.type

    if profile & (BLOCK_GROUP_RAID5 | BLOCK_GROUP_RAID6):
        logger.warning(f"Chunk at {chunk.logical_start}: RAID5/6 mapping is not supported")
        return []

    if not data.stripes:
        return []

    if profile & (BLOCK_GROUP_RAID0 | BLOCK_GROUP_RAID10):
        sub_stripes = data.sub_stripes if profile & BLOCK_GROUP_RAID10 and data.sub_stripes else 1
        factor = max(len(data.stripes) // sub_stripes, 1)
        stripe_nr = offset // data.stripe_len
        stripe_offset = offset % data.stripe_len
        first = (stripe_nr % factor) * sub_stripes
        physical_offset = (stripe_nr // factor) * data.stripe_len + stripe_offset
        stripes = data.stripes[first:first + sub_stripes]
        return [OffsetInfo(stripe.dev_uuid, stripe.offset + physical_offset, logical) for stripe in stripes]

    # SINGLE, DUP and RAID1 variants keep a full copy on every stripe
    return [OffsetInfo(stripe.dev_uuid, stripe.offset + offset, logical) for stripe in data.stripes]


class StaticOffsetResolver:
    """Fixed mapping, for offline use and tests"""

    def __init__(self, mapping: Optional[OffsetMap] = None):
        self.mapping: OffsetMap = dict(mapping or {})

    def add(self, bytenr: int, device_uuid: bytes, physical: int):
        self.mapping.setdefault(bytenr, []).append(OffsetInfo(device_uuid, physical, bytenr))

    def resolve(self, state, block_numbers: Sequence[int]) -> OffsetMap:
        return {bytenr: list(self.mapping[bytenr]) for bytenr in block_numbers if bytenr in self.mapping}


class ChunkMapResolver:
    """
    Resolve addresses through the chunk tree.

    Bootstraps from the system chunk array in the superblock, then walks
    the chunk tree starting at the superblock's chunk root.
    """

    def __init__(self):
        self.chunks: Optional[List[Chunk]] = None

    def load(self, state):
        superblock = state.superblock
        self.chunks = [Chunk(key.offset, chunk) for key, chunk in superblock.sys_chunks()
                       if key.type == constants.CHUNK_ITEM]
        seen = set()
        self._walk_chunk_tree(state, superblock.chunk_root, seen)
        self.chunks.sort(key=lambda chunk: chunk.logical_start)
        logger.debug(f"Loaded {len(self.chunks)} chunks")

    def _walk_chunk_tree(self, state, bytenr: int, seen: set):
        if bytenr in seen:
            return
        seen.add(bytenr)

        buffer = None
        for info in self.map_logical(bytenr):
            with state.using_device(info.device_uuid) as io:
                if io is None:
                    continue
                io.seek(info.physical)
                buffer = io.read(state.superblock.nodesize)
            if buffer:
                break
        if not buffer:
            logger.warning(f"Chunk tree block {bytenr} could not be read")
            return

        header = parse_header(buffer)
        if header.owner != constants.CHUNK_TREE_OBJECTID or header.level is None:
            logger.warning(f"Chunk tree block {bytenr} has unexpected owner {header.owner}")
            return

        count = min(header.nritems, constants.MAX_ITEMS)
        items = parse_items(count, buffer, header.is_leaf(), state.superblock.csum_type)
        if header.is_leaf():
            for item in items:
                if item.key is not None and item.key.type == constants.CHUNK_ITEM and item.data is not None:
                    if not any(chunk.logical_start == item.key.offset for chunk in self.chunks):
                        self.chunks.append(Chunk(item.key.offset, item.data))
        else:
            for item in items:
                if item.block_number:
                    self._walk_chunk_tree(state, item.block_number, seen)

    def map_logical(self, logical: int) -> List[OffsetInfo]:
        for chunk in self.chunks or []:
            if chunk.contains(logical):
                return map_chunk(chunk, logical)
        return []

    def resolve(self, state, block_numbers: Sequence[int]) -> OffsetMap:
        if self.chunks is None:
            self.load(state)
        result = {}
        for bytenr in block_numbers:
            infos = self.map_logical(bytenr)
            if infos:
                result[bytenr] = infos
        return result


class IndexOffsetResolver:
    """Use the device offsets recorded in the reference index"""

    def __init__(self, database):
        self.database = database

    def resolve(self, state, block_numbers: Sequence[int]) -> OffsetMap:
        result: OffsetMap = {}
        for row in self.database.offsets(state.device_uuids, block_numbers):
            info = OffsetInfo(row['deviceUuid'], row['offset'], row['bytenr'])
            infos = result.setdefault(row['bytenr'], [])
            if info not in infos:
                infos.append(info)
        return result


class RecoveryMapResolver:
    """
    Ask the external btrfs-recovery-map tool.

    Block numbers go on the command line, or on stdin when there are
    more than ten of them. The tool prints JSON keyed by block number.
    """

    def __init__(self, command: str = './btrfs-recovery-map'):
        self.command = command

    def resolve(self, state, block_numbers: Sequence[int]) -> OffsetMap:
        devices = [str(device) for device in state.devices.values()]
        cmd = [self.command, '-d', ','.join(devices)]
        numbers = [str(bytenr) for bytenr in block_numbers]
        stdin_data = ''
        if len(numbers) <= 10:
            cmd += numbers
        else:
            stdin_data = '\n'.join(numbers)

        try:
            result = subprocess.run(cmd, input=stdin_data, capture_output=True, text=True)
        except OSError as e:
            logger.error(f"Failed to execute: {' '.join(cmd)}\nError: {e}")
            return {}

        if result.returncode != 0:
            logger.error(f"Failed to execute: {' '.join(cmd)}\nExit code: {result.returncode}\nError: {result.stderr}")
            return {}

        output = result.stdout.strip()
        try:
            parsed = json.loads(output)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse offset info!\nDevices: {','.join(devices)}\n"
                         f"Blocks: {','.join(numbers)}\nJSON: {e}\n{output or '(empty)'}")
            return {}

        return self._convert(state, parsed)

    def _convert(self, state, parsed: Dict) -> OffsetMap:
        paths = {str(device): uuid for uuid, device in state.devices.items()}
        result: OffsetMap = {}
        for bytenr, infos in parsed.items():
            for info in _flatten(infos):
                if info.get('device') == 'MISSING':
                    continue
                if info.get('deviceUUID'):
                    device_uuid = bytes.fromhex(info['deviceUUID'].replace('-', ''))
                else:
                    device_uuid = paths.get(info.get('device'))
                if device_uuid is None:
                    continue
                result.setdefault(int(bytenr), []).append(
                    OffsetInfo(device_uuid, int(info['physical']), int(info['logical'])))
        return result


def _flatten(values: Iterable) -> Iterable[Dict]:
    for value in values:
        if isinstance(value, list):
            yield from _flatten(value)
        else:
            yield value


def create_resolver(name: str, database=None, command: Optional[str] = None):
    """Build a resolver from its configuration name"""
    if name == 'chunk-map':
        return ChunkMapResolver()
    elif name == 'index':
        if database is None:
            raise ValueError("The index offset resolver needs a database")
        return IndexOffsetResolver(database)
    elif name == 'recovery-map':
        return RecoveryMapResolver(command or './btrfs-recovery-map')
    raise ValueError(f"Unknown offset resolver: {name}")
