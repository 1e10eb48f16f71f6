"""
btrfs-recovery - Filesystem reconciliation

Drives the block repair engine across whole filesystems using the
reference index. Three passes run in order, each handing the blocks it
had to skip to the next one:

1. generation mismatches: a parent expects another child generation
2. invalid blocks: blocks the index scanner found structurally invalid
3. branch mismatches: a node's first key differs from its parent's key

Every write is preceded by a backup of the bytes being replaced. In
dry-run mode nothing is written and every decision is logged as
"Would ...".
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .. import constants
from ..core.block import Block
from ..core.loader import load_block_at, validate_tree
from ..exceptions import RecoveryError, UnknownTreeError, UnresolvedAmbiguityError
from ..utils import device_to_string, format_checksum, format_tree
from .block import MAX_PERMUTATIONS, fix_block
from .device_io import (block_backup_filename, copy_block, copy_block_to_file, swap_header_on_device,
                        write_block)
from .item_head import fix_checksum, update_header, update_node_item_head

logger = logging.getLogger(__name__)

LOOKBACK_PREVIOUS_GENERATIONS = 100


def resolve_tree(tree: Union[str, int, None]) -> Optional[int]:
    """
    Map a tree selector to a tree id.

    Returns:
        Tree id, None for "all"

    Raises:
        UnknownTreeError: Unsupported selector
    """
    if tree is None or tree == 'all':
        return None
    if isinstance(tree, int):
        return tree
    if tree in constants.TREES:
        return constants.TREES[tree]
    raise UnknownTreeError(f"Unknown tree {str(tree).upper()}")


@dataclass
class RecoveryStats:
    """Outcome of one pass (or of all passes once summed)"""
    corrupted_blocks: Dict[bytes, List[int]] = field(default_factory=dict)
    correctly_fixed: int = 0
    partially_fixed: int = 0
    skipped_blocks: Dict[int, List[Dict[str, Any]]] = field(default_factory=dict)

    @property
    def corrupted_count(self) -> int:
        return sum(len(block_numbers) for block_numbers in self.corrupted_blocks.values())

    def discard_corrupted(self, fsid: bytes, bytenr: int):
        block_numbers = self.corrupted_blocks.get(fsid)
        if block_numbers and bytenr in block_numbers:
            block_numbers.remove(bytenr)

    def skip(self, bytenr: int, info: Dict[str, Any]):
        self.skipped_blocks.setdefault(bytenr, []).append(info)


def sum_stats(stats: List[RecoveryStats]) -> RecoveryStats:
    """Union of corrupted blocks, summed counters, skipped blocks of the last pass"""
    first = stats[0]
    result = RecoveryStats({fsid: list(numbers) for fsid, numbers in first.corrupted_blocks.items()},
                           first.correctly_fixed, first.partially_fixed, first.skipped_blocks)
    for stat in stats[1:]:
        for fsid, block_numbers in stat.corrupted_blocks.items():
            known = result.corrupted_blocks.setdefault(fsid, [])
            known.extend(bytenr for bytenr in block_numbers if bytenr not in known)
        result.correctly_fixed += stat.correctly_fixed
        result.partially_fixed += stat.partially_fixed
        result.skipped_blocks = stat.skipped_blocks
    return result


def group_by(rows: Sequence[Dict[str, Any]], *keys: str) -> Dict[Any, List[Dict[str, Any]]]:
    """Group rows by one or more columns, keeping first-seen order"""
    groups: Dict[Any, List[Dict[str, Any]]] = {}
    for row in rows:
        key = row[keys[0]] if len(keys) == 1 else tuple(row[name] for name in keys)
        groups.setdefault(key, []).append(row)
    return groups


def unique_block_numbers(rows: Sequence[Dict[str, Any]]) -> Dict[bytes, List[int]]:
    return {fsid: list(dict.fromkeys(row['bytenr'] for row in fsid_rows))
            for fsid, fsid_rows in group_by(rows, 'fsid').items()}


def each_parent_item(bytenr: int, parent_blocks: List[Block]) -> Iterator[Tuple[Block, Any]]:
    """First item of every parent node that points at bytenr"""
    for block in parent_blocks:
        if not block.is_node():
            continue
        for item in block.items:
            if item.block_number == bytenr:
                yield block, item
                break


class FilesystemReconciler:
    """
    Filesystem wide repair driven by the reference index.

    Args:
        database: recovery.database.Database
        filesystem_states: {fsid: FilesystemState}
        backup_path: Directory receiving block backups
        repair: Write to the devices, otherwise only log what would happen
        lookback_generations: How far back historical candidates are searched
        max_permutations: Passed on to fix_block
    """

    def __init__(self, database, filesystem_states: Dict, backup_path: Union[str, Path] = './backup',
                 repair: bool = False, lookback_generations: int = LOOKBACK_PREVIOUS_GENERATIONS,
                 max_permutations: int = MAX_PERMUTATIONS):
        self.db = database
        self.filesystem_states = filesystem_states
        self.backup_path = Path(backup_path)
        self.repair = repair
        self.lookback_generations = lookback_generations
        self.max_permutations = max_permutations

    def log(self, device, message: str, level: int = logging.INFO):
        if device is not None:
            message = f"{device_to_string(device)}: {message}"
        logger.log(level, message)

    def run(self, tree: Union[str, int, None] = 'all', block_numbers: Sequence[int] = ()) -> RecoveryStats:
        """Run all three passes and merge their statistics"""
        tree_id = resolve_tree(tree)
        block_numbers = list(block_numbers)

        stats = [self.fix_generation_mismatches(tree_id, block_numbers)]
        stats.append(self.fix_corrupted_blocks(tree_id, block_numbers, stats[-1].skipped_blocks))
        stats.append(self.fix_branches(tree_id, block_numbers, stats[-1].skipped_blocks))
        return sum_stats(stats)

    # Pass 1

    def fix_generation_mismatches(self, tree: Optional[int], block_numbers: Sequence[int]) -> RecoveryStats:
        stats = RecoveryStats()
        correctly_fixed: Dict[bytes, set] = {}
        partially_fixed: Dict[bytes, set] = {}
        block_search: Dict[bytes, List[Dict[str, Any]]] = {}

        rows = self.db.generation_mismatches(self.filesystem_states, tree, block_numbers)
        stats.corrupted_blocks = unique_block_numbers(rows)

        for fsid, mismatches in group_by(rows, 'fsid').items():
            state = self.filesystem_states[fsid]
            correctly_fixed.setdefault(fsid, set())
            partially_fixed.setdefault(fsid, set())
            for mismatch in mismatches:
                self._fix_generation_mismatch(mismatch, state, stats, correctly_fixed[fsid],
                                              partially_fixed[fsid], block_search)

        for fsid, mismatches in block_search.items():
            state = self.filesystem_states[fsid]
            for expected_owner, owner_mismatches in group_by(mismatches, 'expectedOwner').items():
                self._search_replacements(fsid, expected_owner, owner_mismatches, state, stats,
                                          partially_fixed[fsid])

        stats.correctly_fixed = sum(len(blocks) for blocks in correctly_fixed.values())
        stats.partially_fixed = sum(len(blocks) for blocks in partially_fixed.values())
        return stats

    def _fix_generation_mismatch(self, mismatch: Dict[str, Any], state, stats: RecoveryStats,
                                 correctly_fixed: set, partially_fixed: set, block_search: Dict):
        fsid = mismatch['fsid']
        device_uuid = mismatch['deviceUuid']
        block_number = mismatch['bytenr']
        child_generation = mismatch['childGeneration']
        generation = mismatch['generation']
        expected_owner = mismatch['expectedOwner']
        tree_name = format_tree(expected_owner)

        block = load_block_at(mismatch['offset'], device_uuid, state)
        mismatch['block'] = block
        if block is None:
            self.log(device_uuid, f"Block {block_number} [{tree_name}] can't be fixed, device is missing!",
                     logging.WARNING)
            return

        mismatch['expectedGeneration'] = max(child_generation, generation)
        header = block.header
        if (header.bytenr == block_number and header.owner == expected_owner and
                header.generation == child_generation and block.checksum_matches()):
            is_correctly_fixed = block.validate(state)
            self.log(device_uuid, f"Block {block_number} [{tree_name}] has already been "
                                  f"{'' if is_correctly_fixed else 'partially '}fixed on disk!")
            stats.discard_corrupted(fsid, block_number)
            return
        elif header.owner == expected_owner:
            current_generation = header.generation
            if current_generation > child_generation:
                parent = mismatch['parent']
                parent_blocks = self.find_parents(device_uuid, expected_owner, parent, state)
                if all(parent_block.checksum_matches() and parent_block.header.generation >= generation and
                       parent_block.validate(state, False) for parent_block in parent_blocks):
                    self.log(device_uuid, f"Block {block_number} [{tree_name}] has already been fixed on disk!")
                    stats.discard_corrupted(fsid, block_number)
                else:
                    self.log(device_uuid, f"Block {block_number} [{tree_name}] - Generation mismatch, parent block "
                                          f"{parent} wants {child_generation} but generation is {current_generation}")
                    if parent in stats.corrupted_blocks.get(fsid, []):
                        self.log(device_uuid, f"Parent block {parent} - Corrupted so skipping this and fixing "
                                              f"that instead!")
                    else:
                        self.log(device_uuid, f"Parent block {parent} - is not included for fixing... Skipping "
                                              f"this because parent must be fixed first!")
                return
            elif current_generation != child_generation:
                self.log(device_uuid, f"Block {block_number} [{tree_name}] - Generation mismatch, wanted "
                                      f"{child_generation} but got {current_generation}")
            else:
                self.log(device_uuid, f"Block {block_number} [{tree_name}] - Corrupted!")
        else:
            mismatch['expectedGeneration'] = child_generation
            self.log(device_uuid, f"Block {block_number} [{tree_name}] - Missing with generation {child_generation}")
            if header.bytenr != block_number:
                raise UnresolvedAmbiguityError(f"Unexpected block number {header.bytenr} at "
                                               f"{device_to_string(device_uuid)}@{mismatch['offset']}, "
                                               f"expected {block_number}")

        min_generation = min(generation, child_generation)
        candidates = self.db.newest_generations(fsid, expected_owner, block_number, min_generation)
        if not candidates:
            parents = self.db.newest_generations(fsid, expected_owner, mismatch['parent'])
            if len(parents) >= 2:
                parent_blocks = [load_block_at(p['offset'], p['deviceUuid'], state) for p in parents]
                checksums = {bytes(b.get_checksum() or b'') for b in parent_blocks if b is not None}
                if len(checksums) != 1:
                    raise UnresolvedAmbiguityError(f"Block {block_number} - Multiple potential parents "
                                                   f"{mismatch['parent']} with differing content")
            block_search.setdefault(fsid, []).append(mismatch)
            return

        good_block = None
        for candidate in candidates:
            candidate_block = load_block_at(candidate['offset'], candidate['deviceUuid'], state)
            if candidate_block is None:
                self.log(candidate['deviceUuid'], f"Can't check candidate block {candidate['bytenr']} "
                                                  f"because device is missing!", logging.WARNING)
                continue
            if not candidate_block.header.is_valid():
                swapped = load_block_at(candidate['offset'], candidate['deviceUuid'], state, True)
                if swapped.header.is_valid():
                    candidate_block = swapped
            candidate_header = candidate_block.header
            if (candidate_header.bytenr == block_number and
                    candidate_header.generation == mismatch['expectedGeneration'] and
                    candidate_header.owner == expected_owner and
                    (candidate_header.csum != header.csum or not block.checksum_matches())):
                candidate_block.validate(state, False)
                good_block = candidate_block
                break

        if good_block is None:
            self.log(device_uuid, f"Block {block_number} - Couldn't find good alternative block, "
                                  f"{len(candidates)} candidate block(s) were rejected!", logging.WARNING)
            return

        target_device = device_uuid
        target_offset = mismatch['offset']
        source_device = good_block.device
        source_offset = good_block.device_offset
        source_name = f"{device_to_string(source_device)}@{source_offset}"

        if not good_block.checksum_matches():
            copy_name = 'copy with swapped header' if good_block.header_swapped else 'copy'
            self.log(target_device, f"Block {block_number} - Found corrupted {copy_name} with generation "
                                    f"{good_block.header.generation} at {source_name}")
            self.log(target_device, f"Block {block_number} - Skipping for now, will try fixing in next pass")
            stats.skip(block_number, mismatch)
            return

        if good_block.header_swapped:
            candidate_info = ('' if good_block.is_valid() else 'suspicious ') + 'copy with swapped header'
        elif good_block.is_valid():
            candidate_info = 'good copy'
        else:
            candidate_info = 'potentially corrupted copy'
        self.log(target_device, f"Block {block_number} - Found {candidate_info} with generation "
                                f"{good_block.header.generation} at {source_name}")

        if not good_block.is_valid():
            block.validate(state)
            blocks = [block, good_block]
            self.log(fsid, f"Block {block_number} - Trying to fix using {len(blocks)} candidate block(s)!")
            fixed = fix_block(blocks, state, expected_owner, self.max_permutations)
            if fixed.block is not None and fixed.block.is_valid():
                self.write_fixed_block(fixed.block, target_device, target_offset, False, state, repair=False)
                # Only this copy would be rewritten, its mirrors would then differ
                raise UnresolvedAmbiguityError(f"Block {block_number} - Writing a repaired copy over a "
                                               f"generation mismatch might not be safe!")
            self.log(target_device, f"Block {block_number} [{tree_name}] - Unable to fix!", logging.WARNING)
            partially_fixed.add(block_number)

        copied = self.copy_block_with_backup(block_number, target_device, target_offset, good_block.header.bytenr,
                                             source_device, source_offset, state)
        if copied is None:
            self.log(target_device, f"Block {block_number} [{tree_name}] - Can't fix because device is missing!",
                     logging.WARNING)
            stats.skip(block_number, mismatch)
            return
        if good_block.header_swapped:
            self.swap_header_with_log(block_number, target_device, target_offset, state)
        if self.repair:
            self.log(target_device, f"Block {block_number} [{tree_name}] - Fixed! :)")
        correctly_fixed.add(block_number)

    def _search_replacements(self, fsid: bytes, expected_owner: int, mismatches: List[Dict[str, Any]], state,
                             stats: RecoveryStats, partially_fixed: set):
        """Unreferenced block fallback for mismatches without any newer copy"""
        unreferenced_blocks = self.db.unreferenced_blocks(fsid, expected_owner)
        tree_name = format_tree(expected_owner)
        self.log(fsid, f"{tree_name} - Found {len(unreferenced_blocks)} unreferenced blocks")

        for i, mismatch in enumerate(mismatches):
            block_number = mismatch['bytenr']
            device_uuid = mismatch['deviceUuid']
            self.log(fsid, f"{tree_name} [{i + 1}/{len(mismatches)}] Block {block_number} - "
                           f"Searching for previous block generation...")
            parent_blocks = self.find_parents(device_uuid, expected_owner, mismatch['parent'], state)
            if not parent_blocks:
                self.log(device_uuid, f"Block {block_number} - Can't fix because it's parent block "
                                      f"{mismatch['parent']} is invalid, skipping it!", logging.WARNING)
                stats.skip(block_number, mismatch)
                continue

            previous_block = self.find_previous_block(mismatch, parent_blocks, unreferenced_blocks, state)
            if previous_block is None:
                self.log(device_uuid, f"Block {block_number} - Can't fix because couldn't find previous "
                                      f"block generation!", logging.WARNING)
                stats.skip(block_number, mismatch)
                continue

            source_block_number = previous_block.header.bytenr
            self.log(device_uuid, f"Block {block_number} - Found good replacement block {source_block_number} "
                                  f"with generation {previous_block.header.generation}")
            if previous_block.is_node():
                invalid_block = validate_tree(previous_block, {fsid: state})
                if invalid_block is not True:
                    raise UnresolvedAmbiguityError(f"Block {block_number} - Replacement {source_block_number} "
                                                   f"has invalid descendant {invalid_block!r}")

            source_device = previous_block.device
            source_offset = previous_block.device_offset
            target_offset = mismatch['offset']
            expected_generation = mismatch['expectedGeneration']
            copied = self.copy_block_with_backup(block_number, device_uuid, target_offset, source_block_number,
                                                 source_device, source_offset, state)
            if copied is None:
                self.log(device_uuid, f"Block {block_number} - Can't fix because device is missing!",
                         logging.WARNING)
                continue

            if self.repair:
                fixed_block = load_block_at(target_offset, device_uuid, state)
            else:
                fixed_block = load_block_at(source_offset, source_device, state)
            fixed_block.header.bytenr = block_number
            fixed_block.header.generation = expected_generation
            update_header(fixed_block)
            fix_checksum(fixed_block)
            partially_fixed.add(block_number)

            tree_label = format_tree(mismatch['expectedOwner'])
            if self.repair:
                write_block(fixed_block, device_uuid, target_offset, state)
                self.log(device_uuid, f"Block {block_number} [{tree_label}] - Partially Fixed! :)")
            else:
                self.log(device_uuid, f"Block {block_number} [{tree_label}] - Would set generation to "
                                      f"{expected_generation} and update checksum to "
                                      f"{format_checksum(fixed_block.header.csum)}")

    # Pass 2

    def fix_corrupted_blocks(self, tree: Optional[int], block_numbers: Sequence[int],
                             skipped_blocks: Dict[int, List[Dict[str, Any]]]) -> RecoveryStats:
        stats = RecoveryStats(skipped_blocks=skipped_blocks)
        rows = self.db.invalid_blocks(self.filesystem_states, tree, block_numbers)
        stats.corrupted_blocks = unique_block_numbers(rows)

        for (fsid, expected_owner), owner_rows in group_by(rows, 'fsid', 'expectedOwner').items():
            state = self.filesystem_states[fsid]
            unreferenced_blocks = self.db.unreferenced_blocks(fsid, expected_owner)
            for block_number, block_infos in group_by(owner_rows, 'bytenr').items():
                self._fix_corrupted_block(fsid, expected_owner, block_number, block_infos, unreferenced_blocks,
                                          state, stats)

        return stats

    def _fix_corrupted_block(self, fsid: bytes, expected_owner: int, block_number: int,
                             block_infos: List[Dict[str, Any]], unreferenced_blocks: List[Dict[str, Any]],
                             state, stats: RecoveryStats):
        tree_name = format_tree(expected_owner)
        blocks: List[Block] = []
        fixed_blocks = 0
        min_generation = max(info['generation'] for info in block_infos)
        candidates = self.db.newest_generations(fsid, expected_owner, block_number,
                                                min_generation - self.lookback_generations)
        for skipped in stats.skipped_blocks.get(block_number, []):
            if not any(info['deviceUuid'] == skipped['deviceUuid'] and info['offset'] == skipped['offset']
                       for info in block_infos):
                block_infos.append(skipped)

        for info in block_infos:
            device_uuid = info['deviceUuid']
            offset = info['offset']
            block = load_block_at(offset, device_uuid, state)
            if block is None:
                self.log(device_uuid, f"Block {block_number} [{tree_name}] - Device is missing!", logging.WARNING)
                continue
            swapped_block = None
            if not block.header.is_valid():
                swapped_block = load_block_at(offset, device_uuid, state, True)
                if swapped_block.header.is_valid():
                    block = swapped_block
            block.validate(state)
            info['block'] = block
            blocks.append(block)
            candidates = [candidate for candidate in candidates
                          if not (candidate['offset'] == offset and candidate['deviceUuid'] == device_uuid)]

            header = block.header
            if (header.bytenr == block_number and header.owner == expected_owner and
                    block.checksum_matches() and block.is_valid() and
                    info.get('childGeneration') in (None, info['generation']) and
                    block is not swapped_block):
                fixed_blocks += 1
                self.log(device_uuid, f"Block {block_number} [{tree_name}] has already been fixed on disk!")
                continue

            if block.checksum_matches():
                self.log(device_uuid, f"Block {block_number} [{tree_name}] - Corrupted!")
            else:
                length = constants.CSUM_LENGTHS[block.get_checksum_type()]
                checksum = format_checksum((block.get_checksum() or b'')[:length])
                expected = format_checksum(header.csum[:length])
                self.log(device_uuid, f"Block {block_number} [{tree_name}] - Corrupted, expected checksum "
                                      f"{expected} but got {checksum}")

            parent_numbers = [row['bytenr'] for row in self.db.parents(device_uuid, block_number)]
            info['parentBlocks'] = self.find_parents(device_uuid, expected_owner, parent_numbers, state)
            if info['parentBlocks']:
                previous_block = self.find_previous_block(info, info['parentBlocks'], unreferenced_blocks, state, 100)
                if previous_block is not None:
                    blocks.append(previous_block)

        if not blocks:
            for info in block_infos:
                stats.skip(block_number, info)
            return
        if fixed_blocks >= len(blocks):
            stats.discard_corrupted(fsid, block_number)
            return

        for candidate in candidates:
            candidate_block = load_block_at(candidate['offset'], candidate['deviceUuid'], state)
            if candidate_block is None:
                self.log(candidate['deviceUuid'], f"Block {candidate['bytenr']} - Device is missing!",
                         logging.WARNING)
                continue
            candidate_block.validate(state)
            blocks.append(candidate_block)

        self.log(fsid, f"Block {block_number} - Trying to fix using {len(blocks)} candidate block(s)!")
        fixed = fix_block(blocks, state, expected_owner, self.max_permutations)
        if not fixed.successful:
            parent_blocks = block_infos[0].get('parentBlocks')
            if parent_blocks:
                self.log(fsid, f"Block {block_number} - Couldn't fix correctly, will try again using previous "
                               f"generation!")
                previous_block = self.find_previous_block(block_infos[0], parent_blocks, unreferenced_blocks, state)
                if previous_block is not None:
                    blocks.append(previous_block)
                    fixed = fix_block(blocks, state, expected_owner, self.max_permutations)

        if fixed.block is None or not fixed.block.is_valid():
            for info in block_infos:
                self.log(info['deviceUuid'], f"Block {info['bytenr']} [{tree_name}] - Unable to fix!",
                         logging.WARNING)
                stats.skip(block_number, info)
            return

        if fixed.successful:
            stats.correctly_fixed += 1
        else:
            stats.partially_fixed += 1
        for info in block_infos:
            if info['bytenr'] != fixed.block.header.bytenr:
                raise UnresolvedAmbiguityError(f"Unexpected block number {fixed.block.header.bytenr}, "
                                               f"expected {info['bytenr']}")
            self.write_fixed_block(fixed.block, info['deviceUuid'], info['offset'], fixed.successful, state)
            stats.skipped_blocks.pop(block_number, None)

    # Pass 3

    def fix_branches(self, tree: Optional[int], block_numbers: Sequence[int],
                     skipped_blocks: Dict[int, List[Dict[str, Any]]]) -> RecoveryStats:
        stats = RecoveryStats(skipped_blocks=skipped_blocks)
        correctly_fixed: Dict[bytes, set] = {}
        rows = self.db.branch_mismatches(self.filesystem_states, tree, block_numbers)
        stats.corrupted_blocks = unique_block_numbers([row for row in rows if row['fsid'] is not None])

        for mismatch in rows:
            fsid = mismatch['fsid']
            state = self.filesystem_states.get(fsid)
            if state is None:
                self.log(mismatch['deviceUuid'], f"Block {mismatch['bytenr']} isn't recorded in the index, "
                                                 f"skipping it!", logging.WARNING)
                continue
            fixed = self._fix_branch(mismatch, state, stats)
            if fixed:
                correctly_fixed.setdefault(fsid, set()).add(mismatch['bytenr'])

        stats.correctly_fixed = sum(len(blocks) for blocks in correctly_fixed.values())
        return stats

    def _fix_branch(self, mismatch: Dict[str, Any], state, stats: RecoveryStats) -> bool:
        fsid = mismatch['fsid']
        device_uuid = mismatch['deviceUuid']
        block_number = mismatch['bytenr']
        generation = mismatch['childGeneration']
        expected_owner = mismatch['expectedOwner']
        tree_name = format_tree(expected_owner)

        block = load_block_at(mismatch['blockOffset'], device_uuid, state)
        if block is None:
            self.log(device_uuid, f"Block {block_number} [{format_tree(mismatch['owner'])}] can't be fixed, "
                                  f"device is missing!", logging.WARNING)
            return False

        header = block.header
        if not (header.bytenr == block_number and header.owner == expected_owner and
                header.generation == generation and block.checksum_matches()):
            self.log(device_uuid, f"Block {block_number} [{tree_name}] - Missing with generation {generation}")
            return False

        first_key = block.items[0].key
        if ((first_key.objectid != mismatch['objectid'] and mismatch['objectid'] != 0) or
                first_key.type != mismatch['type'] or first_key.offset != mismatch['offset']):
            self.log(device_uuid, f"Block {block_number} [{tree_name}] differs than expected, "
                                  f"assuming already fixed!")
            stats.discard_corrupted(fsid, block_number)
            return False

        candidates = self.db.newest_generations(fsid, expected_owner, mismatch['parent'])
        if not candidates:
            raise UnresolvedAmbiguityError(f"Block {block_number} - Parent {mismatch['parent']} is missing!")

        parent_blocks = [load_block_at(c['offset'], c['deviceUuid'], state) for c in candidates]
        parent_blocks = [parent_block for parent_block in parent_blocks if parent_block is not None]
        if block.is_leaf() and not any(parent_block.checksum_matches() for parent_block in parent_blocks):
            self.log(device_uuid, f"Block {block_number} [{format_tree(header.owner)}] - Parent "
                                  f"{mismatch['parent']} is corrupted! Unable to fix!", logging.WARNING)
            stats.skip(block_number, mismatch)
            return False

        parent_blocks = [parent_block for parent_block in parent_blocks if parent_block.checksum_matches()]
        if len({bytes(parent_block.get_checksum() or b'') for parent_block in parent_blocks}) > 1:
            raise UnresolvedAmbiguityError(f"Block {block_number} - Multiple potential parents!")
        for parent_block in parent_blocks:
            parent_block.validate(state)
        if any(not parent_block.is_valid() for parent_block in parent_blocks):
            raise UnresolvedAmbiguityError(f"Block {block_number} - Parent is corrupted!")

        parent_key = (mismatch['parentObjectid'], mismatch['parentType'], mismatch['parentOffset'])
        for _, item in each_parent_item(block_number, parent_blocks):
            if item.key.as_tuple() != parent_key and first_key.as_tuple() == item.key.as_tuple():
                # Fixed earlier, or a good mirror was found
                self.log(device_uuid, f"Block {block_number} [{tree_name}] doesn't need fixing!")
                return False

        if block.is_leaf():
            raise UnresolvedAmbiguityError(f"Block {block_number} - Branch mismatch on a leaf block!")

        child = block.items[0]
        child_candidates = self.db.newest_generations(fsid, expected_owner, child.block_number,
                                                      child.generation - 1)
        if not child_candidates:
            raise UnresolvedAmbiguityError(f"Block {block_number} - Child {child.block_number} is missing!")
        child_blocks = [load_block_at(c['offset'], c['deviceUuid'], state) for c in child_candidates]
        child_blocks = [child_block for child_block in child_blocks if child_block is not None]
        if len({bytes(child_block.get_checksum() or b'') for child_block in child_blocks}) > 1:
            raise UnresolvedAmbiguityError(f"Block {block_number} - Multiple potential children!")
        if len({child_block.items[0].key.as_tuple() for child_block in child_blocks}) > 1:
            raise UnresolvedAmbiguityError(f"Block {block_number} - Children have differing first keys!")

        child_first_key = child_blocks[0].items[0].key
        if first_key.as_tuple() != child_first_key.as_tuple():
            raise UnresolvedAmbiguityError(f"Block {block_number} - First key of child "
                                           f"{child_blocks[0].header.bytenr} differs from ours!")

        self.log(device_uuid, f"Block {block_number} - Found matching first key in child block "
                              f"{child_blocks[0].header.bytenr} which means our parent is corrupted not us!")
        fixed = False
        for parent_block, item in each_parent_item(block_number, parent_blocks):
            item.key = child_first_key
            update_node_item_head(parent_block, item)
            fix_checksum(parent_block)
            parent_block.reparse()
            parent_block.validate(state)
            if not parent_block.is_valid():
                raise RecoveryError(f"Block {parent_block.header.bytenr} became invalid after patching its key")
            self.write_fixed_block(parent_block, parent_block.device, parent_block.device_offset, True, state)
            fixed = True
        return fixed

    # Helpers

    def find_parents(self, device_uuid: bytes, owner: int, parent_block_numbers, state) -> List[Block]:
        """Recorded copies of the parent blocks that still belong to the tree"""
        parent_blocks = []
        for row in self.db.offsets(device_uuid, parent_block_numbers):
            block = load_block_at(row['offset'], row['deviceUuid'], state)
            if block is None or block.header.owner != owner:
                continue
            parent_blocks.append(block)
        return parent_blocks

    def find_previous_block(self, block_info: Dict[str, Any], parent_blocks: List[Block],
                            unreferenced_blocks: List[Dict[str, Any]], state, max_depth: int = -1) -> Optional[Block]:
        """
        Look for an older intact copy of a block among unreferenced blocks.

        The parent's item for the block gives its key. An unreferenced
        block one level below the parent that holds that key, together
        with an unreferenced node pointing at it with a matching
        generation, is a stale but consistent copy.

        Args:
            block_info: Index row of the block (bytenr, expectedOwner)
            parent_blocks: Loaded parent blocks
            unreferenced_blocks: Rows from Database.unreferenced_blocks
            max_depth: Stop after this many unreferenced blocks, -1 for all

        Raises:
            UnresolvedAmbiguityError: The found copy is corrupted or inconsistent
        """
        use_objectid = False
        parent_item_keys = set()
        parent_block_ids = set()
        parent_block_levels = set()
        for block, item in each_parent_item(block_info['bytenr'], parent_blocks):
            if item.key.type in (constants.EXTENT_ITEM, constants.METADATA_ITEM):
                use_objectid = True
                parent_item_keys.add(item.key.objectid)
            else:
                parent_item_keys.add(item.key.offset)
            parent_block_ids.add(block.header.bytenr)
            parent_block_levels.add(block.header.level)

        if not parent_item_keys:
            return None

        parent_candidates = []
        parent_candidate = None
        block_candidate = None
        for i, unreferenced_info in enumerate(unreferenced_blocks):
            if 0 < max_depth <= i:
                break
            logger.debug(f"[{i + 1}/{len(unreferenced_blocks)}] Checking unreferenced block "
                         f"{unreferenced_info['bytenr']}")
            block = load_block_at(unreferenced_info['offset'], unreferenced_info['deviceUuid'], state)
            if block is None or block.header.owner != block_info['expectedOwner']:
                continue
            if block.header.bytenr in parent_block_ids:
                raise UnresolvedAmbiguityError(f"Parent block {block.header.bytenr} is not supposed "
                                               f"to be unreferenced!")

            for item in block.items:
                if item.key is None:
                    continue
                found_parent_candidate = False
                if (item.key.objectid if use_objectid else item.key.offset) in parent_item_keys:
                    if block.is_node() and item.block_number != block_info['bytenr']:
                        parent_candidates.append((block, item))
                        found_parent_candidate = True
                        if (parent_candidate is None and block_candidate is not None and
                                item.block_number == block_candidate[0].header.bytenr):
                            parent_candidate = parent_candidates[-1]
                    if block_candidate is None and block.header.level + 1 in parent_block_levels:
                        block_candidate = (block, item)
                        parent_candidate = next((parent for parent in parent_candidates
                                                 if parent[1].block_number == block.header.bytenr), None)
                if found_parent_candidate or block_candidate is not None:
                    break

            if parent_candidate is not None and block_candidate is not None:
                break

        if parent_candidate is None or block_candidate is None:
            return None

        candidate_block = block_candidate[0]
        if (parent_candidate[1].block_number != candidate_block.header.bytenr or
                parent_candidate[1].generation != candidate_block.header.generation):
            raise UnresolvedAmbiguityError(f"Block {block_info['bytenr']} - Previous generation candidate "
                                           f"{candidate_block.header.bytenr} doesn't match its parent")
        if not (candidate_block.checksum_matches() and candidate_block.validate(state, False)):
            raise UnresolvedAmbiguityError(f"Block {block_info['bytenr']} - Previous generation candidate "
                                           f"{candidate_block.header.bytenr} is corrupted!")
        return candidate_block

    def copy_block_with_backup(self, target_block_number: int, target_device, target_offset: int,
                               source_block_number: int, source_device, source_offset: int, state) -> Optional[int]:
        backup_target = self.backup_path / block_backup_filename(target_block_number, target_device, target_offset)
        backup_target = copy_block_to_file(target_device, target_offset, state, backup_target, True,
                                           not self.repair)
        copied = copy_block(source_device, source_offset, state, target_device, target_offset, not self.repair)
        if not self.repair:
            self.log(target_device, f"Block {target_block_number} - Would copy backup to {backup_target}")
            self.log(target_device, f"Block {target_block_number} - Would fix by copying {source_block_number} "
                                    f"from offset {source_offset} to {target_offset}")
        return copied

    def swap_header_with_log(self, target_block_number: int, target_device, target_offset: int, state) -> int:
        written = swap_header_on_device(target_device, target_offset, state, not self.repair)
        if not self.repair:
            self.log(target_device, f"Block {target_block_number} - Would swap block header at {target_offset}")
        return written

    def write_fixed_block(self, fixed_block: Block, target_device, target_offset: int, is_correctly_fixed: bool,
                          state, repair: Optional[bool] = None):
        """Back up the target then write the repaired block, or describe it in dry-run mode"""
        repair = self.repair if repair is None else repair
        bytenr = fixed_block.header.bytenr
        backup_target = self.backup_path / block_backup_filename(bytenr, target_device, target_offset)
        backup_target = copy_block_to_file(target_device, target_offset, state, backup_target, True, not repair)

        if repair:
            write_block(fixed_block, target_device, target_offset, state)
            self.log(target_device, f"Block {bytenr} - {'' if is_correctly_fixed else 'Partially '}Fixed! :)")
            return

        new_checksum = format_checksum(fixed_block.header.csum)
        self.log(target_device, f"Block {bytenr} - Would copy backup to {backup_target}")
        if is_correctly_fixed:
            self.log(target_device, f"Block {bytenr} - Would fix it with correct checksum {new_checksum}")
        else:
            self.log(target_device, f"Block {bytenr} - Would fix it partially with different checksum "
                                    f"{new_checksum}")
