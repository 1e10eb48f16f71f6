"""
btrfs-recovery - Central Application Controller

Coordinates configuration, logging, filesystem states, the reference
index and the repair operations the command-line interface exposes.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from . import constants
from .core.filesystem_state import FilesystemState, open_device
from .core.loader import load_block, load_blocks_by_ids
from .core.offsets import create_resolver
from .core.superblock import Superblock
from .exceptions import FilesystemError, RecoveryError
from .recovery.block import FixResult, fix_block
from .recovery.database import Database, ReferenceIndex
from .recovery.device_io import restore_backup
from .recovery.filesystem import FilesystemReconciler, RecoveryStats
from .utils import device_to_string, is_mounted

logger = logging.getLogger(__name__)

LOGGER_NAME = "btrfs_recovery"

DEFAULT_CONFIG: Dict[str, Any] = {
    "log_level": "INFO",
    "log_dir": "logs",
    "backup_path": "./backup",
    "max_permutations": 1000,
    "lookback_generations": 100,
    "offset_resolver": "chunk-map",
    "recovery_map_command": "./btrfs-recovery-map",
    "refuse_mounted": True,
}


def load_config(config_path: Optional[Union[str, Path]] = None, **overrides) -> Dict[str, Any]:
    """
    Load application configuration.

    Args:
        config_path: Path to JSON configuration file
        **overrides: Values that win over both defaults and the file

    Returns:
        Configuration dictionary with defaults

    Raises:
        RecoveryError: Configuration file is not valid JSON
    """
    config = dict(DEFAULT_CONFIG)
    if config_path:
        config_path = Path(config_path)
        try:
            with open(config_path, 'r') as f:
                config.update(json.load(f))
        except json.JSONDecodeError as e:
            raise RecoveryError(f"Invalid configuration file {config_path}: {e}") from e
    config.update({key: value for key, value in overrides.items() if value is not None})
    return config


def setup_logging(config: Dict[str, Any], quiet: bool = False) -> logging.Logger:
    """
    Configure logging with a file audit trail.

    Handlers installed by an earlier call are replaced.

    Returns:
        Configured logger instance
    """
    log_level = getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING if quiet else log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_dir = config.get("log_dir")
    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"btrfs_recovery_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def parse_superblock(file) -> Optional[Superblock]:
    """
    Read a superblock from a superblock dump or from a device.

    A dump holds the superblock at offset 0, a device at the first
    superblock offset.
    """
    with open_device(file, 'rb') as io:
        for offset in (0, constants.SUPERBLOCK_OFFSETS[0]):
            io.seek(offset)
            data = io.read(constants.SUPERBLOCK_SIZE)
            if len(data) < constants.SUPERBLOCK_SIZE:
                return None
            superblock = Superblock(data)
            if superblock.magic == constants.SUPERBLOCK_MAGIC:
                return superblock
    return None


def is_too_small(device) -> bool:
    with open_device(device, 'rb') as io:
        io.seek(0, 2)
        return io.tell() < constants.SUPERBLOCK_OFFSETS[0] + constants.SUPERBLOCK_SIZE


class RecoveryApp:
    """
    Main application class coordinating all repair operations.

    Args:
        config_path: Optional path to configuration file
        quiet: Only warnings and errors on the console
        **overrides: Configuration values set from the command line
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None, quiet: bool = False, **overrides):
        self.config = load_config(config_path, **overrides)
        self.logger = setup_logging(self.config, quiet)
        self.filesystem_states: Dict[bytes, FilesystemState] = {}
        self.database: Optional[Database] = None

    def close(self):
        for state in self.filesystem_states.values():
            state.close()
        if self.database is not None:
            self.database.close()
            self.database = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def create_filesystem_states(self, devices: Sequence) -> Tuple[Dict[bytes, FilesystemState], List]:
        """
        Open every argument that is a btrfs device.

        Devices sharing an fsid are grouped into one state.

        Returns:
            ({fsid: FilesystemState}, arguments that are not btrfs devices)
        """
        resolver_name = self.config.get("offset_resolver", "chunk-map")
        others = []
        for device in devices:
            if is_too_small(device):
                others.append(device)
                continue
            try:
                resolver = create_resolver(resolver_name, self.database,
                                           self.config.get("recovery_map_command"))
                state = FilesystemState(device, resolver)
            except FilesystemError as e:
                logger.warning(f"{device_to_string(device)}: {e}")
                others.append(device)
                continue

            if not state.superblock.is_valid():
                logger.warning(f"{device_to_string(device)}: Invalid superblock!")
                state.close()
                others.append(device)
                continue

            fsid = state.superblock.dev_item.fsid
            if fsid in self.filesystem_states:
                self.filesystem_states[fsid].add_device(state.superblock.dev_item.uuid, device)
                state.close()
                continue
            self.filesystem_states[fsid] = state

        self.warn_missing_devices()
        if self.database is not None:
            self._attach_index()
        return self.filesystem_states, others

    def warn_missing_devices(self):
        for fsid, state in self.filesystem_states.items():
            missing = state.missing_device_count()
            if missing:
                logger.warning(f"{fsid.hex()}: WARNING! {missing} device(s) are missing!")

    def open_database(self, path: Union[str, Path]) -> Database:
        self.database = Database(path)
        self._attach_index()
        return self.database

    def _attach_index(self):
        for state in self.filesystem_states.values():
            state.index = ReferenceIndex(self.database, state.device_uuids)

    def refuse_mounted_devices(self, devices: Sequence):
        """
        Raises:
            FilesystemError: A device is mounted and refuse_mounted is set
        """
        if not self.config.get("refuse_mounted", True):
            return
        for device in devices:
            if isinstance(device, (str, Path)) and is_mounted(device):
                raise FilesystemError(f"{device} is mounted, unmount it before repairing!")

    def load_blocks(self, block_numbers: Sequence[int] = (), files: Sequence = (),
                    superblock_override: Optional[Superblock] = None, swap_header: bool = False) -> List:
        """
        Load blocks by number from the filesystems and from standalone block files.

        Returns:
            Validated blocks
        """
        block_numbers = list(block_numbers)
        if any(bytenr <= 0 for bytenr in block_numbers):
            logger.warning("Block must be a number larger than 0")
            block_numbers = [bytenr for bytenr in block_numbers if bytenr > 0]

        blocks = []
        if block_numbers:
            blocks.extend(load_blocks_by_ids(block_numbers, self.filesystem_states, superblock_override,
                                             swap_header))
            found = {block.header.bytenr for block in blocks}
            not_found = [bytenr for bytenr in block_numbers if bytenr not in found]
            if not_found:
                logger.warning(f"Failed to find blocks: {','.join(str(bytenr) for bytenr in not_found)}")

        for file in files:
            with open_device(file, 'rb') as io:
                blocks.append(load_block(io, superblock_override, self.filesystem_states, swap_header))
        return blocks

    def reconcile(self, tree: str = 'all', block_numbers: Sequence[int] = (),
                  backup_path: Optional[Union[str, Path]] = None, repair: bool = False) -> RecoveryStats:
        """Run the filesystem wide repair passes"""
        if self.database is None:
            raise RecoveryError("Filesystem reconciliation needs a reference database")
        reconciler = FilesystemReconciler(
            self.database, self.filesystem_states,
            backup_path or self.config["backup_path"],
            repair=repair,
            lookback_generations=self.config["lookback_generations"],
            max_permutations=self.config["max_permutations"],
        )
        return reconciler.run(tree, block_numbers)

    def fix_blocks(self, blocks: List, output: Union[str, Path]) -> FixResult:
        """Repair a set of block copies and write the result to a file"""
        state = next(iter(self.filesystem_states.values()), None)
        result = fix_block(blocks, state, max_permutations=self.config["max_permutations"])
        if result.block is not None:
            Path(output).write_bytes(bytes(result.block.buffer))
            logger.info(f"Wrote block {result.block.header.bytenr} to {output}")
        return result

    def restore(self, backup: Union[str, Path], device, offset: int, repair: bool = False) -> int:
        """
        Put a backed up block back on a device.

        Returns:
            Bytes written, 0 in dry-run mode
        """
        state = next((state for state in self.filesystem_states.values()
                      if device in state.devices.values()), None)
        if state is None:
            raise FilesystemError(f"{device_to_string(device)} is not part of a known filesystem")
        if not repair:
            logger.info(f"{device_to_string(device)}: Would restore {backup} at offset {offset}")
            return 0
        written = restore_backup(backup, device, offset, state)
        logger.info(f"{device_to_string(device)}: Restored {backup} at offset {offset} ({written} bytes)")
        return written
