"""
btrfs-recovery - Device writes and block backups

Every function takes a pretend flag: in dry-run mode nothing is written
but the would-be result (backup path, byte count) is still computed.
"""

import logging
import shutil
from pathlib import Path
from typing import Optional, Union

import xxhash

from ..core.block import Block
from ..utils import device_to_string, swap_header

logger = logging.getLogger(__name__)


def block_backup_filename(bytenr: int, device, offset: int) -> str:
    return f"{bytenr}_{device_to_string(device)}_{offset}.bin"


def copy_block_to_file(device, offset: int, filesystem_state, target: Union[str, Path],
                       append_checksum: bool = True, pretend: bool = False) -> Optional[Path]:
    """
    Back up the bytes currently at a device offset.

    Args:
        device: Device uuid or path
        offset: Physical offset of the block
        filesystem_state: FilesystemState owning the device
        target: Backup file path
        append_checksum: Insert the xxh64 of the content before the extension
        pretend: Only compute the target name

    Returns:
        Backup path, None when the device is missing
    """
    target = Path(target)
    with filesystem_state.using_device(device) as io:
        if io is None:
            return None
        io.seek(offset)
        block_data = io.read(filesystem_state.superblock.nodesize)

    if append_checksum:
        checksum = format(xxhash.xxh64(block_data).intdigest(), 'x')
        target = target.with_name(f"{target.stem}_{checksum}{target.suffix}")

    if not pretend:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(block_data)
        logger.debug(f"Backed up {device_to_string(device)}@{offset} to {target}")
    return target


def copy_block(source_device, source_offset: int, filesystem_state, target_device, target_offset: int,
               pretend: bool = False) -> Optional[int]:
    """
    Copy one block between (or within) devices.

    Returns:
        Bytes copied (0 when pretending), None when a device is missing
    """
    nodesize = filesystem_state.superblock.nodesize
    with filesystem_state.using_device(source_device) as source:
        if source is None:
            return None
        source.seek(source_offset)
        data = source.read(nodesize)

    with filesystem_state.using_device(target_device, not pretend) as target:
        if target is None:
            return None
        if pretend:
            return 0
        target.seek(target_offset)
        target.write(data)
        return len(data)


def swap_header_on_device(device, offset: int, filesystem_state, pretend: bool = False) -> int:
    """Exchange the two 512 byte halves at the start of an on-disk block"""
    with filesystem_state.using_device(device, not pretend) as target:
        if target is None:
            return 0
        target.seek(offset)
        header = swap_header(target.read(1024))
        if pretend:
            return 0
        target.seek(offset)
        return target.write(header)


def write_block(block: Block, device, offset: int, filesystem_state) -> int:
    with filesystem_state.using_device(device, True) as target:
        if target is None:
            return 0
        target.seek(offset)
        return target.write(bytes(block.buffer))


def restore_backup(backup: Union[str, Path], device, offset: int, filesystem_state) -> int:
    """Put a backed up block back in place"""
    with open(backup, 'rb') as source, filesystem_state.using_device(device, True) as target:
        if target is None:
            return 0
        target.seek(offset)
        shutil.copyfileobj(source, target)
        return target.tell() - offset
