"""
btrfs-recovery Utility Functions
Formatting helpers, header byte swapping and btrfs partition detection

Dependencies:
    pip install psutil
"""

import os
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import psutil

from . import constants
from .core.checksum import checksum_matches


def format_checksum(checksum: bytes) -> str:
    return '0x' + bytes(checksum).hex()


def format_tree(tree: Optional[int], numeric: bool = False) -> str:
    """
    Human readable tree name

    Args:
        tree: Tree id (owner), negative ids are the special trees
        numeric: Append the numeric id

    Returns:
        Name such as "EXTENT_TREE (2)", or the id itself for unknown trees
    """
    if tree is not None and abs(tree) < len(constants.TREE_NAMES):
        output = constants.TREE_NAMES[tree]
        if numeric:
            output += f" ({tree})"
        return output
    return str(tree)


def checksum_info(checksum: Optional[bytes], expected: Optional[bytes] = None,
                  checksum_type: Optional[int] = None) -> str:
    """
    Describe a checksum comparison, e.g. "crc32c, VALID"

    Args:
        checksum: Computed checksum (may be None when unverifiable)
        expected: Checksum stored on disk
        checksum_type: Algorithm code, None when unknown
    """
    if checksum_type is not None and 0 <= checksum_type < len(constants.CSUM_NAMES):
        name = constants.CSUM_NAMES[checksum_type]
        length = constants.CSUM_LENGTHS[checksum_type]
    else:
        name = 'Unknown'
        length = len(expected) if expected else 0

    info = name
    if checksum and expected:
        info += ', '
        if checksum_matches(checksum, expected):
            info += 'VALID'
        else:
            info += 'INVALID, ' + format_checksum(checksum[:max(length, len(expected))])
    return info


def encode_data(data: Any) -> Any:
    """
    Make decoded structures JSON friendly.

    Binary strings become hex, long runs of trailing zeros are collapsed
    into "0x00*<count>".
    """
    if isinstance(data, (bytes, bytearray)):
        if not data:
            return ''
        stripped = bytes(data).rstrip(b'\0')
        zeros = len(data) - len(stripped)
        if zeros > 4:
            if not stripped:
                return f"0x00*{zeros}"
            return f"0x{stripped.hex()} 0x00*{zeros}"
        return '0x' + bytes(data).hex()
    if is_dataclass(data) and not isinstance(data, type):
        return encode_data(asdict(data))
    if isinstance(data, dict):
        return {key: encode_data(value) for key, value in data.items()}
    if isinstance(data, (list, tuple)):
        return [encode_data(value) for value in data]
    return data


def device_to_string(device: Any) -> str:
    """Devices are known either by path or by their 16 byte uuid"""
    if isinstance(device, (bytes, bytearray)):
        return bytes(device).hex()
    return str(device)


def swap_header(data: Union[bytes, bytearray]) -> bytearray:
    """
    Exchange the first two 512 byte halves of a block.

    Some corruptions write the block header 512 bytes too far.
    """
    data = bytearray(data)
    first = data[0:512]
    data[0:512] = data[512:1024]
    data[512:1024] = first
    return data


def get_btrfs_partitions() -> List[Dict]:
    """
    List btrfs partitions known to the system

    Returns:
        List of partition info dictionaries
    """
    partitions = []
    for partition in psutil.disk_partitions(all=True):
        if partition.fstype.lower() != 'btrfs':
            continue
        part_info = {
            'device': partition.device,
            'mountpoint': partition.mountpoint,
            'fstype': partition.fstype,
            'opts': partition.opts,
        }
        try:
            usage = psutil.disk_usage(partition.mountpoint)
            part_info['total'] = usage.total
            part_info['used'] = usage.used
        except (PermissionError, OSError):
            part_info['total'] = 0
            part_info['used'] = 0
        partitions.append(part_info)

    return partitions


def is_mounted(device_path: Union[str, Path]) -> bool:
    """Whether a device (or the device behind a symlink) is currently mounted"""
    try:
        target = os.path.realpath(device_path)
    except OSError:
        target = str(device_path)

    for partition in psutil.disk_partitions(all=True):
        if partition.device and os.path.realpath(partition.device) == target:
            return True
    return False


def format_size(bytes_size: float) -> str:
    """
    Format byte size to human-readable format

    Args:
        bytes_size: Size in bytes

    Returns:
        Formatted string (e.g., "1.5 GB")
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_size < 1024.0:
            return f"{bytes_size:.1f} {unit}"
        bytes_size /= 1024.0
    return f"{bytes_size:.1f} PB"
