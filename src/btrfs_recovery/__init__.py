"""
btrfs-recovery - Forensic repair of damaged btrfs metadata blocks

Parses btrfs B-tree blocks straight off raw devices, diagnoses which
parts of a block are corrupted and rebuilds correct bytes from mirrors,
older generations and an external block index.
"""

__version__ = "1.0.0"
