"""Block repair engine, reference index and filesystem reconciliation."""

from .block import FixResult, fix_block
from .database import Database, ReferenceIndex
from .filesystem import FilesystemReconciler, RecoveryStats, resolve_tree

__all__ = [
    'Database',
    'FilesystemReconciler',
    'FixResult',
    'RecoveryStats',
    'ReferenceIndex',
    'fix_block',
    'resolve_tree',
]
