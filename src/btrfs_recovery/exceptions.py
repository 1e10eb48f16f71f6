"""Exception hierarchy for btrfs-recovery."""


class RecoveryError(Exception):
    """Base class for all btrfs-recovery errors"""


class FilesystemError(RecoveryError):
    """Device does not hold a usable btrfs filesystem"""


class BlockNotValidatedError(RecoveryError):
    """Corruption was queried on a block that was never validated"""


class UnknownChecksumError(RecoveryError, ValueError):
    """Checksum algorithm code is not known"""


class UnknownTreeError(RecoveryError, ValueError):
    """Tree selector is not one of the supported names"""


class UnresolvedAmbiguityError(RecoveryError):
    """
    Candidates disagree in a way no repair strategy resolves.

    Raised instead of guessing; aborts the whole run.
    """


class ItemDecodeError(RecoveryError):
    """Item payload is shorter than its fixed layout"""
