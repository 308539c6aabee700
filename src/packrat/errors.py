# packrat/errors.py
"""Exceptions raised by the backup, restore and sync engines."""


class PackratError(Exception):
    """Base class for all packrat errors."""

    def __init__(self, message: str):
        super().__init__(message)


class AbortError(PackratError):
    """The user declined a retry or a confirmation. Terminates the whole run."""

    def __init__(self, description: str):
        super().__init__(f"Operation aborted: {description}")
        self.description = description


class IndexCorruptError(PackratError):
    """A persisted index row could not be parsed.

    Args:
        path: the index file
        line: 1-based row number
        reason: what was wrong with the row
    """

    def __init__(self, path, line: int, reason: str):
        super().__init__(f"Index file '{path}' is corrupt at row {line}: {reason}")
        self.path = path
        self.line = line
        self.reason = reason


class SourceMissingError(PackratError):
    """The root directory of a backup, sync or scan does not exist."""

    def __init__(self, path):
        super().__init__(f"Source directory not found: {path}")
        self.path = path


class ArchiveMissingError(PackratError):
    """A container named by the index is absent, or does not hold the expected entry."""

    def __init__(self, archive: str, detail: str = ""):
        message = f"Archive missing: {archive}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.archive = archive


class BackgroundScanError(PackratError):
    """The sync scanner thread failed. The original exception is the __cause__."""

    def __init__(self, message: str):
        super().__init__(message)


class TargetExistsError(PackratError, FileExistsError):
    """A restore target already exists and overwriting was not allowed.

    Inherits from FileExistsError so callers catching the builtin still see it.
    """

    def __init__(self, path):
        super().__init__(f"File already exists: {path}")
        self.path = path
