# packrat/metadata.py
"""Reading and applying file timestamps and attribute bits across platforms."""
import os
import stat
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple, Union

from .models import BLOCKING_ATTRIBUTES, FileAttributes

IS_WINDOWS = sys.platform == "win32"


def from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def to_timestamp_ns(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000


def birth_time(st: os.stat_result) -> Optional[datetime]:
    """Creation time where the platform records one, else None."""
    birth = getattr(st, "st_birthtime", None)
    if birth is None and IS_WINDOWS:
        # Before 3.12 Windows reported the creation time as st_ctime.
        birth = st.st_ctime
    return from_timestamp(birth) if birth is not None else None


def stat_times(st: os.stat_result) -> Tuple[datetime, datetime, datetime]:
    """Returns (created, accessed, modified) as UTC datetimes.

    Platforms without a birth time fall back to the inode change time for
    'created'; it is stored in the index but never used for change detection.
    """
    created = birth_time(st) or from_timestamp(st.st_ctime)
    return created, from_timestamp(st.st_atime), from_timestamp(st.st_mtime)


def file_attributes(name: str, st: os.stat_result) -> int:
    """The attribute bitmask of a file.

    Windows reports it directly. Elsewhere it is derived: read-only from the
    owner write bit, hidden from a leading dot.
    """
    native = getattr(st, "st_file_attributes", None)
    if native is not None:
        return int(native)
    attributes = FileAttributes(0)
    if not st.st_mode & stat.S_IWUSR:
        attributes |= FileAttributes.READONLY
    if name.startswith("."):
        attributes |= FileAttributes.HIDDEN
    if stat.S_ISDIR(st.st_mode):
        attributes |= FileAttributes.DIRECTORY
    return int(attributes or FileAttributes.NORMAL)


def is_reparse_point(entry: os.DirEntry) -> bool:
    """Symlinks and Windows junctions."""
    if entry.is_symlink():
        return True
    is_junction = getattr(entry, "is_junction", None)
    if is_junction is not None and is_junction():
        return True
    try:
        attrs = getattr(entry.stat(follow_symlinks=False), "st_file_attributes", 0)
    except OSError:
        return False
    return bool(attrs & FileAttributes.REPARSE_POINT)


def _set_windows_attributes(path: Union[str, Path], attributes: int) -> None:
    import ctypes

    if not ctypes.windll.kernel32.SetFileAttributesW(str(path), attributes):
        raise ctypes.WinError()


def set_attributes(path: Union[str, Path], attributes: int) -> None:
    """Applies an attribute bitmask. Off Windows only the read-only bit has an effect."""
    if IS_WINDOWS:
        settable = attributes & ~(FileAttributes.DIRECTORY | FileAttributes.REPARSE_POINT)
        _set_windows_attributes(path, settable or FileAttributes.NORMAL)
        return
    mode = os.stat(path).st_mode
    if attributes & FileAttributes.READONLY:
        new_mode = mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH)
    else:
        new_mode = mode | stat.S_IWUSR
    if new_mode != mode:
        os.chmod(path, stat.S_IMODE(new_mode))


def apply_metadata(
    path: Union[str, Path],
    created: datetime,
    accessed: datetime,
    modified: datetime,
    attributes: int,
) -> None:
    """Restores timestamps, then attributes (a read-only file refuses new times on Windows).

    The creation time can only be set on Windows.
    """
    os.utime(path, ns=(to_timestamp_ns(accessed), to_timestamp_ns(modified)))
    if IS_WINDOWS:
        _set_creation_time(path, created)
    set_attributes(path, attributes)


def _set_creation_time(path: Union[str, Path], created: datetime) -> None:
    import ctypes
    from ctypes import wintypes

    # FILETIME counts 100ns intervals since 1601-01-01.
    ticks = to_timestamp_ns(created) // 100 + 116444736000000000
    filetime = wintypes.FILETIME(ticks & 0xFFFFFFFF, ticks >> 32)
    kernel32 = ctypes.windll.kernel32
    handle = kernel32.CreateFileW(str(path), 0x100, 0x7, None, 3, 0x02000000, None)
    if handle == wintypes.HANDLE(-1).value:
        raise ctypes.WinError()
    try:
        if not kernel32.SetFileTime(handle, ctypes.byref(filetime), None, None):
            raise ctypes.WinError()
    finally:
        kernel32.CloseHandle(handle)


def clear_blocking_attributes(path: Union[str, Path]) -> None:
    """Clears read-only, hidden and system bits so the file can be overwritten or deleted."""
    st = os.stat(path, follow_symlinks=False)
    attributes = file_attributes(Path(path).name, st)
    if not attributes & BLOCKING_ATTRIBUTES:
        return
    if IS_WINDOWS:
        _set_windows_attributes(path, FileAttributes.NORMAL)
    elif not stat.S_ISLNK(st.st_mode):
        os.chmod(path, stat.S_IMODE(st.st_mode) | stat.S_IWUSR)
