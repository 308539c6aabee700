# packrat/cleaner.py
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Union

import attrs

from . import metadata
from .errors import SourceMissingError
from .safe_io import SafeIO
from .scanner import PathFilter, list_entries


@attrs.define(slots=True)
class CleanResult:
    deleted_files: int = 0
    deleted_directories: int = 0
    kept: int = 0
    failed: int = 0


class DirectoryCleaner:
    """
    Deletes files that have not been written or read for a given age, then the
    directories that are left empty. The root directory itself is kept.

    Excluded paths and reparse points are never touched. An item that cannot be
    deleted is reported and keeps its parent directory alive.
    """

    def __init__(
        self,
        root: Union[str, Path],
        age: timedelta,
        excludes: Optional[PathFilter] = None,
        safe_io: Optional[SafeIO] = None,
        confirm: Optional[Callable[[str, str], bool]] = None,
        now: Optional[datetime] = None,
    ):
        self.root = Path(root)
        self.cutoff = (now or datetime.now(timezone.utc)) - age
        self.excludes = excludes or PathFilter()
        self.safe_io = safe_io or SafeIO()
        self.confirm = confirm
        self.result = CleanResult()

    def is_out_aged(self, st: os.stat_result) -> bool:
        _, accessed, modified = metadata.stat_times(st)
        return modified < self.cutoff or accessed < self.cutoff

    def _confirmed(self, action: str, path: str) -> bool:
        return self.confirm is None or self.confirm(action, path)

    def run(self) -> CleanResult:
        if not self.root.is_dir():
            raise SourceMissingError(self.root)
        self._clean(self.root, "")
        return self.result

    def _delete(self, path: str, relative_path: str, directory: bool) -> bool:
        if not self._confirmed("delete", path):
            self.result.kept += 1
            return False
        try:
            self.safe_io.clear_attributes(path)
            if directory:
                self.safe_io.rmdir(path)
                self.result.deleted_directories += 1
            else:
                self.safe_io.remove(path, missing_ok=True)
                self.result.deleted_files += 1
        except OSError as e:
            logging.warning(f"Could not delete '{relative_path}': {e}")
            self.result.failed += 1
            return False
        return True

    def _clean(self, directory: Path, relative: str) -> bool:
        """Cleans one directory. Returns True if nothing is left in it."""
        empty = True
        for entry in list_entries(directory, relative):
            relative_path = os.path.join(relative, entry.name) if relative else entry.name
            if not self.excludes.is_empty and self.excludes.is_filtered(relative_path):
                empty = False
                continue
            try:
                if entry.is_dir():
                    if metadata.is_reparse_point(entry):
                        empty = False
                        continue
                    if not (self._clean(Path(entry.path), relative_path)
                            and self._delete(entry.path, relative_path, directory=True)):
                        empty = False
                elif self.is_out_aged(entry.stat(follow_symlinks=False)):
                    if not self._delete(entry.path, relative_path, directory=False):
                        empty = False
                else:
                    self.result.kept += 1
                    empty = False
            except FileNotFoundError:
                continue
        return empty


def clean_directory(
    root: Union[str, Path],
    age_days: float = 7.0,
    excludes: Optional[PathFilter] = None,
    safe_io: Optional[SafeIO] = None,
    confirm: Optional[Callable[[str, str], bool]] = None,
) -> CleanResult:
    return DirectoryCleaner(root, timedelta(days=age_days), excludes, safe_io, confirm).run()
