# packrat/restore.py
import logging
import os
import re
from collections import defaultdict
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple, Union

import attrs
import click

from . import config
from .archive import is_direct_container, iter_shared_archive, open_container, zip_entry_name
from .config import Config
from .durable import DurableFileWriter
from .errors import ArchiveMissingError, SourceMissingError
from .file_index import FileIndex
from .models import IndexEntry
from .progress import Progress, ProgressCallback
from .safe_io import RetryPolicy, SafeIO, copy_stream
from .scanner import PathFilter

ConfirmGate = Callable[[str, str], bool]


def local_path(root: Path, relative_path: str) -> Path:
    """Joins an index path, written with either separator, onto a local root."""
    return root.joinpath(*[part for part in re.split(r"[\\/]", relative_path) if part])


@attrs.define(slots=True)
class RestoreResult:
    restored: int = 0
    missing: int = 0
    skipped: int = 0
    total_bytes: int = 0


class RestoreEngine:
    """
    Restores the files of a backup location into a target directory.

    Entries are grouped by archive so every container is opened exactly once.
    Each file is written through its own DurableFileWriter and gets its recorded
    timestamps and attributes back, so an interrupted restore can simply be run
    again.

    Args:
        source: the backup location holding the index and the archives.
        target: directory to restore into.
        include: include patterns; only matching entries are restored. Empty
            restores everything.
        overwrite: replace existing files. Otherwise an existing file raises
            TargetExistsError.
        confirm: optional gate consulted before overwriting an existing file.
    """

    def __init__(
        self,
        source: Union[str, Path],
        target: Union[str, Path],
        include: Tuple[str, ...] = (),
        overwrite: bool = False,
        app_config: Optional[Config] = None,
        safe_io: Optional[SafeIO] = None,
        progress_callback: Optional[ProgressCallback] = None,
        confirm: Optional[ConfirmGate] = None,
    ):
        self.app_config = app_config or config.load_config()
        self.source = Path(source)
        self.target = Path(target)
        self.include = PathFilter(include)
        self.overwrite = overwrite
        self.safe_io = safe_io or SafeIO(RetryPolicy(self.app_config.retry_attempts, self.app_config.retry_delay))
        self.progress_callback = progress_callback
        self.confirm = confirm
        self.result = RestoreResult()
        self._archive_names: Optional[Dict[str, str]] = None

    def _load_index(self) -> FileIndex:
        index = FileIndex.from_file(self.source / self.app_config.index_name, self.safe_io)
        if not self.include.is_empty:
            for entry in index:
                if not self.include.is_filtered(entry.relative_path):
                    index.remove(entry)
        return index

    def _find_archive(self, archive_name: str) -> Optional[Path]:
        """Locates an archive in the backup location, ignoring case."""
        path = self.source / archive_name
        if path.is_file():
            return path
        if self._archive_names is None:
            with os.scandir(self.source) as it:
                self._archive_names = {entry.name.casefold(): entry.name for entry in it if entry.is_file()}
        actual = self._archive_names.get(archive_name.casefold())
        return self.source / actual if actual else None

    def run(self) -> RestoreResult:
        if not self.source.is_dir():
            raise SourceMissingError(self.source)

        index = self._load_index()
        groups: Dict[str, List[IndexEntry]] = defaultdict(list)
        for entry in index:
            groups[entry.archive_name.casefold()].append(entry)

        with Progress(f"Restore {self.source}", self.app_config.show_progress, self.progress_callback) as progress:
            progress.set_maximum(sum(entry.length for entry in index))
            for entries in groups.values():
                archive_name = entries[0].archive_name
                archive = self._find_archive(archive_name) if archive_name else None
                if archive is None:
                    self._report_missing(ArchiveMissingError(archive_name or "<none>"), entries)
                elif is_direct_container(archive_name):
                    self._restore_container(archive, entries, progress)
                else:
                    self._restore_shared(archive, entries, progress)

        click.echo(
            f"Restore complete: {self.result.restored} files restored, "
            f"{self.result.missing} missing, {self.result.skipped} skipped."
        )
        return self.result

    def _report_missing(self, error: ArchiveMissingError, entries: List[IndexEntry]) -> None:
        for entry in entries:
            logging.warning(f"Cannot restore '{entry.relative_path}': {error}")
        self.result.missing += len(entries)

    def _restore_container(self, archive: Path, entries: List[IndexEntry], progress: Progress) -> None:
        # A per-file container holds exactly one file, but tolerate duplicates.
        for entry in entries:
            with open_container(archive, self.safe_io) as src:
                self._restore_file(entry, src, progress)

    def _restore_shared(self, archive: Path, entries: List[IndexEntry], progress: Progress) -> None:
        pending = {zip_entry_name(entry.relative_path).casefold(): entry for entry in entries}
        for info, zf in iter_shared_archive(archive, self.safe_io):
            entry = pending.pop(info.filename.casefold(), None)
            if entry is None:
                # Filtered out, or superseded by a newer archive.
                continue
            with zf.open(info) as src:
                self._restore_file(entry, src, progress)
        if pending:
            self._report_missing(
                ArchiveMissingError(archive.name, "entry not found in archive"), list(pending.values())
            )

    def _restore_file(self, entry: IndexEntry, src: BinaryIO, progress: Progress) -> None:
        path = local_path(self.target, entry.relative_path)
        progress.set_operation(f"Restore {entry.relative_path}")
        if path.exists() and self.overwrite and self.confirm is not None:
            if not self.confirm("overwrite", str(path)):
                logging.warning(f"Skipped restoring '{entry.relative_path}' (declined).")
                self.result.skipped += 1
                return

        with DurableFileWriter(path, compressed=False, safe_io=self.safe_io, exclusive=not self.overwrite) as writer:
            copied = copy_stream(src, writer.stream, progress)
            writer.commit()
        if copied != entry.length:
            logging.warning(
                f"Restored '{entry.relative_path}' with {copied} bytes, the index recorded {entry.length}."
            )
        self.safe_io.apply_metadata(path, entry.created, entry.accessed, entry.modified, entry.attributes)
        self.result.restored += 1
        self.result.total_bytes += copied
