# packrat/backup.py
import enum
import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

import attrs
import click

from . import config
from .archive import ArchivePlanner, SharedArchiveWriter, write_container
from .config import Config
from .errors import SourceMissingError
from .file_index import FileIndex
from .models import FileState, IndexEntry
from .progress import Progress, ProgressCallback
from .safe_io import RetryPolicy, SafeIO
from .scanner import PathFilter, scan_directory

ConfirmGate = Callable[[str, str], bool]


class BackupState(enum.Enum):
    LOAD_INDEX = "load-index"
    DIFF = "diff"
    PLAN = "plan"
    WRITE = "write"
    PERSIST = "persist"
    GARBAGE_COLLECT = "garbage-collect"
    DONE = "done"
    FAILED = "failed"


@attrs.define(slots=True)
class BackupResult:
    """What a backup run did."""
    state: BackupState = BackupState.LOAD_INDEX
    items_modified: int = 0
    items_unmodified: int = 0
    items_shared: int = 0
    items_removed: int = 0
    total_bytes: int = 0
    shared_archive: Optional[str] = None
    removed_archives: List[str] = attrs.field(factory=list)
    deferred_archives: List[str] = attrs.field(factory=list)


class BackupEngine:
    """
    Incremental backup of a directory tree into archive containers.

    Runs LoadIndex -> Diff -> Plan/Write -> Persist -> GarbageCollect. Nothing is
    written unless at least one file changed. The new index is persisted only
    after every archive write committed, so an interrupted run leaves the
    previous index and archives consistent.

    With a shadow index, the index is read from (and also written to) a local
    file, archive existence is not checked, and unreferenced archives are
    appended to the target's removal list instead of being deleted.
    """

    def __init__(
        self,
        source: Union[str, Path],
        target: Union[str, Path],
        shadow_index: Optional[Union[str, Path]] = None,
        force: bool = False,
        excludes: Tuple[str, ...] = (),
        app_config: Optional[Config] = None,
        safe_io: Optional[SafeIO] = None,
        progress_callback: Optional[ProgressCallback] = None,
        confirm: Optional[ConfirmGate] = None,
    ):
        """
        Args:
            source: directory to back up.
            target: directory receiving the index and the archives.
            shadow_index: optional local copy of the index used for the diff.
            force: re-pack every file, changed or not.
            excludes: exclude patterns, merged with the configured ones.
            app_config: an optional Config object. If not provided, it's loaded from file.
            safe_io: retry wrapper; built from the config if not provided.
            progress_callback: optional GUI hook replacing the tqdm bar.
            confirm: optional gate consulted before deleting an archive.
        """
        self.app_config = app_config or config.load_config()
        self.source = Path(source)
        self.target = Path(target)
        self.shadow_index = Path(shadow_index) if shadow_index else None
        self.force = force
        self.excludes = PathFilter(list(self.app_config.excludes) + list(excludes))
        self.safe_io = safe_io or SafeIO(RetryPolicy(self.app_config.retry_attempts, self.app_config.retry_delay))
        self.progress_callback = progress_callback
        self.confirm = confirm
        self.result = BackupResult()

    @property
    def target_index(self) -> Path:
        return self.target / self.app_config.index_name

    @property
    def removal_list(self) -> Path:
        return self.target / self.app_config.removal_list_name

    def _archive_exists(self, archive_name: str) -> bool:
        return (self.target / archive_name).is_file()

    def _set_state(self, state: BackupState) -> None:
        logging.debug(f"Backup of '{self.source}': {self.result.state.value} -> {state.value}")
        self.result.state = state

    def run(self) -> BackupResult:
        """Executes the backup. Any exception leaves the run FAILED and is re-raised."""
        try:
            self._run()
        except BaseException:
            self._set_state(BackupState.FAILED)
            raise
        return self.result

    def _run(self) -> None:
        if not self.source.is_dir():
            raise SourceMissingError(self.source)

        with Progress(f"Backup {self.source}", self.app_config.show_progress, self.progress_callback) as progress:
            self._set_state(BackupState.LOAD_INDEX)
            progress.set_operation("Reading index...")
            index = FileIndex()
            index.load(self.shadow_index or self.target_index, self.safe_io)

            self._set_state(BackupState.DIFF)
            progress.set_operation("Comparing files with the index...")
            planner = ArchivePlanner(
                size_threshold=self.app_config.size_threshold,
                no_compress=self.app_config.no_compress,
                archive_exists=None if self.shadow_index else self._archive_exists,
                force=self.force,
            )
            for live in scan_directory(self.source, self.excludes):
                entry = index.diff(live)
                if entry is not None:
                    planner.plan(entry, live)
            deleted = planner.collect_deleted(index)

            self.result.items_modified = planner.items_modified
            self.result.items_unmodified = planner.items_unmodified
            self.result.items_shared = planner.items_shared
            self.result.total_bytes = planner.total_bytes

            if planner.items_modified == 0:
                click.echo(f"No changes in '{self.source}' ({planner.items_unmodified} files unmodified).")
                self._set_state(BackupState.DONE)
                return

            self._set_state(BackupState.PLAN)
            self.safe_io.makedirs(self.target)
            progress.set_maximum(planner.total_bytes)
            self._write(index, planner, progress)

            for entry in deleted:
                index.remove(entry)
            self.result.items_removed = len(deleted)

            self._set_state(BackupState.PERSIST)
            progress.set_operation("Writing index...")
            if self.shadow_index:
                index.save(self.shadow_index, self.safe_io)
            index.save(self.target_index, self.safe_io)

            self._set_state(BackupState.GARBAGE_COLLECT)
            self._collect_garbage(planner, progress)
            self._set_state(BackupState.DONE)

        click.echo(
            f"Backup complete: {self.result.items_modified} files written "
            f"({self.result.items_shared} into the shared archive), "
            f"{self.result.items_unmodified} unmodified, {self.result.items_removed} removed."
        )

    def _write(self, index: FileIndex, planner: ArchivePlanner, progress: Progress) -> None:
        """Writes every MODIFIED entry in index order. Any error aborts the run uncommitted."""
        self._set_state(BackupState.WRITE)
        modified = index.entries_in_state(FileState.MODIFIED)
        if planner.items_shared == 0:
            for entry in modified:
                self._write_entry(entry, planner, None, progress)
            return

        with SharedArchiveWriter(self.target / planner.shared_archive_name, planner.no_compress, self.safe_io) as shared:
            for entry in modified:
                self._write_entry(entry, planner, shared, progress)
            shared.commit()
        self.result.shared_archive = planner.shared_archive_name

    def _write_entry(self, entry: IndexEntry, planner: ArchivePlanner, shared: Optional[SharedArchiveWriter], progress: Progress) -> None:
        progress.set_operation(f"Copy {entry.relative_path}")
        with self.safe_io.open_read(self.source / entry.relative_path, allow_empty=True) as src:
            if entry.archive_name == planner.shared_archive_name:
                copied = shared.add(entry, src, progress)
            else:
                copied = write_container(self.target / entry.archive_name, src, self.safe_io, progress)
        if copied != entry.length:
            logging.warning(
                f"'{entry.relative_path}' changed while it was backed up "
                f"(expected {entry.length} bytes, stored {copied})."
            )

    def _collect_garbage(self, planner: ArchivePlanner, progress: Progress) -> None:
        unreferenced = planner.unreferenced()
        if not unreferenced:
            return
        if self.shadow_index:
            progress.set_operation("Recording unreferenced archives...")
            with self.safe_io.open_append(self.removal_list) as f:
                for name in unreferenced:
                    f.write(f"{name}\n".encode("utf-8"))
            self.result.deferred_archives.extend(unreferenced)
            return

        for name in unreferenced:
            progress.set_operation(f"Removing unreferenced archive '{name}'...")
            if self.confirm is not None and not self.confirm("remove archive", name):
                logging.warning(f"Kept unreferenced archive '{name}' (declined).")
                continue
            self.safe_io.remove(self.target / name, missing_ok=True)
            self.result.removed_archives.append(name)
