# packrat/sync.py
import logging
import os
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import attrs
import click

from . import config, metadata
from .config import Config
from .errors import BackgroundScanError, SourceMissingError
from .models import CopyAction, DeleteAction, LiveFile, LogAction, SyncCounters, compare_file_time
from .progress import Progress, ProgressCallback
from .safe_io import RetryPolicy, SafeIO
from .scanner import PathFilter, list_entries
from .worker import ActionApplier, apply_actions, drain_actions, sentinel

# Minimum time between two "Scan:" status lines.
STATUS_INTERVAL = 0.5


@attrs.define(slots=True)
class SyncResult:
    counters: SyncCounters
    cancelled: bool = False


def files_differ(live: LiveFile, target: Union[str, Path]) -> bool:
    """
    Whether a target file needs to be copied over: length, modification and
    access time (to the second), plus the creation time where both sides record
    a real one.
    """
    try:
        st = os.stat(target)
    except FileNotFoundError:
        return True
    if st.st_size != live.length:
        return True
    _, accessed, modified = metadata.stat_times(st)
    if not compare_file_time(modified, live.modified) or not compare_file_time(accessed, live.accessed):
        return True
    if metadata.IS_WINDOWS:
        created = metadata.birth_time(st)
        if created is not None and not compare_file_time(created, live.created):
            return True
    return False


class SyncPipeline:
    """
    One-way mirror of a source tree onto a target tree.

    A background thread diffs both trees depth first and queues CopyAction and
    DeleteAction items; the calling thread applies them in FIFO order. stop()
    (or Ctrl-C) ends the scan at the next directory or file, lets the applier
    finish what is already queued, and returns with cancelled=True. A file is
    only ever replaced through a DurableFileWriter, so a cancelled run leaves
    no truncated files behind.
    """

    def __init__(
        self,
        source: Union[str, Path],
        target: Union[str, Path],
        excludes: Tuple[str, ...] = (),
        app_config: Optional[Config] = None,
        safe_io: Optional[SafeIO] = None,
        progress_callback: Optional[ProgressCallback] = None,
        confirm: Optional[Callable[[str, str], bool]] = None,
        stopping: Optional[threading.Event] = None,
    ):
        self.app_config = app_config or config.load_config()
        self.source = Path(source)
        self.target = Path(target)
        self.excludes = PathFilter(list(self.app_config.excludes) + list(excludes))
        self.safe_io = safe_io or SafeIO(RetryPolicy(self.app_config.retry_attempts, self.app_config.retry_delay))
        self.progress_callback = progress_callback
        self.confirm = confirm
        self.stopping = stopping or threading.Event()
        self.queue: queue.Queue = queue.Queue()
        self._scan_error: Optional[BaseException] = None
        self._progress: Optional[Progress] = None
        self._last_status = 0.0

    def stop(self) -> None:
        self.stopping.set()

    def run(self) -> SyncResult:
        if not self.source.is_dir():
            raise SourceMissingError(self.source)
        self.safe_io.makedirs(self.target)

        counters = SyncCounters()
        with Progress(f"Sync {self.source}", self.app_config.show_progress, self.progress_callback) as progress:
            self._progress = progress
            applier = ActionApplier(self.safe_io, progress, counters, self.confirm)
            producer = threading.Thread(target=self._produce, name="packrat-scan", daemon=True)
            producer.start()
            try:
                apply_actions(self.queue, applier, self.stopping, self.app_config.poll_interval)
            except KeyboardInterrupt:
                self.stopping.set()
                apply_actions(self.queue, applier, self.stopping, self.app_config.poll_interval)
            except BaseException:
                self.stopping.set()
                raise
            finally:
                producer.join()
            if self.stopping.is_set():
                # Whatever the scanner queued while it noticed the stop.
                drain_actions(self.queue, applier)

        if self._scan_error is not None:
            raise BackgroundScanError(f"Scanning '{self.source}' failed: {self._scan_error}") from self._scan_error

        result = SyncResult(counters=counters, cancelled=self.stopping.is_set())
        click.echo(
            f"Sync {'cancelled' if result.cancelled else 'complete'}: {counters.copied} copied, "
            f"{counters.deleted} deleted, {counters.skipped} skipped, {counters.failed} failed."
        )
        return result

    # --- Producer side, runs on the scan thread ---

    def _produce(self) -> None:
        try:
            self._scan(self.source, self.target, "")
        except BaseException as e:
            self._scan_error = e
        finally:
            self.queue.put(sentinel)

    def _status(self, relative_path: str) -> None:
        now = time.monotonic()
        if now - self._last_status >= STATUS_INTERVAL:
            self._last_status = now
            self.queue.put(LogAction(f"Scan: {relative_path or self.source}", status=True))

    def _queue_copy(self, live: LiveFile, target: Path) -> None:
        self.queue.put(CopyAction(source=live.path, target=target, length=live.length, relative_path=live.relative_path))
        self._progress.add_maximum(live.length)

    def _queue_delete(self, entry: os.DirEntry, relative_path: str) -> None:
        """Deletes a target file, or a whole directory innermost first. Reparse points are left alone."""
        if metadata.is_reparse_point(entry) and entry.is_dir():
            logging.info(f"Not deleting reparse point '{relative_path}'.")
            return
        if entry.is_dir(follow_symlinks=False):
            for child in list_entries(entry.path, relative_path):
                self._queue_delete(child, os.path.join(relative_path, child.name))
        self.queue.put(DeleteAction(path=Path(entry.path), relative_path=relative_path))

    @staticmethod
    def _match_targets(names: List[str], targets: Dict[str, os.DirEntry]) -> Dict[str, os.DirEntry]:
        """Pairs source names with target children, removing the paired children from targets.

        Exact names are paired first. Only names left without an exact partner on
        either side are then paired ignoring case, first come first served.
        """
        matches = {name: targets.pop(name) for name in names if name in targets}
        folded: Dict[str, str] = {}
        for name in targets:
            folded.setdefault(name.casefold(), name)
        for name in names:
            if name in matches:
                continue
            candidate = folded.pop(name.casefold(), None)
            if candidate is not None:
                matches[name] = targets.pop(candidate)
        return matches

    def _scan(self, source_dir: Path, target_dir: Path, relative: str) -> None:
        if self.stopping.is_set():
            return
        self._status(relative)

        entries = []
        for entry in list_entries(source_dir, relative):
            relative_path = os.path.join(relative, entry.name) if relative else entry.name
            if not self.excludes.is_empty and self.excludes.is_filtered(relative_path):
                logging.info(f"Skip: '{relative_path}'")
                continue
            entries.append((entry, relative_path))

        unmatched = {entry.name: entry for entry in list_entries(target_dir, relative)} if target_dir.is_dir() else {}
        matches = self._match_targets([entry.name for entry, _ in entries], unmatched)

        for entry, relative_path in entries:
            if self.stopping.is_set():
                return
            match = matches.get(entry.name)
            target_path = target_dir / (match.name if match is not None else entry.name)
            try:
                if entry.is_dir():
                    if metadata.is_reparse_point(entry):
                        logging.info(f"Skipping reparse point '{relative_path}'.")
                        continue
                    if match is not None and match.is_dir() and metadata.is_reparse_point(match):
                        self.queue.put(LogAction(f"Cannot sync into reparse point '{relative_path}'."))
                        continue
                    if match is not None and not match.is_dir():
                        self.queue.put(LogAction(f"'{relative_path}' is a directory now, replacing the file."))
                        self._queue_delete(match, relative_path)
                    self._scan(Path(entry.path), target_path, relative_path)
                elif entry.is_file():
                    live = LiveFile.from_path(entry.path, relative_path)
                    if match is not None and match.is_dir():
                        if metadata.is_reparse_point(match):
                            self.queue.put(LogAction(f"Cannot replace reparse point '{relative_path}' with a file."))
                            continue
                        self.queue.put(LogAction(f"'{relative_path}' is a file now, replacing the directory."))
                        self._queue_delete(match, relative_path)
                        match = None
                    if match is None or files_differ(live, target_path):
                        self._queue_copy(live, target_path)
            except FileNotFoundError:
                # Deleted while scanning.
                continue

        for name, entry in unmatched.items():
            if self.stopping.is_set():
                return
            self._queue_delete(entry, os.path.join(relative, name) if relative else name)
