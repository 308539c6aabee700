# packrat/worker.py
import logging
import os
import queue
import threading
from pathlib import Path
from typing import Callable, Optional

import click

from .durable import DurableFileWriter
from .models import CopyAction, DeleteAction, LogAction, SyncAction, SyncCounters
from .progress import Progress
from .safe_io import SafeIO, copy_stream

sentinel = "DONE"  # A signal that the scanner has finished.


class ActionApplier:
    """
    Applies sync actions to the target tree, one at a time.

    A failing action is logged and counted, never raised, so one locked file
    does not end a sync. AbortError (the user chose to abort) does propagate.
    """

    def __init__(
        self,
        safe_io: SafeIO,
        progress: Progress,
        counters: Optional[SyncCounters] = None,
        confirm: Optional[Callable[[str, str], bool]] = None,
    ):
        self.safe_io = safe_io
        self.progress = progress
        self.counters = counters or SyncCounters()
        self.confirm = confirm

    def _confirmed(self, action: str, target: Path) -> bool:
        if self.confirm is None or self.confirm(action, str(target)):
            return True
        self.counters.skipped += 1
        return False

    def apply(self, action: SyncAction) -> None:
        if isinstance(action, LogAction):
            self.apply_log(action)
            return
        try:
            if isinstance(action, CopyAction):
                self.apply_copy(action)
            elif isinstance(action, DeleteAction):
                self.apply_delete(action)
            else:
                raise TypeError(f"Unknown sync action: {action!r}")
        except OSError as e:
            logging.warning(f"Failed to sync '{action.relative_path}': {e}")
            self.counters.record_failure(action.relative_path, e)

    def apply_log(self, action: LogAction) -> None:
        if action.status:
            self.progress.set_operation(action.message)
        else:
            logging.warning(action.message)

    def apply_copy(self, action: CopyAction) -> None:
        if not self._confirmed("copy", action.target):
            return
        self.progress.set_operation(f"Copy {action.relative_path}")
        with self.safe_io.open_read(action.source) as src:
            with DurableFileWriter(action.target, compressed=False, safe_io=self.safe_io) as writer:
                copied = copy_stream(src, writer.stream, self.progress)
                writer.commit()
        # After the read, so the target carries the source's final access time.
        self.safe_io.copy_stat(action.source, action.target)
        self.counters.copied += 1
        self.counters.bytes_copied += copied

    def apply_delete(self, action: DeleteAction) -> None:
        """Deletes a file or an already emptied directory."""
        if not self._confirmed("delete", action.path):
            return
        self.progress.set_operation(f"Delete {action.relative_path}")
        path = action.path
        if not os.path.lexists(path):
            return
        if not path.is_symlink():
            self.safe_io.clear_attributes(path)
        if path.is_dir() and not path.is_symlink():
            self.safe_io.rmdir(path)
        else:
            self.safe_io.remove(path, missing_ok=True)
        self.counters.deleted += 1


def drain_actions(action_queue: queue.Queue, applier: ActionApplier) -> None:
    """Applies whatever is queued right now, without waiting for more."""
    while True:
        try:
            action = action_queue.get_nowait()
        except queue.Empty:
            return
        if action == sentinel:
            return
        applier.apply(action)


def apply_actions(
    action_queue: queue.Queue,
    applier: ActionApplier,
    stopping: threading.Event,
    poll_interval: float = 0.25,
) -> None:
    """
    The consumer loop: applies queued actions in FIFO order until the scanner
    posts the sentinel. The wait for work is bounded by poll_interval so a
    stop request is seen promptly; once stopping, only what is already queued
    gets applied.
    """
    while True:
        if stopping.is_set():
            click.echo("Stopping: applying queued actions...", err=True)
            drain_actions(action_queue, applier)
            return
        try:
            action = action_queue.get(timeout=poll_interval)
        except queue.Empty:
            continue
        if action == sentinel:
            return
        applier.apply(action)
