# packrat/safe_io.py
"""
Retry-capable wrappers around every filesystem operation that can fail
transiently (sharing violations, locked files, flaky permissions on network
shares).

All wrappers go through one hookable RetryPolicy, so retry and backoff live
in one place and the notification mechanism (silent, interactive prompt, GUI)
can be swapped without touching the call sites.
"""
import enum
import errno
import gzip
import io
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional, Union

import click

from . import metadata
from .errors import AbortError

COPY_CHUNK_SIZE = 1024 * 1024

_TRANSIENT_ERRNOS = {errno.EBUSY, errno.EAGAIN, errno.ETXTBSY, errno.EACCES, errno.EPERM}
# ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION
_TRANSIENT_WINERRORS = {32, 33}


def is_transient(exc: BaseException) -> bool:
    """Whether an error is worth retrying."""
    if isinstance(exc, (PermissionError, BlockingIOError, TimeoutError, InterruptedError)):
        return True
    if not isinstance(exc, OSError):
        return False
    if getattr(exc, "winerror", None) in _TRANSIENT_WINERRORS:
        return True
    return exc.errno in _TRANSIENT_ERRNOS


class Decision(enum.Enum):
    RETRY = "retry"
    FAIL = "fail"    # give up; the caller's fallback applies
    ABORT = "abort"  # terminate the whole run


class RetryPolicy:
    """Retries a capped number of attempts with linear backoff, then gives up."""

    def __init__(self, attempts: int = 6, delay: float = 0.5, sleep: Callable[[float], None] = time.sleep):
        self.attempts = attempts
        self.delay = delay
        self._sleep = sleep

    def decide(self, exc: OSError, description: str, attempt: int) -> Decision:
        if attempt < self.attempts:
            logging.info(f"{description} failed (attempt {attempt}/{self.attempts}): {exc}")
            return Decision.RETRY
        return Decision.FAIL

    def backoff(self, attempt: int) -> None:
        if self.delay > 0:
            self._sleep(self.delay * attempt)


class InteractiveRetryPolicy(RetryPolicy):
    """Asks the user once the automatic attempts are used up."""

    def decide(self, exc: OSError, description: str, attempt: int) -> Decision:
        decision = super().decide(exc, description, attempt)
        if decision is not Decision.FAIL:
            return decision
        choice = click.prompt(
            click.style(f"{description}\n{exc}\n\nRetry, skip or abort?", fg="yellow"),
            type=click.Choice(["retry", "skip", "abort"]),
            default="retry",
        )
        if choice == "retry":
            return Decision.RETRY
        if choice == "abort":
            return Decision.ABORT
        return Decision.FAIL


class SafeIO:
    """Runs filesystem operations under a RetryPolicy."""

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    def run(self, func: Callable[..., Any], description: str, *args, **kwargs) -> Any:
        """Calls func, retrying transient OSErrors as the policy decides.

        Non-transient errors, and transient ones the policy gives up on,
        propagate. An ABORT decision raises AbortError.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return func(*args, **kwargs)
            except OSError as e:
                if not is_transient(e):
                    raise
                decision = self.policy.decide(e, description, attempt)
                if decision is Decision.RETRY:
                    self.policy.backoff(attempt)
                    continue
                if decision is Decision.ABORT:
                    raise AbortError(description) from e
                raise

    def open_read(self, path: Union[str, Path], compressed: bool = False, allow_empty: bool = False) -> BinaryIO:
        """Opens a file for reading, decompressing gzip if asked.

        With allow_empty, a file that cannot be opened is replaced by an empty
        stream (and a warning), so one unreadable file does not end a backup.
        """
        description = f"Open '{path}' for reading"
        opener = gzip.open if compressed else open
        try:
            return self.run(opener, description, path, "rb")
        except AbortError:
            raise
        except OSError as e:
            if not allow_empty:
                raise
            logging.warning(f"Could not read '{path}', storing it empty: {e}")
            return io.BytesIO()

    def open_write(self, path: Union[str, Path], compressed: bool = False, exclusive: bool = False) -> BinaryIO:
        """Opens a file for writing, creating missing parent directories."""
        path = Path(path)
        self.makedirs(path.parent)
        mode = "xb" if exclusive else "wb"
        opener = gzip.open if compressed else open
        return self.run(opener, f"Open '{path}' for writing", path, mode)

    def open_append(self, path: Union[str, Path]) -> BinaryIO:
        path = Path(path)
        self.makedirs(path.parent)
        return self.run(open, f"Open '{path}' for appending", path, "ab")

    def makedirs(self, path: Union[str, Path]) -> None:
        self.run(os.makedirs, f"Create directory '{path}'", path, exist_ok=True)

    def remove(self, path: Union[str, Path], missing_ok: bool = False) -> None:
        try:
            self.run(os.remove, f"Delete '{path}'", path)
        except FileNotFoundError:
            if not missing_ok:
                raise

    def rmdir(self, path: Union[str, Path]) -> None:
        self.run(os.rmdir, f"Delete directory '{path}'", path)

    def replace(self, source: Union[str, Path], target: Union[str, Path]) -> None:
        self.run(os.replace, f"Move '{source}' to '{target}'", source, target)

    def clear_attributes(self, path: Union[str, Path]) -> None:
        self.run(metadata.clear_blocking_attributes, f"Clear attributes of '{path}'", path)

    def apply_metadata(self, path: Union[str, Path], created, accessed, modified, attributes: int) -> None:
        self.run(
            metadata.apply_metadata,
            f"Set attributes of '{path}'",
            path, created, accessed, modified, attributes,
        )

    def copy_stat(self, source: Union[str, Path], target: Union[str, Path]) -> None:
        """Copies timestamps, mode bits and extended attributes (ACLs included).

        On Windows the creation time and the attribute bits are copied as well.
        """
        self.run(shutil.copystat, f"Copy attributes to '{target}'", source, target)
        if metadata.IS_WINDOWS:
            st = os.stat(source)
            created, accessed, modified = metadata.stat_times(st)
            self.apply_metadata(target, created, accessed, modified, metadata.file_attributes(Path(source).name, st))


def copy_stream(src: BinaryIO, dst: BinaryIO, progress=None, chunk_size: int = COPY_CHUNK_SIZE) -> int:
    """Copies src to dst in chunks, reporting bytes to the progress sink. Returns the byte count."""
    copied = 0
    while True:
        chunk = src.read(chunk_size)
        if not chunk:
            break
        dst.write(chunk)
        copied += len(chunk)
        if progress is not None:
            progress.advance(len(chunk))
    return copied
