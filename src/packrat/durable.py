# packrat/durable.py
import logging
import uuid
from pathlib import Path
from typing import BinaryIO, Optional, Union

from .errors import TargetExistsError
from .safe_io import SafeIO


def is_gzip_name(name: Union[str, Path]) -> bool:
    return str(name).lower().endswith(".gz")


class DurableFileWriter:
    """
    Writes a file through a randomly named sibling temp file.

    Nothing reaches the target path unless commit() was called: on close a
    committed temp file atomically replaces the target (overwriting it), an
    uncommitted one is deleted and the target is left untouched. Leaving the
    with-block through an exception always discards.

    Usage:
        with DurableFileWriter(path, safe_io=sio) as writer:
            writer.stream.write(data)
            writer.commit()

    Args:
        target: the final file path.
        compressed: gzip the content; None decides by a '.gz' suffix on the target.
        safe_io: retry wrapper for the filesystem calls.
        exclusive: refuse to replace an existing target (TargetExistsError).
    """

    def __init__(
        self,
        target: Union[str, Path],
        compressed: Optional[bool] = None,
        safe_io: Optional[SafeIO] = None,
        exclusive: bool = False,
    ):
        self.target = Path(target)
        self.compressed = is_gzip_name(self.target) if compressed is None else compressed
        self.safe_io = safe_io or SafeIO()
        self.exclusive = exclusive
        self.temp_path: Optional[Path] = self.target.parent / f"{uuid.uuid4().hex}.tmp"
        self._stream: Optional[BinaryIO] = None
        self._committed = False
        if exclusive and self.target.exists():
            raise TargetExistsError(self.target)

    @property
    def stream(self) -> BinaryIO:
        """The temp file, opened on first use."""
        if self.temp_path is None:
            raise ValueError(f"Writer for '{self.target}' is already closed.")
        if self._stream is None:
            self._stream = self.safe_io.open_write(self.temp_path, compressed=self.compressed, exclusive=True)
        return self._stream

    @property
    def committed(self) -> bool:
        return self._committed

    def commit(self) -> None:
        self._committed = True

    def close(self) -> None:
        if self.temp_path is None:
            return
        temp_path, self.temp_path = self.temp_path, None
        try:
            if self._committed and self._stream is None:
                # Committed without writing: the target becomes an empty file.
                self._stream = self.safe_io.open_write(temp_path, compressed=self.compressed, exclusive=True)
            if self._stream is not None:
                self._stream.close()
                self._stream = None
        except BaseException:
            self._discard(temp_path)
            raise

        if not self._committed:
            self._discard(temp_path)
            return
        if self.exclusive and self.target.exists():
            self._discard(temp_path)
            raise TargetExistsError(self.target)
        if self.target.exists():
            self.safe_io.clear_attributes(self.target)
        try:
            self.safe_io.replace(temp_path, self.target)
        except BaseException:
            self._discard(temp_path)
            raise

    def _discard(self, temp_path: Path) -> None:
        try:
            self.safe_io.remove(temp_path, missing_ok=True)
        except OSError as e:
            logging.warning(f"Could not delete temporary file '{temp_path}': {e}")

    def __enter__(self) -> "DurableFileWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self._committed = False
        self.close()
