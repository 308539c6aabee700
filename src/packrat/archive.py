# packrat/archive.py
"""
Container naming, the archive assignment policy of a backup run, and the
readers/writers for both container kinds:

- the run's shared archive: one zip file bundling every small changed file,
- per-file containers: one gzip-compressed ('.gz') or stored ('.nopack') stream.
"""
import logging
import os
import uuid
import zipfile
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .durable import DurableFileWriter
from .file_index import FileIndex, format_time, parse_time
from .models import FileState, IndexEntry, LiveFile
from .safe_io import SafeIO, copy_stream

SHARED_ARCHIVE_SUFFIX = ".zip"
GZIP_SUFFIX = ".gz"
NOPACK_SUFFIX = ".nopack"

DEFAULT_SIZE_THRESHOLD = 50 << 20  # 50 MiB
DEFAULT_NO_COMPRESS = [".jpg", ".gz", ".zip", ".7z", ".mp3", ".ac3"]


def new_archive_name(suffix: str) -> str:
    return uuid.uuid4().hex + suffix


def is_gzip_container(name: str) -> bool:
    return name.lower().endswith(GZIP_SUFFIX)


def is_nopack_container(name: str) -> bool:
    return name.lower().endswith(NOPACK_SUFFIX)


def is_direct_container(name: str) -> bool:
    """Per-file containers are recognised by name alone."""
    return is_gzip_container(name) or is_nopack_container(name)


def should_compress(relative_path: str, no_compress: Iterable[str]) -> bool:
    """Already compressed formats are stored as they are."""
    name = relative_path.casefold()
    return not any(name.endswith(ext.casefold()) for ext in no_compress if ext)


def per_file_container_name(relative_path: str, compress: bool) -> str:
    extension = os.path.splitext(relative_path)[1]
    return new_archive_name(extension + (GZIP_SUFFIX if compress else NOPACK_SUFFIX))


class ArchivePlanner:
    """
    Decides where each changed file of a backup run goes and counts how many
    index entries reference every archive.

    Small files (below size_threshold) go into the run's shared archive. Larger
    ones keep their per-file container, or get a new one. An archive whose final
    count is zero is garbage.

    Args:
        size_threshold: files at least this large get their own container.
        no_compress: name endings stored without compression.
        archive_exists: checks that an unmodified file's archive is still
            present; None skips the check (shadow index mode).
        force: re-pack unmodified files as well.
    """

    def __init__(
        self,
        size_threshold: int = DEFAULT_SIZE_THRESHOLD,
        no_compress: Optional[Iterable[str]] = None,
        archive_exists: Optional[Callable[[str], bool]] = None,
        force: bool = False,
    ):
        self.size_threshold = size_threshold
        self.no_compress = list(DEFAULT_NO_COMPRESS if no_compress is None else no_compress)
        self.archive_exists = archive_exists
        self.force = force
        self.shared_archive_name = new_archive_name(SHARED_ARCHIVE_SUFFIX)
        self.usage: Dict[str, int] = {}

        self.items_modified = 0
        self.items_unmodified = 0
        self.items_shared = 0
        self.total_bytes = 0

    def _reference(self, archive_name: str) -> None:
        self.usage[archive_name] = self.usage.get(archive_name, 0) + 1

    def _release(self, archive_name: str) -> None:
        """Makes an archive known to the garbage collector without referencing it."""
        if archive_name:
            self.usage.setdefault(archive_name, 0)

    def _needs_repack(self, entry: IndexEntry) -> bool:
        if self.force or not entry.archive_name:
            return True
        if self.archive_exists is None:
            return False
        return not self.archive_exists(entry.archive_name)

    def plan(self, entry: IndexEntry, live: LiveFile) -> IndexEntry:
        """Assigns an archive to an entry fresh out of FileIndex.diff."""
        if entry.state is FileState.UNMODIFIED:
            if not self._needs_repack(entry):
                self.items_unmodified += 1
                self._reference(entry.archive_name)
                return entry
            entry.update(live)

        previous = entry.archive_name
        if entry.length < self.size_threshold:
            entry.archive_name = self.shared_archive_name
            self.items_shared += 1
        elif not previous or not is_direct_container(previous):
            entry.archive_name = per_file_container_name(
                entry.relative_path, should_compress(entry.relative_path, self.no_compress)
            )
        if previous != entry.archive_name:
            self._release(previous)

        self.items_modified += 1
        self.total_bytes += entry.length
        self._reference(entry.archive_name)
        return entry

    def collect_deleted(self, index: FileIndex) -> List[IndexEntry]:
        """Entries never seen in the live tree. Their archives lose the reference."""
        deleted = index.entries_in_state(FileState.NONE)
        for entry in deleted:
            self._release(entry.archive_name)
        return deleted

    def unreferenced(self) -> List[str]:
        return [name for name, count in self.usage.items() if count == 0]


# --- Shared archive ---

def zip_entry_name(relative_path: str) -> str:
    return relative_path.replace("\\", "/").replace(os.sep, "/").lstrip("/")


def entry_comment(entry: IndexEntry) -> str:
    return (
        f"CreationTime={format_time(entry.created)}\n"
        f"LastAccessTime={format_time(entry.accessed)}\n"
        f"LastWriteTime={format_time(entry.modified)}\n"
        f"Attributes={entry.attributes}"
    )


def parse_entry_comment(comment: Union[str, bytes]) -> Dict[str, object]:
    """Reads the key=value lines written by entry_comment. Unknown keys are kept as strings."""
    if isinstance(comment, bytes):
        comment = comment.decode("utf-8", errors="replace")
    values: Dict[str, object] = {}
    for line in comment.splitlines():
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key.endswith("Time"):
            values[key] = parse_time(value)
        elif key == "Attributes":
            values[key] = int(value)
        else:
            values[key] = value
    return values


def _zip_date_time(value: datetime) -> Tuple[int, int, int, int, int, int]:
    # Zip timestamps cover 1980..2107.
    year = min(max(value.year, 1980), 2107)
    return (year, value.month, value.day, value.hour, value.minute, value.second)


class SharedArchiveWriter:
    """Bundles files into one zip container through a DurableFileWriter."""

    def __init__(self, path: Union[str, Path], no_compress: Iterable[str], safe_io: Optional[SafeIO] = None):
        self.path = Path(path)
        self.no_compress = list(no_compress)
        self._writer = DurableFileWriter(self.path, compressed=False, safe_io=safe_io)
        self._zip = zipfile.ZipFile(self._writer.stream, mode="w", allowZip64=True)
        self.count = 0

    def add(self, entry: IndexEntry, src: BinaryIO, progress=None) -> int:
        info = zipfile.ZipInfo(zip_entry_name(entry.relative_path), date_time=_zip_date_time(entry.modified))
        info.compress_type = (
            zipfile.ZIP_DEFLATED if should_compress(entry.relative_path, self.no_compress) else zipfile.ZIP_STORED
        )
        info.comment = entry_comment(entry).encode("utf-8")
        info.external_attr = 0o644 << 16
        with self._zip.open(info, mode="w", force_zip64=True) as dst:
            copied = copy_stream(src, dst, progress)
        self.count += 1
        return copied

    def commit(self) -> None:
        self._zip.close()
        self._writer.commit()

    def close(self) -> None:
        try:
            # Closing writes the central directory; harmless after commit().
            self._zip.close()
        finally:
            self._writer.close()

    def __enter__(self) -> "SharedArchiveWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self._writer.__exit__(exc_type, exc, tb)
            try:
                self._zip.close()
            except (OSError, ValueError) as e:
                logging.debug(f"Ignoring error while discarding '{self.path}': {e}")
            return
        self.close()


def iter_shared_archive(path: Union[str, Path], safe_io: Optional[SafeIO] = None) -> Iterator[Tuple[zipfile.ZipInfo, zipfile.ZipFile]]:
    """Yields the file entries of a shared archive together with the open ZipFile."""
    safe_io = safe_io or SafeIO()
    with safe_io.open_read(path) as raw, zipfile.ZipFile(raw) as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            yield info, zf


# --- Per-file containers ---

def write_container(path: Union[str, Path], src: BinaryIO, safe_io: Optional[SafeIO] = None, progress=None) -> int:
    """Streams one file into its own container; gzip or stored is decided by the name."""
    with DurableFileWriter(path, compressed=is_gzip_container(str(path)), safe_io=safe_io) as writer:
        copied = copy_stream(src, writer.stream, progress)
        writer.commit()
    return copied


def open_container(path: Union[str, Path], safe_io: Optional[SafeIO] = None) -> BinaryIO:
    safe_io = safe_io or SafeIO()
    return safe_io.open_read(path, compressed=is_gzip_container(str(path)))
