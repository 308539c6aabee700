# packrat/file_index.py
import csv
import io
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from .durable import DurableFileWriter, is_gzip_name
from .errors import IndexCorruptError
from .models import FileState, IndexEntry, LiveFile
from .safe_io import SafeIO
from .scanner import PathFilter, scan_directory

# Column order of an index row.
INDEX_COLUMNS = ("relative_path", "created", "accessed", "modified", "length", "attributes", "archive_name")
INDEX_DELIMITER = ";"
INDEX_ENCODING = "utf-16"
# Culture-invariant, whole seconds, UTC.
TIME_FORMAT = "%m/%d/%Y %H:%M:%S"


def format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(TIME_FORMAT)


def parse_time(value: str) -> datetime:
    try:
        parsed = datetime.strptime(value, TIME_FORMAT)
    except ValueError:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_row(entry: IndexEntry) -> List[str]:
    return [
        entry.relative_path,
        format_time(entry.created),
        format_time(entry.accessed),
        format_time(entry.modified),
        str(entry.length),
        str(entry.attributes),
        entry.archive_name or "",
    ]


def parse_row(row: List[str], line: int, path) -> IndexEntry:
    if len(row) != len(INDEX_COLUMNS):
        raise IndexCorruptError(path, line, f"expected {len(INDEX_COLUMNS)} columns, found {len(row)}")
    relative_path, created, accessed, modified, length, attributes, archive_name = row
    if not relative_path:
        raise IndexCorruptError(path, line, "empty relative path")
    try:
        return IndexEntry(
            relative_path=relative_path,
            created=parse_time(created),
            accessed=parse_time(accessed),
            modified=parse_time(modified),
            length=int(length),
            attributes=int(attributes),
            archive_name=archive_name,
        )
    except ValueError as e:
        raise IndexCorruptError(path, line, str(e)) from e


class FileIndex:
    """
    Maps relative paths to their last known metadata and archive location.

    Keys are case-insensitive. Entries keep insertion order, which is also the
    order the backup writes them in.
    """

    def __init__(self):
        self._entries: Dict[str, IndexEntry] = {}

    @staticmethod
    def _key(relative_path: str) -> str:
        return relative_path.casefold()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[IndexEntry]:
        return iter(list(self._entries.values()))

    def __contains__(self, relative_path: str) -> bool:
        return self._key(relative_path) in self._entries

    def get(self, relative_path: str) -> Optional[IndexEntry]:
        return self._entries.get(self._key(relative_path))

    def add(self, entry: IndexEntry) -> None:
        self._entries[self._key(entry.relative_path)] = entry

    def remove(self, entry: IndexEntry) -> None:
        """Drops an entry. Used for confirmed deletions."""
        self._entries.pop(self._key(entry.relative_path), None)

    def diff(self, live: LiveFile) -> Optional[IndexEntry]:
        """
        Compares a live file with its entry and updates the index in place.

        Unknown files get a new MODIFIED entry without archive. Known files are
        marked UNMODIFIED when length, attributes and modification time (to the
        second) still match; otherwise their metadata is overwritten and they
        are marked MODIFIED.

        Returns None, with a warning, for a file whose name differs only in case
        from one already seen in this run; the index keeps the first one.
        """
        entry = self.get(live.relative_path)
        if entry is None:
            entry = IndexEntry.from_live(live)
            self.add(entry)
        elif entry.state is not FileState.NONE and entry.relative_path != live.relative_path:
            logging.warning(
                f"'{live.relative_path}' differs only in case from '{entry.relative_path}', "
                f"which is already indexed; it is not backed up."
            )
            return None
        if entry.relative_path != live.relative_path:
            # Renamed by case only.
            entry.relative_path = live.relative_path
        if entry.matches(live):
            entry.mark_unmodified()
        else:
            entry.update(live)
        return entry

    def entries_in_state(self, state: FileState) -> List[IndexEntry]:
        return [e for e in self._entries.values() if e.state is state]

    def load(self, path: Union[str, Path], safe_io: Optional[SafeIO] = None) -> bool:
        """
        Reads an index file into this index. A missing file leaves it empty and
        returns False. The file is gunzipped when its name ends in '.gz'.

        Raises:
            IndexCorruptError: a row is malformed.
        """
        path = Path(path)
        if not path.exists():
            return False
        safe_io = safe_io or SafeIO()
        with safe_io.open_read(path, compressed=is_gzip_name(path)) as raw:
            text = io.TextIOWrapper(raw, encoding=INDEX_ENCODING, newline="")
            try:
                reader = csv.reader(text, delimiter=INDEX_DELIMITER)
                for line, row in enumerate(reader, 1):
                    if not row:
                        continue
                    self.add(parse_row(row, line, path))
            except (UnicodeError, csv.Error, EOFError, OSError) as e:
                raise IndexCorruptError(path, reader.line_num, str(e)) from e
            finally:
                text.detach()
        logging.info(f"Loaded {len(self)} index entries from '{path}'.")
        return True

    def save(self, path: Union[str, Path], safe_io: Optional[SafeIO] = None) -> None:
        """Writes every entry to a durable file that replaces the previous index only on success."""
        with DurableFileWriter(path, safe_io=safe_io) as writer:
            text = io.TextIOWrapper(writer.stream, encoding=INDEX_ENCODING, newline="")
            csv_writer = csv.writer(text, delimiter=INDEX_DELIMITER)
            for entry in self._entries.values():
                csv_writer.writerow(format_row(entry))
            text.flush()
            text.detach()
            writer.commit()

    @classmethod
    def from_file(cls, path: Union[str, Path], safe_io: Optional[SafeIO] = None) -> "FileIndex":
        index = cls()
        index.load(path, safe_io)
        return index


def build_index(root_path: Union[str, Path], excludes: Optional[PathFilter] = None) -> FileIndex:
    """Indexes a directory without archiving anything; every entry starts MODIFIED and unassigned."""
    index = FileIndex()
    for live in scan_directory(root_path, excludes):
        index.diff(live)
    return index
