# packrat/models.py
import enum
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import attrs


class FileState(enum.Enum):
    """Change state of an index entry. Recomputed on every run, never persisted."""
    NONE = 0          # in the index, not (yet) seen in the live tree
    UNMODIFIED = 1
    MODIFIED = 2


class FileAttributes(enum.IntFlag):
    """Platform file attribute bits, using the Windows values so indexes travel between systems."""
    READONLY = 0x1
    HIDDEN = 0x2
    SYSTEM = 0x4
    DIRECTORY = 0x10
    ARCHIVE = 0x20
    NORMAL = 0x80
    REPARSE_POINT = 0x400


# Attributes that block overwriting or deleting a file.
BLOCKING_ATTRIBUTES = FileAttributes.READONLY | FileAttributes.HIDDEN | FileAttributes.SYSTEM


def compare_file_time(a: datetime, b: datetime) -> bool:
    """Two timestamps are equal if they differ by less than one whole second.

    File systems truncate timestamps differently (FAT keeps two seconds, the
    index keeps whole seconds), so sub-second differences never count as a change.
    """
    return int((a - b).total_seconds()) == 0


# Slotted and frozen: one of these is created per file of every scanned tree.
@attrs.define(slots=True, frozen=True)
class LiveFile:
    """Metadata of a file found in a live directory tree."""
    relative_path: str
    path: Path
    length: int
    created: datetime
    accessed: datetime
    modified: datetime
    attributes: int

    @classmethod
    def from_path(cls, path: Union[str, Path], relative_path: str) -> "LiveFile":
        from . import metadata
        path = Path(path)
        st = path.stat()
        created, accessed, modified = metadata.stat_times(st)
        return cls(
            relative_path=relative_path,
            path=path,
            length=st.st_size,
            created=created,
            accessed=accessed,
            modified=modified,
            attributes=metadata.file_attributes(path.name, st),
        )


@attrs.define(slots=True, eq=False)
class IndexEntry:
    """Last known metadata of a backed up file and the container holding its content."""
    relative_path: str
    created: datetime
    accessed: datetime
    modified: datetime
    length: int
    attributes: int
    archive_name: str = ""
    state: FileState = FileState.NONE

    @classmethod
    def from_live(cls, live: LiveFile) -> "IndexEntry":
        return cls(
            relative_path=live.relative_path,
            created=live.created,
            accessed=live.accessed,
            modified=live.modified,
            length=live.length,
            attributes=live.attributes,
            archive_name="",
            state=FileState.MODIFIED,
        )

    def matches(self, live: LiveFile) -> bool:
        """Change detection: length and attributes exactly, modification time within a second.

        Creation and access time are deliberately not compared.
        """
        return (
            self.length == live.length
            and self.attributes == live.attributes
            and compare_file_time(self.modified, live.modified)
        )

    def update(self, live: LiveFile) -> None:
        self.created = live.created
        self.accessed = live.accessed
        self.modified = live.modified
        self.attributes = live.attributes
        self.length = live.length
        self.state = FileState.MODIFIED

    def mark_unmodified(self) -> None:
        self.state = FileState.UNMODIFIED


# --- Sync actions, queued by the scanner and applied in FIFO order ---

@attrs.define(slots=True, frozen=True)
class CopyAction:
    source: Path
    target: Path
    length: int
    relative_path: str


@attrs.define(slots=True, frozen=True)
class DeleteAction:
    path: Path
    relative_path: str


@attrs.define(slots=True, frozen=True)
class LogAction:
    message: str
    # Status lines update the progress display, everything else goes to the log.
    status: bool = False


SyncAction = Union[CopyAction, DeleteAction, LogAction]


@attrs.define(slots=True)
class SyncCounters:
    """Totals of what the applier did."""
    copied: int = 0
    deleted: int = 0
    failed: int = 0
    skipped: int = 0
    bytes_copied: int = 0
    errors: list = attrs.field(factory=list)

    def record_failure(self, description: str, exc: Optional[BaseException] = None) -> None:
        self.failed += 1
        self.errors.append(f"{description}: {exc}" if exc else description)
