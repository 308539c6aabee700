# tests/test_archive.py
import io
import zipfile
from datetime import datetime, timezone
from pathlib import Path

from packrat.archive import (
    ArchivePlanner,
    SharedArchiveWriter,
    entry_comment,
    is_direct_container,
    iter_shared_archive,
    open_container,
    parse_entry_comment,
    per_file_container_name,
    should_compress,
    write_container,
)
from packrat.file_index import FileIndex
from packrat.models import FileState, IndexEntry, LiveFile

T0 = datetime(2024, 3, 1, 12, 30, 15, tzinfo=timezone.utc)
MIB = 1 << 20


def make_live(relative_path: str, length: int, modified=T0) -> LiveFile:
    return LiveFile(relative_path, Path(relative_path), length, T0, T0, modified, 0x80)


def make_entry(relative_path: str, length: int, archive_name: str) -> IndexEntry:
    return IndexEntry(relative_path, T0, T0, T0, length, 0x80, archive_name)


def test_container_names():
    gz = per_file_container_name("movie.mkv", compress=True)
    stored = per_file_container_name("photo.JPG", compress=False)
    assert gz.endswith(".mkv.gz") and len(gz) == 32 + len(".mkv.gz")
    assert stored.endswith(".JPG.nopack")
    assert is_direct_container(gz) and is_direct_container(stored)
    assert not is_direct_container("0123.zip")


def test_no_compress_extensions():
    assert not should_compress("a/photo.JPG", [".jpg"])
    assert should_compress("a/notes.txt", [".jpg"])


def test_small_changed_file_moves_into_shared_archive():
    index = FileIndex()
    index.add(make_entry("a.txt", 10, "X.gz"))
    planner = ArchivePlanner(size_threshold=50 * MIB)
    entry = planner.plan(index.diff(make_live("a.txt", 12)), make_live("a.txt", 12))

    assert entry.state is FileState.MODIFIED
    assert entry.length == 12
    assert entry.archive_name == planner.shared_archive_name
    assert planner.unreferenced() == ["X.gz"]


def test_large_file_keeps_its_container():
    index = FileIndex()
    index.add(make_entry("big.bin", 2 * MIB, "Y.bin.gz"))
    live = make_live("big.bin", 3 * MIB)
    planner = ArchivePlanner(size_threshold=MIB)
    entry = planner.plan(index.diff(live), live)

    assert entry.archive_name == "Y.bin.gz"
    assert planner.usage == {"Y.bin.gz": 1}
    assert planner.unreferenced() == []


def test_large_file_leaving_the_shared_archive_gets_a_new_container():
    index = FileIndex()
    index.add(make_entry("grown.txt", 10, "old.zip"))
    live = make_live("grown.txt", 2 * MIB)
    planner = ArchivePlanner(size_threshold=MIB)
    entry = planner.plan(index.diff(live), live)

    assert entry.archive_name.endswith(".txt.gz")
    assert planner.unreferenced() == ["old.zip"]


def test_shared_archive_stays_referenced_by_unmodified_entries():
    index = FileIndex()
    index.add(make_entry("a.txt", 10, "run1.zip"))
    index.add(make_entry("b.txt", 10, "run1.zip"))
    planner = ArchivePlanner(size_threshold=MIB)
    planner.plan(index.diff(make_live("a.txt", 11)), make_live("a.txt", 11))
    planner.plan(index.diff(make_live("b.txt", 10)), make_live("b.txt", 10))

    assert planner.usage["run1.zip"] == 1
    assert planner.items_modified == 1
    assert planner.items_unmodified == 1
    assert planner.unreferenced() == []


def test_deleted_entries_release_their_archive():
    index = FileIndex()
    index.add(make_entry("gone.txt", 10, "run1.zip"))
    planner = ArchivePlanner(size_threshold=MIB)
    deleted = planner.collect_deleted(index)

    assert [e.relative_path for e in deleted] == ["gone.txt"]
    assert planner.unreferenced() == ["run1.zip"]


def test_missing_archive_forces_repack():
    index = FileIndex()
    index.add(make_entry("a.txt", 10, "lost.zip"))
    planner = ArchivePlanner(size_threshold=MIB, archive_exists=lambda name: False)
    live = make_live("a.txt", 10)
    entry = planner.plan(index.diff(live), live)

    assert entry.state is FileState.MODIFIED
    assert entry.archive_name == planner.shared_archive_name


def test_entry_comment_round_trip():
    values = parse_entry_comment(entry_comment(make_entry("a.txt", 1, "")).encode("utf-8"))
    assert values == {"CreationTime": T0, "LastAccessTime": T0, "LastWriteTime": T0, "Attributes": 0x80}


def test_shared_archive_writer(tmp_path: Path):
    path = tmp_path / "run.zip"
    with SharedArchiveWriter(path, [".jpg"]) as writer:
        writer.add(make_entry("dir\\a.txt", 5, "run.zip"), io.BytesIO(b"hello"))
        writer.add(make_entry("b.jpg", 3, "run.zip"), io.BytesIO(b"jpg"))
        writer.commit()

    entries = {info.filename: (info, zf.read(info)) for info, zf in iter_shared_archive(path)}
    assert set(entries) == {"dir/a.txt", "b.jpg"}
    assert entries["dir/a.txt"][1] == b"hello"
    assert entries["dir/a.txt"][0].compress_type == zipfile.ZIP_DEFLATED
    assert entries["b.jpg"][0].compress_type == zipfile.ZIP_STORED
    assert parse_entry_comment(entries["b.jpg"][0].comment)["LastWriteTime"] == T0


def test_uncommitted_shared_archive_leaves_nothing(tmp_path: Path):
    path = tmp_path / "run.zip"
    with SharedArchiveWriter(path, []) as writer:
        writer.add(make_entry("a.txt", 5, "run.zip"), io.BytesIO(b"hello"))
    assert list(tmp_path.iterdir()) == []


def test_per_file_containers(tmp_path: Path):
    gz = tmp_path / "c.txt.gz"
    stored = tmp_path / "c.jpg.nopack"
    assert write_container(gz, io.BytesIO(b"compressed")) == 10
    assert write_container(stored, io.BytesIO(b"stored")) == 6

    assert stored.read_bytes() == b"stored"
    with open_container(gz) as f:
        assert f.read() == b"compressed"
