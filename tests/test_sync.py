# tests/test_sync.py
import errno
import logging
import os
import stat
import threading
from pathlib import Path

import pytest

from conftest import read_tree, require_case_sensitive, write_tree
from packrat.errors import BackgroundScanError, SourceMissingError
from packrat.models import LiveFile
from packrat.safe_io import SafeIO
from packrat.sync import SyncPipeline, files_differ


def run_sync(source: Path, target: Path, app_config, **kwargs):
    return SyncPipeline(source, target, app_config=app_config, **kwargs).run()


def test_sync_copies_a_new_tree(source_tree: Path, tmp_path: Path, app_config):
    target = tmp_path / "mirror"
    result = run_sync(source_tree, target, app_config)

    assert not result.cancelled
    assert result.counters.copied == 5
    assert read_tree(target) == read_tree(source_tree)
    for relative_path in read_tree(source_tree):
        assert int((target / relative_path).stat().st_mtime) == int((source_tree / relative_path).stat().st_mtime)


def test_second_sync_has_nothing_to_do(source_tree: Path, tmp_path: Path, app_config):
    target = tmp_path / "mirror"
    run_sync(source_tree, target, app_config)
    result = run_sync(source_tree, target, app_config)

    assert result.counters.copied == 0
    assert result.counters.deleted == 0


def test_sync_converges_after_changes(source_tree: Path, tmp_path: Path, app_config):
    target = tmp_path / "mirror"
    run_sync(source_tree, target, app_config)

    (source_tree / "a.txt").write_bytes(b"new content")
    (source_tree / "docs" / "deep" / "notes.txt").unlink()
    (source_tree / "docs" / "deep").rmdir()
    write_tree(source_tree, {"new/file.txt": b"fresh"})
    write_tree(target, {"stray/junk.bin": b"junk", "extra.txt": b"extra"})

    result = run_sync(source_tree, target, app_config)

    assert read_tree(target) == read_tree(source_tree)
    assert not (target / "docs" / "deep").exists()
    assert not (target / "stray").exists()
    assert result.counters.copied == 2
    # notes.txt, deep/, junk.bin, stray/, extra.txt
    assert result.counters.deleted == 5


def test_file_replaced_by_directory(tmp_path: Path, app_config):
    source = write_tree(tmp_path / "source", {"item/inner.txt": b"inner"})
    target = write_tree(tmp_path / "mirror", {"item": b"was a file"})

    run_sync(source, target, app_config)
    assert read_tree(target) == {"item/inner.txt": b"inner"}


def test_directory_replaced_by_file(tmp_path: Path, app_config):
    source = write_tree(tmp_path / "source", {"item": b"now a file"})
    target = write_tree(tmp_path / "mirror", {"item/inner.txt": b"inner"})

    run_sync(source, target, app_config)
    assert read_tree(target) == {"item": b"now a file"}


def test_excluded_paths_are_removed_from_the_target(source_tree: Path, tmp_path: Path, app_config):
    target = tmp_path / "mirror"
    run_sync(source_tree, target, app_config)
    run_sync(source_tree, target, app_config, excludes=("docs",))

    assert set(read_tree(target)) == {"a.txt", "b.jpg", "empty.dat"}


def test_what_if_gate_changes_nothing(source_tree: Path, tmp_path: Path, app_config):
    target = write_tree(tmp_path / "mirror", {"extra.txt": b"extra"})
    seen = []
    result = run_sync(source_tree, target, app_config, confirm=lambda action, path: seen.append(action) or False)

    assert read_tree(target) == {"extra.txt": b"extra"}
    assert result.counters.skipped == 6
    assert seen.count("copy") == 5 and seen.count("delete") == 1


def test_files_differ_compares_length_and_times(tmp_path: Path):
    write_tree(tmp_path, {"a.txt": b"abc", "b.txt": b"abc"}, seconds_ago=None)
    for name in ("a.txt", "b.txt"):
        os.utime(tmp_path / name, (1700000000, 1700000000))
    live = LiveFile.from_path(tmp_path / "a.txt", "a.txt")

    assert not files_differ(live, tmp_path / "b.txt")
    os.utime(tmp_path / "b.txt", (1700000000, 1700000000 - 5))
    assert files_differ(live, tmp_path / "b.txt")
    assert files_differ(live, tmp_path / "missing.txt")


def test_single_file_failure_does_not_stop_the_sync(source_tree: Path, tmp_path: Path, app_config, monkeypatch, caplog):
    original_open_read = SafeIO.open_read

    def open_read(self, path, compressed=False, allow_empty=False):
        if Path(path).name == "a.txt":
            raise OSError(errno.EIO, "I/O error", str(path))
        return original_open_read(self, path, compressed, allow_empty)

    monkeypatch.setattr(SafeIO, "open_read", open_read)
    target = tmp_path / "mirror"
    result = run_sync(source_tree, target, app_config)

    assert result.counters.failed == 1
    assert result.counters.copied == 4
    assert not (target / "a.txt").exists()
    assert "Failed to sync 'a.txt'" in caplog.text


def test_scan_failure_surfaces_after_draining(source_tree: Path, tmp_path: Path, app_config, monkeypatch):
    from packrat import sync as sync_module

    original = sync_module.list_entries

    def list_entries(directory, relative_path=""):
        if Path(directory).name == "deep":
            raise RuntimeError("disk on fire")
        return original(directory, relative_path)

    monkeypatch.setattr(sync_module, "list_entries", list_entries)
    target = tmp_path / "mirror"
    with pytest.raises(BackgroundScanError) as excinfo:
        run_sync(source_tree, target, app_config)

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    # Everything queued before the failure was still applied.
    assert (target / "a.txt").exists()


def test_cancel_leaves_only_complete_files(source_tree: Path, tmp_path: Path, app_config):
    stopping = threading.Event()
    target = tmp_path / "mirror"
    copies = []

    def gate(action, path):
        copies.append(path)
        stopping.set()
        return True

    result = run_sync(source_tree, target, app_config, confirm=gate, stopping=stopping)

    assert result.cancelled
    source = read_tree(source_tree)
    mirror = read_tree(target)
    assert len(mirror) <= len(source)
    for relative_path, content in mirror.items():
        assert source[relative_path] == content
    assert not list(target.rglob("*.tmp"))


def test_stop_before_run_copies_nothing(source_tree: Path, tmp_path: Path, app_config):
    pipeline = SyncPipeline(source_tree, tmp_path / "mirror", app_config=app_config)
    pipeline.stop()
    result = pipeline.run()

    assert result.cancelled
    assert result.counters.copied == 0


def test_missing_source(tmp_path: Path, app_config):
    with pytest.raises(SourceMissingError):
        run_sync(tmp_path / "missing", tmp_path / "mirror", app_config)


def test_names_differing_only_in_case_both_reach_the_target(tmp_path: Path, app_config):
    require_case_sensitive(tmp_path)
    source = write_tree(tmp_path / "source", {"A.txt": b"upper", "a.txt": b"lower"})
    target = write_tree(tmp_path / "mirror", {"a.txt": b"lower"})

    first = run_sync(source, target, app_config)
    second = run_sync(source, target, app_config)

    assert read_tree(target) == {"A.txt": b"upper", "a.txt": b"lower"}
    assert first.counters.copied == 1
    assert second.counters.copied == 0


def test_case_only_rename_updates_the_existing_target_file(tmp_path: Path, app_config):
    require_case_sensitive(tmp_path)
    source = write_tree(tmp_path / "source", {"Readme.md": b"new text"})
    target = write_tree(tmp_path / "mirror", {"README.md": b"old"})

    result = run_sync(source, target, app_config)

    assert read_tree(target) == {"README.md": b"new text"}
    assert result.counters.deleted == 0


def test_excluded_paths_are_logged(source_tree: Path, tmp_path: Path, app_config, caplog):
    caplog.set_level(logging.INFO)
    run_sync(source_tree, tmp_path / "mirror", app_config, excludes=("docs",))

    assert "Skip: 'docs'" in caplog.text


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks not supported")
def test_linked_directories_in_the_target_are_left_alone(tmp_path: Path, app_config):
    outside = write_tree(tmp_path / "outside", {"keep.txt": b"keep"})
    source = write_tree(tmp_path / "source", {"linked/new.txt": b"new", "a.txt": b"a"})
    target = tmp_path / "mirror"
    target.mkdir()
    try:
        os.symlink(outside, target / "linked", target_is_directory=True)
        os.symlink(outside, target / "stray", target_is_directory=True)
    except OSError:
        pytest.skip("cannot create symlinks here")

    run_sync(source, target, app_config)

    # Neither descended into nor deleted.
    assert read_tree(outside) == {"keep.txt": b"keep"}
    assert (target / "linked").is_symlink()
    assert (target / "stray").is_symlink()
    assert (target / "a.txt").read_bytes() == b"a"


def test_read_only_target_file_is_overwritten(tmp_path: Path, app_config, monkeypatch):
    cleared = []
    original_clear = SafeIO.clear_attributes

    def clear_attributes(self, path):
        cleared.append(Path(path))
        return original_clear(self, path)

    monkeypatch.setattr(SafeIO, "clear_attributes", clear_attributes)
    source = write_tree(tmp_path / "source", {"a.txt": b"new content"})
    target = write_tree(tmp_path / "mirror", {"a.txt": b"old"})
    os.chmod(target / "a.txt", stat.S_IREAD)

    result = run_sync(source, target, app_config)

    assert result.counters.failed == 0
    assert (target / "a.txt").read_bytes() == b"new content"
    assert target / "a.txt" in cleared
