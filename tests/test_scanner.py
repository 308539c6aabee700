# tests/test_scanner.py
import os
from pathlib import Path

import pytest

from conftest import write_tree
from packrat.errors import SourceMissingError
from packrat.scanner import PathFilter, glob_to_regex, scan_directory


def test_glob_matches_either_separator():
    rules = PathFilter(["docs/*.tmp"])
    assert rules.is_filtered("docs/x.tmp")
    assert rules.is_filtered("docs\\x.tmp")
    assert rules.is_filtered("DOCS/Y.TMP")
    assert not rules.is_filtered("other/docs/x.tmp")


def test_glob_is_anchored_at_start_only():
    rules = PathFilter(["build"])
    assert rules.is_filtered("build")
    assert rules.is_filtered("builder")
    assert rules.is_filtered(os.path.join("build", "out.o"))
    assert not rules.is_filtered("src/build")


def test_glob_escapes_regex_characters():
    assert glob_to_regex("a.b") == r"^a\.b"
    assert not PathFilter(["a.b"]).is_filtered("axb")


def test_dollar_prefix_is_a_raw_regex():
    rules = PathFilter([r"$\.bak$"])
    assert rules.is_filtered("deep/file.bak")
    assert not rules.is_filtered("file.bak.txt")


def test_empty_filter_filters_nothing():
    rules = PathFilter(["", None])
    assert rules.is_empty
    assert not rules.is_filtered("anything")


def test_scan_yields_relative_paths_depth_first(tmp_path: Path):
    write_tree(tmp_path, {"b.txt": b"b", "a/z.txt": b"z", "a/y/x.txt": b"x"})
    paths = [f.relative_path for f in scan_directory(tmp_path)]
    assert paths == [os.path.join("a", "y", "x.txt"), os.path.join("a", "z.txt"), "b.txt"]


def test_scan_reads_metadata(tmp_path: Path):
    write_tree(tmp_path, {"data.bin": b"12345"})
    (live,) = list(scan_directory(tmp_path))
    assert live.length == 5
    assert live.path == tmp_path / "data.bin"
    assert live.modified.tzinfo is not None


def test_scan_skips_filtered_directories(tmp_path: Path):
    write_tree(tmp_path, {"keep/a.txt": b"a", "skip/b.txt": b"b", "c.log": b"c"})
    paths = [f.relative_path for f in scan_directory(tmp_path, PathFilter(["skip", "*.log"]))]
    assert paths == [os.path.join("keep", "a.txt")]


def test_unreadable_directory_is_warned_about_and_skipped(tmp_path: Path, monkeypatch, caplog):
    write_tree(tmp_path, {"open/a.txt": b"a", "locked/b.txt": b"b", "c.txt": b"c"})
    original_scandir = os.scandir

    def scandir(path):
        if Path(path).name == "locked":
            raise PermissionError(13, "Permission denied", str(path))
        return original_scandir(path)

    monkeypatch.setattr(os, "scandir", scandir)
    paths = [f.relative_path for f in scan_directory(tmp_path)]

    assert paths == ["c.txt", os.path.join("open", "a.txt")]
    assert "Access denied, skipping directory 'locked'" in caplog.text


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks not supported")
def test_scan_does_not_follow_directory_links(tmp_path: Path):
    outside = write_tree(tmp_path / "outside", {"secret.txt": b"s"})
    root = write_tree(tmp_path / "root", {"a.txt": b"a"})
    try:
        os.symlink(outside, root / "link", target_is_directory=True)
    except OSError:
        pytest.skip("cannot create symlinks here")
    assert [f.relative_path for f in scan_directory(root)] == ["a.txt"]


def test_scan_missing_root(tmp_path: Path):
    with pytest.raises(SourceMissingError):
        list(scan_directory(tmp_path / "missing"))
