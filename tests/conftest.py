# tests/conftest.py
import os
import time
from pathlib import Path
from typing import Dict, Optional

import pytest

from packrat.config import Config
from packrat.safe_io import RetryPolicy, SafeIO


@pytest.fixture(scope="function")
def app_config() -> Config:
    """A configuration without progress bars, retry delays or a log file."""
    return Config(show_progress=False, retry_attempts=2, retry_delay=0, poll_interval=0.05, log_file=None)


@pytest.fixture(scope="function")
def safe_io() -> SafeIO:
    return SafeIO(RetryPolicy(attempts=2, delay=0))


def set_mtime(path: Path, seconds_ago: float) -> None:
    """Sets access and modification time to a whole second in the past."""
    stamp = int(time.time() - seconds_ago)
    os.utime(path, (stamp, stamp))


def write_tree(root: Path, files: Dict[str, bytes], seconds_ago: Optional[float] = 3600) -> Path:
    """Creates files below root from a {relative posix path: content} mapping."""
    for relative_path, content in files.items():
        path = root.joinpath(*relative_path.split("/"))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        if seconds_ago is not None:
            set_mtime(path, seconds_ago)
    return root


def read_tree(root: Path) -> Dict[str, bytes]:
    """The files below root as a {relative posix path: content} mapping."""
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture(scope="function")
def source_tree(tmp_path: Path) -> Path:
    """
    A small tree to back up or sync.

    Structure:
        tmp_path/source/
        ├── a.txt
        ├── b.jpg
        ├── empty.dat
        └── docs/
            ├── readme.md
            └── deep/
                └── notes.txt
    """
    return write_tree(tmp_path / "source", {
        "a.txt": b"alpha" * 10,
        "b.jpg": b"\xff\xd8\xff" + b"\x00" * 200,
        "empty.dat": b"",
        "docs/readme.md": b"# Readme\n",
        "docs/deep/notes.txt": b"notes " * 500,
    })


def require_case_sensitive(directory: Path) -> None:
    """Skips the calling test on file systems where 'A.txt' and 'a.txt' are the same file."""
    directory.mkdir(parents=True, exist_ok=True)
    marker = directory / "Case.tmp"
    marker.write_bytes(b"")
    try:
        if (directory / "case.tmp").exists():
            pytest.skip("file system is case-insensitive")
    finally:
        marker.unlink()
