# packrat/scanner.py
import logging
import os
import re
from pathlib import Path
from typing import Generator, Iterable, List, Optional, Union

from .errors import SourceMissingError
from .metadata import is_reparse_point
from .models import LiveFile

# Either separator in a pattern matches either separator in a path.
_SEPARATOR_CLASS = r"[\\/]"


def glob_to_regex(pattern: str) -> str:
    """Translates an exclude glob into a regular expression.

    '*' matches any characters (separators included), '/' and '\\' match
    either path separator, everything else is literal. The result is anchored
    at the start only, so 'build' also filters 'build\\out.txt' and 'builder'.
    """
    parts = ["^"]
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char in "\\/":
            parts.append(_SEPARATOR_CLASS)
        else:
            parts.append(re.escape(char))
    return "".join(parts)


class PathFilter:
    """An ordered list of compiled path rules.

    A relative path is filtered if any rule matches it. Matching is
    case-insensitive. Entries starting with '$' are raw regular expressions,
    everything else is a glob (see glob_to_regex).
    """

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        self.patterns: List[str] = [p for p in (patterns or ()) if p]
        self._rules = [self._compile(p) for p in self.patterns]

    @staticmethod
    def _compile(pattern: str) -> "re.Pattern[str]":
        if pattern.startswith("$"):
            return re.compile(pattern[1:], re.IGNORECASE | re.DOTALL)
        return re.compile(glob_to_regex(pattern), re.IGNORECASE | re.DOTALL)

    @property
    def is_empty(self) -> bool:
        return not self._rules

    def is_filtered(self, relative_path: str) -> bool:
        return any(rule.search(relative_path) for rule in self._rules)

    def __repr__(self):
        return f"<PathFilter({self.patterns!r})>"


def list_entries(directory: Union[str, Path], relative_path: str = "") -> List[os.DirEntry]:
    """Immediate children of a directory, sorted by name.

    A directory that cannot be read is reported and treated as empty.
    """
    try:
        with os.scandir(directory) as it:
            return sorted(it, key=lambda e: e.name)
    except PermissionError as e:
        logging.warning(f"Access denied, skipping directory '{relative_path or directory}': {e}")
        return []
    except FileNotFoundError:
        # Deleted while scanning.
        return []


def scan_directory(
    root_path: Union[str, Path],
    excludes: Optional[PathFilter] = None,
    _relative: str = "",
) -> Generator[LiveFile, None, None]:
    """
    Recursively yields every file below root_path, depth first, as LiveFile objects
    carrying their path relative to root_path.

    Filtered paths are skipped (a filtered directory is not descended). Symlinked
    directories and junctions are never followed. Unreadable directories are
    logged and skipped.
    """
    root = Path(root_path)
    if not _relative and not root.is_dir():
        raise SourceMissingError(root)
    excludes = excludes or PathFilter()

    directory = root / _relative if _relative else root
    for entry in list_entries(directory, _relative):
        relative_path = os.path.join(_relative, entry.name) if _relative else entry.name
        if not excludes.is_empty and excludes.is_filtered(relative_path):
            continue
        try:
            if entry.is_dir():
                if is_reparse_point(entry):
                    logging.info(f"Skipping reparse point '{relative_path}'.")
                    continue
                yield from scan_directory(root, excludes, relative_path)
            elif entry.is_file():
                yield LiveFile.from_path(entry.path, relative_path)
        except FileNotFoundError:
            # This can happen if a file is deleted while scanning.
            continue
