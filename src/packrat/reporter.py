# packrat/reporter.py
from collections import defaultdict
from pathlib import Path
from typing import List, Optional, Tuple, Union

import click

from .file_index import FileIndex, format_time
from .models import IndexEntry
from .scanner import PathFilter, scan_directory


def format_bytes(size: int) -> str:
    """Formats a size in bytes to a human-readable string (KB, MB, GB, etc.)."""
    if not isinstance(size, (int, float)):
        return "0 B"
    power = 1024
    n = 0
    power_labels = {0: '', 1: 'K', 2: 'M', 3: 'G', 4: 'T'}
    while size >= power and n < len(power_labels) - 1:
        size /= power
        n += 1
    return f"{size:.2f} {power_labels[n]}B"


class Reporter:
    """Prints the content of an index or a directory listing."""

    def list_index(self, index: FileIndex, print_output: bool = True) -> List[IndexEntry]:
        """Lists every entry with its archive, length and modification time."""
        entries = list(index)
        if not entries:
            if print_output:
                click.echo("The index is empty.")
            return []
        if print_output:
            for entry in entries:
                click.echo(
                    f"{format_time(entry.modified)} | {format_bytes(entry.length):>10} | "
                    f"{entry.archive_name or '-':<45} | {entry.relative_path}"
                )
        return entries

    def archive_summary(self, index: FileIndex, print_output: bool = True) -> List[Tuple[str, int, int]]:
        """Shows file counts and sizes grouped by archive, largest first."""
        counts = defaultdict(int)
        sizes = defaultdict(int)
        for entry in index:
            counts[entry.archive_name] += 1
            sizes[entry.archive_name] += entry.length
        summary = sorted(
            ((name, counts[name], sizes[name]) for name in counts),
            key=lambda row: row[2],
            reverse=True,
        )
        if not summary:
            if print_output:
                click.echo("The index is empty.")
            return []
        if print_output:
            click.echo(f"{'Archive':<45} | {'Count':>10} | {'Total Size':>12}")
            click.echo("-" * 73)
            for name, count, total_size in summary:
                click.echo(f"{name or '-':<45} | {count:>10} | {format_bytes(total_size):>12}")
        return summary

    def list_directory(
        self,
        root_path: Union[str, Path],
        excludes: Optional[PathFilter] = None,
        print_output: bool = True,
    ) -> List[str]:
        """Lists the relative paths a backup of root_path would see."""
        paths = [live.relative_path for live in scan_directory(root_path, excludes)]
        if print_output:
            for path in paths:
                click.echo(path)
        return paths
