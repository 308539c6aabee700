# packrat/log_manager.py
import atexit
import logging
import re
from collections import defaultdict
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


class DeduplicatingLogHandler(logging.FileHandler):
    """
    A log handler that stops writing the same warning over and over, which
    happens when a whole subtree is unreadable or a share keeps dropping out
    during a backup.

    Messages are grouped by a key with file paths and generated archive names
    masked out. The first `limit` records of every key are written; the rest
    are counted and summarized at exit.
    """

    # Absolute Windows or POSIX paths, optionally quoted.
    path_regex = re.compile(r"['\"]?([a-zA-Z]:\\|/)[^:,'\"\s]+['\"]?")
    # 32 hex digits: archive and temp file names.
    archive_regex = re.compile(r"\b[0-9a-f]{32}(\.[\w.]+)?\b")

    def __init__(self, filename, mode="a", encoding=None, delay=False, limit: int = 5):
        super().__init__(filename, mode, encoding, delay)
        self.limit = limit
        self.message_counts = defaultdict(int)
        self.suppressed_counts = defaultdict(int)
        atexit.register(self.log_summary)

    def message_key(self, record: logging.LogRecord) -> str:
        message = self.path_regex.sub("<PATH>", record.getMessage())
        return f"{record.levelname}:{self.archive_regex.sub('<ARCHIVE>', message)}"

    def emit(self, record: logging.LogRecord):
        msg_key = self.message_key(record)
        self.message_counts[msg_key] += 1
        if self.message_counts[msg_key] <= self.limit:
            super().emit(record)
            self.flush()  # keep the log useful after a crash
        else:
            self.suppressed_counts[msg_key] += 1

    def log_summary(self):
        """Writes a summary of suppressed messages."""
        if not self.suppressed_counts or self.stream is None:
            return
        summary_message = "\n--- Logging Summary ---\n"
        for msg_key, count in self.suppressed_counts.items():
            summary_message += f"Suppressed {count} instances of: {msg_key}\n"
        self.stream.write(summary_message)
        self.flush()
        self.suppressed_counts.clear()


def setup_logging(log_file: Optional[Union[str, Path]], level: str = "WARNING") -> None:
    """Sets up logging of warnings and errors to a file."""
    handlers = []
    if log_file:
        handler = DeduplicatingLogHandler(log_file, mode="a", delay=True)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(handler)
    else:
        handlers.append(logging.NullHandler())
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), handlers=handlers, force=True)
