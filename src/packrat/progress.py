# packrat/progress.py
import threading
from typing import Callable, Optional

from tqdm import tqdm

ProgressCallback = Callable[[int, int, str], None]


class Progress:
    """
    Progress and status sink for a long running operation.

    Tracks the current operation text, a byte position and a maximum. Renders a
    tqdm bar (whose rate column is the transient throughput), or forwards every
    update to a callback(position, maximum, operation) when one is given, the
    way a GUI front end would consume it.
    """

    def __init__(self, activity: str, enabled: bool = True, callback: Optional[ProgressCallback] = None):
        self.activity = activity
        self.callback = callback
        self.position = 0
        self.maximum = 0
        self.operation = ""
        # The sync scanner grows the maximum while the applier advances the position.
        self._lock = threading.Lock()
        self._bar: Optional[tqdm] = None
        if enabled and callback is None:
            self._bar = tqdm(desc=activity, total=0, unit="B", unit_scale=True, unit_divisor=1024, leave=False)

    def _notify(self) -> None:
        if self.callback:
            self.callback(self.position, self.maximum, self.operation)

    def set_operation(self, text: str) -> None:
        with self._lock:
            self.operation = text
            if self._bar is not None:
                self._bar.set_postfix_str(text[-60:], refresh=True)
            self._notify()

    def set_maximum(self, maximum: int) -> None:
        with self._lock:
            self.maximum = maximum
            if self._bar is not None:
                self._bar.total = maximum
                self._bar.refresh()
            self._notify()

    def add_maximum(self, amount: int) -> None:
        with self._lock:
            self.maximum += amount
            if self._bar is not None:
                self._bar.total = self.maximum
            self._notify()

    def advance(self, amount: int) -> None:
        with self._lock:
            self.position += amount
            if self._bar is not None:
                self._bar.update(amount)
            self._notify()

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    def __enter__(self) -> "Progress":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
