from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Dict

ELEMENTS = "elements"
BATCHES = "batches"
PUBLISHED_ELEMENTS = "published_elements"
PUBLISHED_BYTES = "published_bytes"
FAILED_FIRINGS = "failed_firings"


class Counters:
    """Named monotonically increasing counters shared by the sink stages."""

    def __init__(self) -> None:
        self._values: Dict[str, int] = defaultdict(int)
        self._lock = Lock()

    def inc(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._values[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._values.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)
