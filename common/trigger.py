from __future__ import annotations
from collections import deque
from typing import Deque, Optional


class FiringTrigger:
    """Count-or-latency firing rule for the pane of a single shard.

    A pane fires as soon as it holds ``max_items`` elements, or once
    ``max_latency`` seconds have passed since the first element buffered after
    the previous firing, whichever happens first. Fired elements are discarded
    from the pane; they never count towards a later firing.

    Times are whatever the caller's clock returns (``time.monotonic`` in the
    sink), in seconds.
    """

    def __init__(self, max_items: int, max_latency: float) -> None:
        if max_items < 1:
            raise ValueError(f"max_items must be positive, got {max_items}")
        if max_latency <= 0:
            raise ValueError(f"max_latency must be positive, got {max_latency}")
        self.max_items = max_items
        self.max_latency = max_latency
        self._arrivals: Deque[float] = deque()
        self._retry_at: Optional[float] = None

    @property
    def count(self) -> int:
        return len(self._arrivals)

    @property
    def first_arrival(self) -> Optional[float]:
        return self._arrivals[0] if self._arrivals else None

    def on_element(self, now: float) -> bool:
        """Record an arrival. Returns True when the count condition is met."""
        self._arrivals.append(now)
        return self.count >= self.max_items and not self._backing_off(now)

    def deadline(self) -> Optional[float]:
        """Time at which the pane must fire, or None while it is empty."""
        if not self._arrivals:
            return None
        deadline = self._arrivals[0] + self.max_latency
        if self.count >= self.max_items:
            deadline = min(deadline, self._arrivals[self.max_items - 1])
        if self._retry_at is not None:
            deadline = max(deadline, self._retry_at)
        return deadline

    def is_due(self, now: float) -> bool:
        if not self._arrivals or self._backing_off(now):
            return False
        return self.count >= self.max_items or now >= self._arrivals[0] + self.max_latency

    def on_fired(self, fired: int) -> None:
        """Discard the ``fired`` oldest arrivals after a successful firing."""
        if fired > self.count:
            raise ValueError(f"Cannot discard {fired} arrivals from a pane of {self.count}")
        for _ in range(fired):
            self._arrivals.popleft()
        self._retry_at = None

    def back_off(self, now: float) -> None:
        """Hold the pane after a failed firing until one latency window has passed."""
        self._retry_at = now + self.max_latency

    def _backing_off(self, now: float) -> bool:
        return self._retry_at is not None and now < self._retry_at
