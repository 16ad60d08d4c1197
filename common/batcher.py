from __future__ import annotations
from collections import defaultdict
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from common.errors import ClientLifecycleError
from common.state_persistence import StatePersistence
from common.trigger import FiringTrigger


class ShardGrouper:
    """Crash-safe per-shard pane accumulator.

    Snapshots are append-only while a pane fills up: each ``snapshot_key``
    writes only the messages buffered since the previous one. A successful
    firing rewrites the file with what is left of the pane.

    Parameters
    ----------
    publish_fn : Callable[[int, List[Any]], None]
        Receives ``(shard, messages)`` once per firing. It must raise if the
        firing could not be delivered; the pane is then kept untouched for a
        later retry.
    max_items : int, optional
        Count threshold of the firing trigger and upper bound of a firing.
        Defaults to 1000.
    max_latency : float, optional
        Seconds a pane may wait after its first element before it is due.
        Defaults to 2.
    clock : Callable[[], float], optional
        Monotonic time source shared with the triggers.
    backup_dir : str, optional
        Directory for snapshot files. Snapshots are disabled when ``None``.
    encode_fn / decode_fn : optional
        ``encode_fn`` turns a list of messages into one ``bytes`` frame;
        ``decode_fn`` reads back a file of concatenated frames. Required
        together with *backup_dir*.
    namespace : str, optional
        Prefix of the snapshot file names. Defaults to "shard".
    """

    def __init__(
        self,
        publish_fn: Callable[[int, List[Any]], None],
        *,
        max_items: int = 1000,
        max_latency: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        backup_dir: Optional[str] = None,
        encode_fn: Optional[Callable[[List[Any]], bytes]] = None,
        decode_fn: Optional[Callable[[bytes], List[Any]]] = None,
        namespace: str = "shard",
    ) -> None:
        if backup_dir is not None and (encode_fn is None or decode_fn is None):
            raise ValueError("encode_fn and decode_fn are required when backup_dir is set")

        self._publish_fn = publish_fn
        self._max_items = max_items
        self._max_latency = max_latency
        self._clock = clock
        self._backup_dir = backup_dir
        self._encode_fn = encode_fn
        self._decode_fn = decode_fn
        self._namespace = namespace

        self._buffers: Dict[int, List[Any]] = defaultdict(list)
        self._triggers: Dict[int, FiringTrigger] = {}
        self._state_helpers: Dict[int, StatePersistence] = {}
        # Leading messages of each buffer already in its snapshot file
        self._persisted: Dict[int, int] = defaultdict(int)
        self._flush_count: Dict[int, int] = defaultdict(int)
        self._lock = threading.Lock()

        self._restore_existing_batches()

    def add(self, item: Any, key: int) -> bool:
        """Append *item* to the pane of *key*.

        Returns True when the pane reached the count threshold and should be
        fired.
        """
        with self._lock:
            self._buffers[key].append(item)
            return self._get_trigger(key).on_element(self._clock())

    def fire(self, key: int) -> int:
        """Publish the oldest ``max_items`` buffered messages of *key* as one firing.

        Returns how many messages were fired. Exceptions from the publish
        callback propagate after the pane is put on hold for one latency
        window.
        """
        with self._lock:
            return self._fire_locked(key)

    def fire_all(self) -> None:
        """Fire every non-empty pane regardless of its trigger.

        A failing shard does not stop the others; the first error is raised
        once every shard was attempted. A ``ClientLifecycleError`` is raised
        right away.
        """
        first_error = None
        with self._lock:
            for key in list(self._buffers.keys()):
                try:
                    while self._buffers.get(key):
                        self._fire_locked(key)
                except ClientLifecycleError:
                    raise
                except Exception as e:
                    logging.error(f"[ShardGrouper] Could not fire shard {key}: {e}")
                    if first_error is None:
                        first_error = e
        if first_error is not None:
            raise first_error

    def _fire_locked(self, key: int) -> int:
        buf = self._buffers.get(key)
        if not buf:
            return 0

        pane = buf[:self._max_items]
        trigger = self._get_trigger(key)
        try:
            self._publish_fn(key, pane)
        except Exception:
            trigger.back_off(self._clock())
            raise

        # Success: discard the fired pane in memory & on disk
        del buf[:len(pane)]
        trigger.on_fired(len(pane))
        self._flush_count[key] += 1
        if self._backup_dir is not None:
            self._save_locked(key)
        logging.debug(f"[ShardGrouper] Fired {len(pane)} messages for shard {key}, {len(buf)} left")
        return len(pane)

    def due_shards(self, now: Optional[float] = None) -> List[int]:
        """Shards whose pane should fire at *now*."""
        if now is None:
            now = self._clock()
        with self._lock:
            return [key for key, trigger in self._triggers.items() if trigger.is_due(now)]

    def next_deadline(self) -> Optional[float]:
        """Earliest time at which some pane becomes due, if any is buffered."""
        with self._lock:
            deadlines = [t.deadline() for t in self._triggers.values()]
        deadlines = [d for d in deadlines if d is not None]
        return min(deadlines) if deadlines else None

    def shards(self) -> List[int]:
        """Shards that currently hold buffered messages."""
        with self._lock:
            return [key for key, buf in self._buffers.items() if buf]

    def pending(self, key: int) -> int:
        with self._lock:
            return len(self._buffers.get(key, ()))

    def buffered(self, key: int) -> List[Any]:
        """Copy of the messages currently waiting for *key*."""
        with self._lock:
            return list(self._buffers.get(key, ()))

    def _get_trigger(self, key: int) -> FiringTrigger:
        trigger = self._triggers.get(key)
        if trigger is None:
            trigger = FiringTrigger(self._max_items, self._max_latency)
            self._triggers[key] = trigger
        return trigger

    def _get_state_helper(self, key: int) -> StatePersistence:
        helper = self._state_helpers.get(key)
        if helper is None:
            helper = StatePersistence(f"{self._namespace}_{key}.bin", directory=self._backup_dir)
            self._state_helpers[key] = helper
        return helper

    def _append_locked(self, key: int) -> None:
        buf = self._buffers.get(key)
        if not buf or self._persisted[key] >= len(buf):
            return
        self._get_state_helper(key).append(self._encode_fn(buf[self._persisted[key]:]))
        self._persisted[key] = len(buf)

    def _save_locked(self, key: int) -> None:
        buf = self._buffers.get(key)
        if buf:
            self._get_state_helper(key).save(self._encode_fn(buf))
        else:
            self._get_state_helper(key).clear()
        self._persisted[key] = len(buf or ())

    def _restore_existing_batches(self) -> None:
        if self._backup_dir is None or not os.path.isdir(self._backup_dir):
            return
        now = self._clock()
        for fname in sorted(os.listdir(self._backup_dir)):
            if not fname.startswith(f"{self._namespace}_") or not fname.endswith(".bin"):
                continue
            key = int(fname[len(self._namespace) + 1:].split(".")[0])
            helper = StatePersistence(fname, directory=self._backup_dir)
            self._state_helpers[key] = helper
            data = helper.load()
            items: List[Any] = self._decode_fn(data) if data else []
            if items:
                self._buffers[key].extend(items)
                trigger = self._get_trigger(key)
                for _ in items:
                    trigger.on_element(now)
                logging.info(f"[ShardGrouper] Restored {len(items)} buffered messages for shard {key}")
            # Compact to a single frame, so later appends never follow a torn tail
            self._save_locked(key)

    def snapshot_key(self, key: int) -> None:
        """Persist the messages buffered for *key* since the last snapshot.

        Call this at the end of a RabbitMQ delivery, before the delivery is
        acked, so an acked element can always be replayed after a crash.
        """
        if self._backup_dir is None:
            return
        with self._lock:
            self._append_locked(key)

    def snapshot_all(self) -> None:
        if self._backup_dir is None:
            return
        with self._lock:
            for key in list(self._buffers.keys()):
                self._append_locked(key)

    def flushes(self, key: int) -> int:
        """Return how many firings have succeeded for *key*."""
        return self._flush_count.get(key, 0)
