"""End-to-end tests of the sink with an in-memory broker and a fake clock."""

from __future__ import annotations

import random
from types import SimpleNamespace

import pytest

from common.counters import BATCHES, ELEMENTS, FAILED_FIRINGS, PUBLISHED_ELEMENTS
from common.errors import ClientLifecycleError, ElementEncodingError
from conftest import StubClientFactory
from pubsub_sink.sink import ShardedSink


def _sink(config, factory, clock, seed=11) -> ShardedSink:
    return ShardedSink(config, client_factory=factory, clock=clock, rng=random.Random(seed))


def test_count_firings_then_latency_firing(sink_config, factory, clock) -> None:
    sink_config["num_shards"] = 1
    sink_config["backup_dir"] = None
    sink = _sink(sink_config, factory, clock)

    for i in range(2500):
        sink.process_element(b"e" * 100, i)

    assert [len(batch) for batch in factory.batches] == [1000, 1000]
    assert sink.fire_due() == []

    clock.advance(2.0)
    assert sink.fire_due() == [0]
    assert [len(batch) for batch in factory.batches] == [1000, 1000, 500]
    assert sink.counters.get(ELEMENTS) == 2500
    assert sink.counters.get(PUBLISHED_ELEMENTS) == 2500
    assert sink.counters.get(BATCHES) == 3


def test_large_elements_are_split_by_bytes(sink_config, factory, clock) -> None:
    sink_config["num_shards"] = 1
    sink = _sink(sink_config, factory, clock)

    for i in range(10):
        sink.process_element(b"L" * 200_000, i)
    clock.advance(2.0)
    sink.fire_due()

    assert [len(batch) for batch in factory.batches] == [2, 2, 2, 2, 2]


def test_no_sub_batch_mixes_shards(sink_config, factory, clock) -> None:
    sink = _sink(sink_config, factory, clock)
    shard_of = {}

    for i in range(200):
        shard, message = sink.process_element(f"element-{i}".encode(), i)
        shard_of[message.record_id] = shard
    clock.advance(2.0)
    fired = sink.fire_due()

    assert sorted(fired) == sorted(set(shard_of.values()))
    for batch in factory.batches:
        assert len({shard_of[m.record_id] for m in batch}) == 1
    assert sum(len(batch) for batch in factory.batches) == 200


def test_failed_firing_is_retried_with_the_same_record_ids(sink_config, clock) -> None:
    sink_config["num_shards"] = 1
    factory = StubClientFactory(failures=1)
    sink = _sink(sink_config, factory, clock)

    sent_ids = [sink.process_element(f"e{i}".encode(), i)[1].record_id for i in range(5)]
    clock.advance(2.0)
    sink.fire_due()

    assert factory.published == []
    assert sink.counters.get(FAILED_FIRINGS) == 1
    assert sink.fire_due() == []

    clock.advance(2.0)
    assert sink.fire_due() == [0]
    assert [m.record_id for m in factory.batches[0]] == sent_ids


def test_count_mismatch_counts_as_failed_firing(sink_config, clock) -> None:
    sink_config["num_shards"] = 1
    sink_config["publish_batch_size"] = 3
    factory = StubClientFactory(accept=lambda sent: sent - 1)
    sink = _sink(sink_config, factory, clock)

    for i in range(3):
        sink.process_element(b"x", i)

    assert sink.counters.get(FAILED_FIRINGS) == 1
    assert sink.counters.get(PUBLISHED_ELEMENTS) == 0
    assert sink.grouper.pending(0) == 3


def test_restart_replays_snapshot_with_same_ids(sink_config, clock) -> None:
    sink_config["num_shards"] = 2
    first = _sink(sink_config, StubClientFactory(), clock)
    sent = {first.process_element(f"e{i}".encode(), i)[1] for i in range(10)}

    factory = StubClientFactory()
    restarted = _sink(sink_config, factory, clock)
    clock.advance(2.0)
    restarted.fire_due()

    assert {m for batch in factory.batches for m in batch} == sent


def test_drain_flushes_every_pane(sink_config, factory, clock) -> None:
    sink = _sink(sink_config, factory, clock)
    for i in range(20):
        sink.process_element(b"x", i)

    sink._drain()

    assert sum(len(batch) for batch in factory.batches) == 20


def test_callback_decodes_body_and_event_time(sink_config, factory, clock) -> None:
    sink_config["num_shards"] = 1
    sink_config["element_codec"] = "json"
    sink_config["publish_batch_size"] = 1
    sink = _sink(sink_config, factory, clock)

    after_ack = sink.callback(None, None, SimpleNamespace(timestamp=1_700_000_000), b'{"b": 1, "a": 2}')
    assert factory.batches == []
    after_ack()

    (message,) = factory.batches[0]
    assert message.payload == b'{"a":2,"b":1}'
    assert message.timestamp_millis == 1_700_000_000_000


def test_undecodable_element_propagates(sink_config, factory, clock) -> None:
    sink_config["element_codec"] = "utf8"
    sink = _sink(sink_config, factory, clock)

    with pytest.raises(UnicodeDecodeError):
        sink.callback(None, None, SimpleNamespace(timestamp=None), b"\xff\xfe")
    with pytest.raises(ElementEncodingError):
        sink.process_element(b"raw bytes", 0)


def test_without_id_label_no_record_ids(sink_config, factory, clock) -> None:
    sink_config["id_label"] = None
    sink = _sink(sink_config, factory, clock)

    _, message = sink.process_element(b"x", 0)

    assert message.record_id is None


class FakeQueue:
    def __init__(self) -> None:
        self.timers = {}
        self._next_id = 0

    def call_later(self, delay, callback):
        self._next_id += 1
        self.timers[self._next_id] = (delay, callback)
        return self._next_id

    def remove_timeout(self, timer_id) -> None:
        del self.timers[timer_id]


def test_redelivery_after_restart_is_published_once(sink_config, clock) -> None:
    sink_config["num_shards"] = 3
    first = _sink(sink_config, StubClientFactory(), clock)
    _, original = first.process_element(b"same-element", 5)

    # crash before the ack: the element comes back flagged as redelivered
    factory = StubClientFactory()
    restarted = _sink(sink_config, factory, clock, seed=99)
    restarted.process_element(b"same-element", 5, redelivered=True)
    clock.advance(2.0)
    restarted.fire_due()

    published = [m for batch in factory.batches for m in batch]
    assert published == [original]


def test_replay_index_is_dropped_after_first_fresh_delivery(sink_config, clock) -> None:
    sink_config["num_shards"] = 1
    first = _sink(sink_config, StubClientFactory(), clock)
    first.process_element(b"same-element", 5)

    factory = StubClientFactory()
    restarted = _sink(sink_config, factory, clock)
    restarted.process_element(b"fresh", 6)
    restarted.process_element(b"same-element", 5, redelivered=True)

    assert restarted.grouper.pending(0) == 3


def test_callback_reuses_delivery_message_id(sink_config, factory, clock) -> None:
    sink_config["publish_batch_size"] = 1
    sink = _sink(sink_config, factory, clock)
    method = SimpleNamespace(redelivered=False)

    after_ack = sink.callback(None, method, SimpleNamespace(timestamp=7, message_id="m-1"), b"x")
    after_ack()

    assert [m.record_id for m in factory.batches[0]] == ["m-1"]


def test_open_cycle_aborts_instead_of_retrying(sink_config, factory, clock) -> None:
    sink_config["publish_batch_size"] = 1
    sink = _sink(sink_config, factory, clock)
    sink.publisher.start_cycle()

    with pytest.raises(ClientLifecycleError):
        sink.process_element(b"x", 0)

    assert sink.counters.get(FAILED_FIRINGS) == 0


def test_single_timer_follows_the_earliest_deadline(sink_config, factory, clock, monkeypatch) -> None:
    sink = _sink(sink_config, factory, clock)
    queue = FakeQueue()
    sink.queue_rcv = queue

    sink.process_element(b"a", 0)
    sink.process_element(b"b", 1)
    assert [delay for delay, _ in queue.timers.values()] == [2.0]

    monkeypatch.setattr(sink.grouper, "next_deadline", lambda: clock() + 0.5)
    sink._schedule_timer()
    assert [delay for delay, _ in queue.timers.values()] == [0.5]


def test_timer_fires_due_panes_and_rearms(sink_config, factory, clock) -> None:
    sink_config["num_shards"] = 1
    sink = _sink(sink_config, factory, clock)
    queue = FakeQueue()
    sink.queue_rcv = queue

    sink.process_element(b"a", 0)
    clock.advance(1.5)
    sink.process_element(b"b", 0)
    clock.advance(0.5)
    ((_, on_timer),) = queue.timers.values()
    queue.timers.clear()
    on_timer()

    assert [len(batch) for batch in factory.batches] == [2]
    assert queue.timers == {}
