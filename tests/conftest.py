from __future__ import annotations

from typing import Callable, List, Optional, Tuple

import pytest

from protocol.message_protocol import OutgoingMessage


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubClient:
    def __init__(self, factory: StubClientFactory, timestamp_label, id_label, options) -> None:
        self.factory = factory
        self.timestamp_label = timestamp_label
        self.id_label = id_label
        self.options = options
        self.closed = False

    def publish(self, topic: str, messages) -> int:
        if self.closed:
            raise AssertionError("publish on a closed client")
        if self.factory.failures_left > 0:
            self.factory.failures_left -= 1
            raise ConnectionError("broker unavailable")
        self.factory.published.append((topic, list(messages)))
        return self.factory.accept(len(messages))

    def close(self) -> None:
        self.closed = True


class StubClientFactory:
    """In-memory broker: records every publish call."""

    def __init__(self, accept: Optional[Callable[[int], int]] = None, failures: int = 0) -> None:
        self.accept = accept or (lambda sent: sent)
        self.failures_left = failures
        self.published: List[Tuple[str, List[OutgoingMessage]]] = []
        self.clients: List[StubClient] = []
        self.closed = False

    def new_client(self, timestamp_label, id_label, options=None) -> StubClient:
        client = StubClient(self, timestamp_label, id_label, options)
        self.clients.append(client)
        return client

    def close(self) -> None:
        self.closed = True

    @property
    def batches(self) -> List[List[OutgoingMessage]]:
        return [batch for _, batch in self.published]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def factory() -> StubClientFactory:
    return StubClientFactory()


@pytest.fixture
def sink_config(tmp_path):
    return {
        "logging_level": "DEBUG",
        "hc_port": 0,
        "backup_dir": str(tmp_path / "backup"),
        "rabbit_host": "localhost",
        "exchange_rcv": "raw_elements",
        "exc_rcv_type": "direct",
        "queue_rcv_name": "sink_input",
        "routing_rcv_key": "elements",
        "topic": "published_elements",
        "exc_snd_type": "topic",
        "routing_snd_key": "elements",
        "mandatory": True,
        "timestamp_label": "ts",
        "id_label": "id",
        "num_shards": 4,
        "publish_batch_size": 1000,
        "publish_batch_bytes": 400000,
        "max_latency": 2.0,
        "record_id_method": "RANDOM",
        "element_codec": "bytes",
    }
