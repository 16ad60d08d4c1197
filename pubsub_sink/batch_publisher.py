from __future__ import annotations
from contextlib import contextmanager
import logging
from typing import Iterator, List, Optional, Sequence

from common.counters import BATCHES, PUBLISHED_BYTES, PUBLISHED_ELEMENTS, Counters
from common.errors import ClientLifecycleError, PublishCountMismatchError
from protocol.message_protocol import OutgoingMessage

DEFAULT_PUBLISH_BATCH_SIZE = 1000
DEFAULT_PUBLISH_BATCH_BYTES = 400000


class BatchPublisher:
    """Drains one firing of a shard into bounded, blocking publish calls.

    A publish cycle acquires one broker client, publishes, and releases the
    client whatever happens. A sub-batch is flushed before it would exceed
    ``publish_batch_bytes`` payload bytes or ``publish_batch_size`` messages;
    a single message larger than the byte limit is sent on its own.
    """

    def __init__(
        self,
        client_factory,
        topic: str,
        *,
        timestamp_label: Optional[str] = None,
        id_label: Optional[str] = None,
        publish_batch_size: int = DEFAULT_PUBLISH_BATCH_SIZE,
        publish_batch_bytes: int = DEFAULT_PUBLISH_BATCH_BYTES,
        counters: Optional[Counters] = None,
        options: Optional[dict] = None,
    ) -> None:
        if publish_batch_size < 1:
            raise ValueError(f"publish_batch_size must be positive, got {publish_batch_size}")
        if publish_batch_bytes < 1:
            raise ValueError(f"publish_batch_bytes must be positive, got {publish_batch_bytes}")
        self.client_factory = client_factory
        self.topic = topic
        self.timestamp_label = timestamp_label
        self.id_label = id_label
        self.publish_batch_size = publish_batch_size
        self.publish_batch_bytes = publish_batch_bytes
        self.counters = counters or Counters()
        self.options = options
        self._client = None

    @property
    def client_acquired(self) -> bool:
        return self._client is not None

    def start_cycle(self) -> None:
        if self._client is not None:
            raise ClientLifecycleError("start_cycle invoked without prior finish_cycle")
        self._client = self.client_factory.new_client(self.timestamp_label, self.id_label, self.options)

    def finish_cycle(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()

    @contextmanager
    def cycle(self) -> Iterator[BatchPublisher]:
        self.start_cycle()
        try:
            yield self
        finally:
            self.finish_cycle()

    def process(self, shard: int, messages: Sequence[OutgoingMessage]) -> None:
        """Publish one firing of *shard* within its own client cycle."""
        with self.cycle():
            self.publish(shard, messages)

    def publish(self, shard: int, messages: Sequence[OutgoingMessage]) -> None:
        if self._client is None:
            raise ClientLifecycleError("publish invoked outside of a publish cycle")

        batch: List[OutgoingMessage] = []
        batch_bytes = 0
        for message in messages:
            if batch and (batch_bytes + message.size > self.publish_batch_bytes
                          or len(batch) >= self.publish_batch_size):
                # BLOCKS until published
                self._publish_batch(shard, batch, batch_bytes)
                batch = []
                batch_bytes = 0
            batch.append(message)
            batch_bytes += message.size

        if batch:
            self._publish_batch(shard, batch, batch_bytes)

    def _publish_batch(self, shard: int, batch: List[OutgoingMessage], batch_bytes: int) -> None:
        accepted = self._client.publish(self.topic, batch)
        if accepted != len(batch):
            raise PublishCountMismatchError(len(batch), accepted)

        self.counters.inc(BATCHES)
        self.counters.inc(PUBLISHED_ELEMENTS, len(batch))
        self.counters.inc(PUBLISHED_BYTES, batch_bytes)
        logging.debug(f"Published batch of {len(batch)} messages ({batch_bytes} bytes) from shard {shard} to '{self.topic}'")
