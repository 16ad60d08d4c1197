"""RabbitMQ broker client used by the batch publisher.

A topic is an exchange name. Every message is published on a confirm-mode
channel, so ``basic_publish`` blocks until the broker has taken
responsibility for it.
"""

from __future__ import annotations
import logging
import time
from typing import Dict, Optional, Sequence, Set

import pika
import pika.exceptions

from protocol.message_protocol import OutgoingMessage

logger = logging.getLogger(__name__)


class RabbitMQClient:
    """One confirm-mode channel, owned by a single publish cycle."""

    def __init__(
        self,
        factory: RabbitClientFactory,
        channel,
        timestamp_label: Optional[str],
        id_label: Optional[str],
        *,
        routing_key: str = "",
        mandatory: bool = True,
    ) -> None:
        self._factory = factory
        self._channel = channel
        self.timestamp_label = timestamp_label
        self.id_label = id_label
        self.routing_key = routing_key
        self.mandatory = mandatory

    def publish(self, topic: str, messages: Sequence[OutgoingMessage]) -> int:
        """Publish *messages* in order. Returns how many the broker accepted."""
        self._factory.declare_topic(self._channel, topic)

        accepted = 0
        for message in messages:
            try:
                self._channel.basic_publish(
                    exchange=topic,
                    routing_key=self.routing_key,
                    body=message.payload,
                    properties=self._properties(message),
                    mandatory=self.mandatory,
                )
            except (pika.exceptions.UnroutableError, pika.exceptions.NackError) as e:
                logger.warning(f"Broker rejected message for topic '{topic}': {e}")
                continue
            accepted += 1

        logger.debug(f"Published {accepted}/{len(messages)} messages to exchange '{topic}'")
        return accepted

    def _properties(self, message: OutgoingMessage) -> pika.BasicProperties:
        headers: Dict[str, str] = {}
        if self.timestamp_label:
            headers[self.timestamp_label] = str(message.timestamp_millis)
        if self.id_label and message.record_id is not None:
            headers[self.id_label] = message.record_id

        return pika.BasicProperties(
            delivery_mode=2,
            headers=headers or None,
            message_id=message.record_id if self.id_label else None,
        )

    def close(self) -> None:
        """Close the channel; the factory connection stays open for the next cycle."""
        if self._channel is not None and self._channel.is_open:
            self._channel.close()
        self._channel = None


class RabbitClientFactory:
    """Creates one :class:`RabbitMQClient` per publish cycle over a shared connection."""

    def __init__(
        self,
        host: str,
        *,
        exchange_type: str = "topic",
        routing_key: str = "",
        mandatory: bool = True,
        heartbeat: int = 500,
        max_retries: int = 5,
        retry_delay: float = 5.0,
    ) -> None:
        self.host = host
        self.exchange_type = exchange_type
        self.routing_key = routing_key
        self.mandatory = mandatory
        self.heartbeat = heartbeat
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._connection = None
        self._declared: Set[str] = set()

    def new_client(
        self,
        timestamp_label: Optional[str],
        id_label: Optional[str],
        options: Optional[dict] = None,
    ) -> RabbitMQClient:
        options = options or {}
        channel = self.connection.channel()
        channel.confirm_delivery()
        return RabbitMQClient(
            self,
            channel,
            timestamp_label,
            id_label,
            routing_key=options.get("routing_key", self.routing_key),
            mandatory=options.get("mandatory", self.mandatory),
        )

    def declare_topic(self, channel, topic: str) -> None:
        if topic in self._declared:
            return
        channel.exchange_declare(exchange=topic, exchange_type=self.exchange_type, durable=True)
        self._declared.add(topic)
        logger.info(f"Exchange '{topic}' ({self.exchange_type}) declared for publishing.")

    @property
    def connection(self):
        """Ensures the connection is open, reconnecting if necessary."""
        if self._connection is None or self._connection.is_closed:
            self._connect_with_retry()
        return self._connection

    def _connect_with_retry(self) -> None:
        """Establishes connection with RabbitMQ using retries."""
        retries = 0
        while True:
            try:
                self._connection = pika.BlockingConnection(
                    pika.ConnectionParameters(host=self.host, heartbeat=self.heartbeat)
                )
                self._declared.clear()
                logger.info(f"Successfully connected to RabbitMQ at {self.host}")
                return
            except pika.exceptions.AMQPConnectionError as e:
                retries += 1
                if retries >= self.max_retries:
                    logger.error("Max connection retries reached. Could not connect to RabbitMQ.")
                    raise
                logger.warning(f"Connection attempt {retries}/{self.max_retries} failed: {e}. Retrying in {self.retry_delay}s...")
                time.sleep(self.retry_delay)

    def close(self) -> None:
        """Closes the shared connection gracefully."""
        try:
            if self._connection is not None and self._connection.is_open:
                self._connection.close()
                logger.info("RabbitMQ publisher connection closed.")
        finally:
            self._connection = None
