from __future__ import annotations
from enum import Enum
import hashlib
import logging
import random
import uuid
from typing import Any, Optional, Tuple

from common.counters import ELEMENTS, Counters
from common.errors import ElementEncodingError
from protocol.message_protocol import OutgoingMessage


class RecordIdMethod(Enum):
    NONE = "NONE"
    RANDOM = "RANDOM"
    DETERMINISTIC = "DETERMINISTIC"

    @classmethod
    def parse(cls, value: str) -> RecordIdMethod:
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Invalid record id method '{value}'. Choose one of {[m.name for m in cls]}.")


class MessageEncoder:
    """Turns an element into a ``(shard, OutgoingMessage)`` pair.

    RANDOM ids are generated once per encoded element, unless the element
    arrives with an identity of its own (the AMQP ``message_id`` of its
    delivery), which is then reused so a redelivery keeps the same id. Ids
    stay stable across publish retries because retries replay the buffered
    message instead of encoding the element again.
    """

    def __init__(
        self,
        codec,
        num_shards: int,
        *,
        record_id_method: RecordIdMethod = RecordIdMethod.RANDOM,
        id_label: Optional[str] = None,
        counters: Optional[Counters] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        if num_shards < 1:
            raise ValueError(f"num_shards must be positive, got {num_shards}")
        self.codec = codec
        self.num_shards = num_shards
        self.record_id_method = record_id_method if id_label else RecordIdMethod.NONE
        self.counters = counters or Counters()
        self._random = rng or random.Random()

        if record_id_method != self.record_id_method:
            logging.info(f"No id label configured, record id method {record_id_method.name} downgraded to NONE")

    def encode(
        self, element: Any, timestamp_millis: int, source_id: Optional[str] = None
    ) -> Tuple[int, OutgoingMessage]:
        self.counters.inc(ELEMENTS)
        try:
            payload = self.codec.encode(element)
        except Exception as e:
            raise ElementEncodingError(f"Could not encode element with {type(self.codec).__name__}: {e}") from e

        message = OutgoingMessage(payload, timestamp_millis, self._record_id(payload, source_id))
        return self._random.randrange(self.num_shards), message

    def _record_id(self, payload: bytes, source_id: Optional[str]) -> Optional[str]:
        if self.record_id_method == RecordIdMethod.DETERMINISTIC:
            return hashlib.sha256(payload).hexdigest()
        if self.record_id_method == RecordIdMethod.RANDOM:
            return source_id or str(uuid.uuid4())
        return None
