"""Wire format for the messages exchanged between the sink stages.

Each record is laid out as:

* varint length + payload bytes
* 8-byte big-endian signed timestamp (epoch millis)
* 1-byte marker (0 absent / 1 present), then varint length + UTF-8 record id
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
from typing import List, Optional, Tuple

TIMESTAMP_LENGTH = 8
MARKER_LENGTH = 1

ABSENT = 0
PRESENT = 1

MIN_TIMESTAMP = -(1 << 63)
MAX_TIMESTAMP = (1 << 63) - 1


@dataclass(frozen=True)
class OutgoingMessage:
    """An encoded element ready to be published."""

    payload: bytes
    timestamp_millis: int
    record_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.payload, (bytes, bytearray)):
            raise TypeError(f"payload must be bytes, got {type(self.payload).__name__}")
        object.__setattr__(self, "payload", bytes(self.payload))
        if not MIN_TIMESTAMP <= self.timestamp_millis <= MAX_TIMESTAMP:
            raise ValueError(f"timestamp {self.timestamp_millis} does not fit in 64 bits")
        if self.record_id is not None and not self.record_id:
            raise ValueError("record_id must be absent or a non-empty string")

    @property
    def size(self) -> int:
        return len(self.payload)


class MessageProtocol:
    def encode_message(self, message: OutgoingMessage) -> bytes:
        buffer = bytearray()
        self._write_message(buffer, message)
        return bytes(buffer)

    def decode_message(self, data: bytes) -> OutgoingMessage:
        message, offset = self._read_message(data, 0)
        if offset != len(data):
            raise ValueError(f"{len(data) - offset} trailing bytes after message")
        return message

    def encode_batch(self, messages: List[OutgoingMessage]) -> bytes:
        """Frame a list of messages: varint count followed by each record."""
        buffer = bytearray()
        _write_varint(buffer, len(messages))
        for message in messages:
            self._write_message(buffer, message)
        return bytes(buffer)

    def decode_batch(self, data: bytes) -> List[OutgoingMessage]:
        count, offset = _read_varint(data, 0)
        messages = []
        for _ in range(count):
            message, offset = self._read_message(data, offset)
            messages.append(message)
        if offset != len(data):
            raise ValueError(f"{len(data) - offset} trailing bytes after batch")
        return messages

    def decode_segments(self, data: bytes) -> List[OutgoingMessage]:
        """Decode back-to-back ``encode_batch`` frames, as appended to a snapshot file.

        A frame that cannot be decoded ends the read: only the last append
        can be torn by a crash, and its delivery was never acked.
        """
        messages: List[OutgoingMessage] = []
        offset = 0
        while offset < len(data):
            try:
                count, position = _read_varint(data, offset)
                frame = []
                for _ in range(count):
                    message, position = self._read_message(data, position)
                    frame.append(message)
            except ValueError as e:
                logging.warning(f"Dropping {len(data) - offset} unreadable bytes at the end of a snapshot: {e}")
                break
            messages.extend(frame)
            offset = position
        return messages

    def _write_message(self, buffer: bytearray, message: OutgoingMessage) -> None:
        _write_varint(buffer, len(message.payload))
        buffer.extend(message.payload)
        buffer.extend(message.timestamp_millis.to_bytes(TIMESTAMP_LENGTH, byteorder='big', signed=True))
        if message.record_id is None:
            buffer.extend(ABSENT.to_bytes(MARKER_LENGTH, byteorder='big'))
        else:
            encoded_id = message.record_id.encode('utf-8')
            buffer.extend(PRESENT.to_bytes(MARKER_LENGTH, byteorder='big'))
            _write_varint(buffer, len(encoded_id))
            buffer.extend(encoded_id)

    def _read_message(self, data: bytes, offset: int) -> Tuple[OutgoingMessage, int]:
        payload_len, offset = _read_varint(data, offset)
        payload = _take(data, offset, payload_len)
        offset += payload_len

        timestamp = int.from_bytes(_take(data, offset, TIMESTAMP_LENGTH), byteorder='big', signed=True)
        offset += TIMESTAMP_LENGTH

        marker = int.from_bytes(_take(data, offset, MARKER_LENGTH), byteorder='big')
        offset += MARKER_LENGTH

        record_id = None
        if marker == PRESENT:
            id_len, offset = _read_varint(data, offset)
            record_id = _take(data, offset, id_len).decode('utf-8')
            offset += id_len
        elif marker != ABSENT:
            raise ValueError(f"Invalid record id marker: {marker}")

        return OutgoingMessage(payload, timestamp, record_id), offset


def _write_varint(buffer: bytearray, value: int) -> None:
    if value < 0:
        raise ValueError(f"varint must be non-negative, got {value}")
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            buffer.append(bits | 0x80)
        else:
            buffer.append(bits)
            return


def _read_varint(data: bytes, offset: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise ValueError("Truncated varint")
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, offset
        shift += 7
        if shift > 63:
            raise ValueError("Varint too long")


def _take(data: bytes, offset: int, length: int) -> bytes:
    end = offset + length
    if end > len(data):
        raise ValueError(f"Truncated message: wanted {length} bytes at offset {offset}, got {len(data) - offset}")
    return bytes(data[offset:end])
