"""Wire formats and RabbitMQ adapters shared by the sink services."""

from protocol.message_protocol import MessageProtocol, OutgoingMessage

__all__ = ["MessageProtocol", "OutgoingMessage"]
