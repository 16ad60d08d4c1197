class ElementEncodingError(ValueError):
    """Raised when the element codec cannot serialize an element."""


class PublishCountMismatchError(RuntimeError):
    """Raised when the broker accepted fewer (or more) messages than were sent."""

    def __init__(self, sent: int, accepted: int) -> None:
        super().__init__(f"Attempted to publish {sent} messages but {accepted} were successful")
        self.sent = sent
        self.accepted = accepted


class ClientLifecycleError(RuntimeError):
    """Raised when a publish cycle acquires or uses the broker client out of order."""
