"""Error taxonomy for the relay."""

from typing import Optional


class RelayError(Exception):
    """Base exception for all relay errors."""


class ValidationError(RelayError):
    """Malformed inbound event. Answered with an error event; the session stays open."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message)


class InvalidLocation(ValidationError):
    """Location update without deviceID, a 2-element coordinate or a timestamp."""


class InvalidRoute(ValidationError):
    """Route update without deviceID, startPoint or endPoint."""


class InvalidMessage(ValidationError):
    """Chat message rejected by the chat store."""

    def __init__(self, message: str, *, reason: str) -> None:
        self.reason = reason
        super().__init__(message)


class NotFoundError(RelayError):
    """Unknown driver, route or history."""


class UpstreamError(RelayError):
    """Route provider failure (network, non-200, unusable response)."""

    def __init__(self, message: str, *, provider: str = "") -> None:
        self.provider = provider
        super().__init__(message)


class RateLimitError(InvalidMessage):
    """Sender exceeded its messages-per-minute budget."""

    def __init__(self, message: str) -> None:
        super().__init__(message, reason="RateLimited")


class IOWarning(Warning):
    """Log-file append failure. Server-side diagnostics only."""
