"""Exception types shared across portbot."""


class PortBotError(Exception):
    """Base class for portbot errors."""


class SessionConnectionError(PortBotError):
    """Opening the Socket Mode session or reading its handshake failed."""


class ConnectionClosed(PortBotError):
    """The duplex connection closed or errored while waiting for a frame."""

    def __init__(self, reason: str = "closed") -> None:
        super().__init__(reason)
        self.reason = reason


class ParseError(PortBotError):
    """A received frame could not be classified into an envelope."""

    def __init__(self, message: str, raw: str | bytes | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class AuthError(PortBotError):
    """A token is missing or was rejected."""


class UpstreamError(PortBotError):
    """A control-plane or chat-platform call failed in transport or returned non-2xx."""

    def __init__(self, message: str, status: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class SerializationError(PortBotError):
    """A workflow or filter document could not be encoded or decoded."""
