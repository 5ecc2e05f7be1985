"""
Error taxonomy for the chat protocol.

Every protocol error inherits from ChatError and carries a ``kind`` telling
the caller which failure of its family occurred.
"""
from enum import Enum
from typing import Optional


class DecodeErrorKind(Enum):
    INVALID_HEADER = "invalid_header"
    HEADER_MISMATCH = "header_mismatch"
    MALFORMED_PAYLOAD = "malformed_payload"


class SendErrorKind(Enum):
    NOT_CONNECTED = "not_connected"
    TRANSPORT = "transport"


class ReceiveErrorKind(Enum):
    TRANSPORT = "transport"


class ConnectErrorKind(Enum):
    TRANSPORT = "transport"


class RoutingErrorKind(Enum):
    RECIPIENT_NOT_FOUND = "recipient_not_found"


class ChatError(Exception):
    """
    Base exception for all chat errors.

    Carries a human readable message plus an optional ``details`` dict that
    ends up in the structured log line.
    """
    def __init__(self, message: str, kind: Optional[Enum] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.details = details or {}


class DecodeError(ChatError):
    """A frame could not be decoded into the requested packet shape."""

    def __init__(self, message: str, kind: DecodeErrorKind, details: Optional[dict] = None):
        super().__init__(message, kind, details)


class SendError(ChatError):
    """Writing to a session's transport failed."""

    def __init__(self, message: str, kind: SendErrorKind, details: Optional[dict] = None):
        super().__init__(message, kind, details)


class ReceiveError(ChatError):
    """Reading from a session's transport failed; treat as a disconnect."""

    def __init__(self, message: str, kind: ReceiveErrorKind = ReceiveErrorKind.TRANSPORT,
                 details: Optional[dict] = None):
        super().__init__(message, kind, details)


class ConnectError(ChatError):
    """The client could not connect to or handshake with a host."""

    def __init__(self, message: str, kind: ConnectErrorKind = ConnectErrorKind.TRANSPORT,
                 details: Optional[dict] = None):
        super().__init__(message, kind, details)


class RoutingError(ChatError):
    """A directed message could not be delivered."""

    def __init__(self, message: str, kind: RoutingErrorKind = RoutingErrorKind.RECIPIENT_NOT_FOUND,
                 details: Optional[dict] = None):
        super().__init__(message, kind, details)


class HostStateError(ChatError):
    """The host was asked to tick while not listening."""
    pass
