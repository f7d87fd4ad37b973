"""
replbridge.errors - Error taxonomy for the REPL bridge

- BridgeError: Base class, carries a human-readable reason
- HandshakeFailed: Connect attempt failed (refused, timeout, no session)
- ConnectionClosed: Socket EOF or write failure; the connection is unusable
- MalformedMessage: Codec decode failure; handled like ConnectionClosed
- OrphanFragment: Response fragment with no matching request (recoverable)
"""

from typing import Any, Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_params(self) -> dict[str, Any]:
        """Convert to the params of a `failed` editor notification."""
        return {"reason": self.reason, "error": type(self).__name__}


class HandshakeFailed(BridgeError):
    """Raised when the REPL server cannot be reached or the handshake fails."""

    pass


class ConnectionClosed(BridgeError):
    """Raised when the socket reports EOF or a write fails."""

    pass


class MalformedMessage(ConnectionClosed):
    """Raised when incoming bytes cannot be decoded.

    Framing cannot be resynchronised after a decode failure, so this is a
    ConnectionClosed as far as callers are concerned.
    """

    def __init__(self, reason: str, data: Optional[bytes] = None):
        super().__init__(reason)
        self.data = data


class OrphanFragment(BridgeError):
    """Raised when a response fragment matches no outstanding request."""

    def __init__(self, reason: str, fragment: Any = None):
        super().__init__(reason)
        self.fragment = fragment
