"""
Handshake Results

Shared outcome type for the direct and relay handshakes.
"""

from dataclasses import dataclass
from typing import Optional

from chat_bridge.shared.exceptions import (
    ChatBridgeError,
    ConnectRefusedError,
    ConnectTimeoutError,
    HandshakeRejectedError,
    HandshakeTimeoutError,
)


@dataclass(frozen=True)
class HandshakeResult:
    """Outcome of a handshake attempt."""
    success: bool
    reason: str = ""
    error: Optional[ChatBridgeError] = None

    @classmethod
    def accepted(cls) -> "HandshakeResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: ChatBridgeError) -> "HandshakeResult":
        """Build a failed result whose reason is readable by a user."""
        return cls(success=False, reason=describe_failure(error), error=error)

    def __bool__(self) -> bool:
        return self.success


def describe_failure(error: ChatBridgeError) -> str:
    """
    Turn a handshake error into a short human-readable reason.

    Args:
        error: The error that ended the handshake.

    Returns:
        Reason string suitable for the message log.
    """
    if isinstance(error, HandshakeRejectedError):
        return f"Server rejected the connection: {error.reason or 'No response'}"
    if isinstance(error, (HandshakeTimeoutError, ConnectTimeoutError)):
        return "Connection timed out"
    if isinstance(error, ConnectRefusedError):
        return "Connection refused by server"
    return str(error) or error.__class__.__name__
