"""
Custom Exceptions

Defines custom exception classes for the chat bridge.
"""

from typing import Optional


class ChatBridgeError(Exception):
    """Base exception class for all chat bridge errors."""
    pass


class NetworkError(ChatBridgeError):
    """Raised when network-related errors occur."""

    def __init__(self, message: str, operation: Optional[str] = None, address: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.address = address


class ConnectTimeoutError(NetworkError):
    """Raised when establishing a connection times out."""
    pass


class ConnectRefusedError(NetworkError):
    """Raised when the remote end refuses the connection."""
    pass


class TransportIOError(NetworkError):
    """Raised when reading from or writing to a transport fails."""
    pass


class HandshakeError(ChatBridgeError):
    """Base class for handshake failures."""
    pass


class HandshakeRejectedError(HandshakeError):
    """Raised when the server explicitly rejects the handshake."""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class HandshakeTimeoutError(HandshakeError):
    """Raised when no handshake answer arrives in time."""
    pass


class ProtocolError(ChatBridgeError):
    """Raised when a peer answers with an unexpected status or shape."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ParseError(ChatBridgeError):
    """Raised when a payload cannot be decoded as JSON."""

    def __init__(self, message: str, payload: Optional[str] = None):
        super().__init__(message)
        self.payload = payload


class ValidationError(ChatBridgeError):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[str] = None):
        super().__init__(message)
        self.field = field
        self.value = value


class ConfigurationError(ChatBridgeError):
    """Raised when configuration-related errors occur."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details


class ServiceDiscoveryError(ChatBridgeError):
    """Raised when the server list cannot be fetched."""
    pass
