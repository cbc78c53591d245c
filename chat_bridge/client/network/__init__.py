"""
Client Network Layer

Provides the direct socket and HTTP relay transports.
"""

from .direct_transport import DirectTransport, DirectTransportConfig
from .handshake import HandshakeResult
from .relay_transport import RelayTransport, RelayTransportConfig

__all__ = [
    "DirectTransport",
    "DirectTransportConfig",
    "HandshakeResult",
    "RelayTransport",
    "RelayTransportConfig",
]
