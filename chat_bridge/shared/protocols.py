"""
Type Protocols and Interfaces

Defines protocol interfaces for structural typing throughout the application.
"""

from typing import Protocol, Any, Callable, List, runtime_checkable
from abc import abstractmethod

from .models import ClientIdentity, ServerDescriptor


@runtime_checkable
class HandshakeProtocol(Protocol):
    """
    Protocol for a transport's session handshake.

    A handshake proves the client identity and nickname to the server and
    waits, bounded by a timeout, for a binary accept/reject answer.
    """

    @abstractmethod
    def attempt_handshake(self, server: ServerDescriptor, identity: ClientIdentity,
                          nickname: str, *args: Any, **kwargs: Any) -> Any:
        """
        Run the handshake against a server.

        Args:
            server: Target server.
            identity: Local client identity.
            nickname: Nickname to announce.

        Returns:
            A HandshakeResult describing the outcome.
        """
        ...


@runtime_checkable
class Transport(HandshakeProtocol, Protocol):
    """Protocol for a session transport (direct socket or relay)."""

    @abstractmethod
    def close(self) -> None:
        """Tear the session down. Must be idempotent."""
        ...


@runtime_checkable
class ServerDirectory(Protocol):
    """Protocol for a source of available servers."""

    @abstractmethod
    def fetch_servers(self) -> List[ServerDescriptor]:
        """
        Fetch the current server list.

        Returns:
            Servers that passed validation.
        """
        ...


# Callback shapes shared by the transports and the connection manager
LineCallback = Callable[[str], None]
LostCallback = Callable[[str], None]
ActivePredicate = Callable[[], bool]
