"""
Data Models

Defines data classes and models used throughout the chat bridge.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet, Iterable

from .constants import TransportMethod, RelayMessageType, ControlAction
from .exceptions import ValidationError, ParseError


class ConnectionMode(Enum):
    """Enumeration of the transport a session runs over."""
    NONE = "none"
    DIRECT = "direct"
    RELAY = "relay"


@dataclass(frozen=True)
class ClientIdentity:
    """Process-lifetime identity of the local client."""
    value: str

    @classmethod
    def generate(cls) -> "ClientIdentity":
        """Create a fresh random identity."""
        return cls(str(uuid.uuid4()))

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ServerDescriptor:
    """
    A chat server advertised by the discovery service.

    Two descriptors are equal when their uuids are equal, whatever the
    other fields say.
    """
    uuid: str
    name: str = field(compare=False)
    host: str = field(compare=False)
    port: int = field(compare=False)
    supported_methods: FrozenSet[str] = field(compare=False, default=frozenset())

    @property
    def supports_direct(self) -> bool:
        return TransportMethod.DIRECT in self.supported_methods

    @property
    def supports_relay(self) -> bool:
        return TransportMethod.RELAY in self.supported_methods

    @property
    def address(self) -> str:
        """Get server endpoint as host:port string."""
        return f"{self.host}:{self.port}"

    @property
    def display_name(self) -> str:
        """Name with the transports it offers, e.g. ``Lobby (direct/relay)``."""
        methods = [m for m in (TransportMethod.DIRECT, TransportMethod.RELAY)
                   if m in self.supported_methods]
        return f"{self.name} ({'/'.join(methods)})"

    @classmethod
    def from_dict(cls, data: Any) -> "ServerDescriptor":
        """
        Build a descriptor from one discovery entry.

        Args:
            data: Decoded JSON object for a single server.

        Returns:
            The validated descriptor.

        Raises:
            ValidationError: If any required field is missing or invalid.
        """
        if not isinstance(data, dict):
            raise ValidationError("Server entry must be an object", value=repr(data))

        values: Dict[str, str] = {}
        for key in ("uuid", "name", "host"):
            value = data.get(key)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{key} must be a non-empty string", field=key, value=repr(value))
            values[key] = value

        port = _parse_port(data.get("port"))

        raw_methods = data.get("supported_methods")
        if not isinstance(raw_methods, list):
            raise ValidationError("supported_methods must be a list", field="supported_methods",
                                  value=repr(raw_methods))
        methods = methods_from(m for m in raw_methods if isinstance(m, str))
        if not methods:
            raise ValidationError("at least one supported method is required", field="supported_methods",
                                  value=repr(raw_methods))

        return cls(uuid=values["uuid"], name=values["name"], host=values["host"],
                   port=port, supported_methods=methods)


def _parse_port(value: Any) -> int:
    """Accept an integer or an all-digit string in 1..65535."""
    if isinstance(value, bool):
        raise ValidationError("port must be an integer", field="port", value=repr(value))
    if isinstance(value, str) and value.strip().isdecimal():
        value = int(value.strip())
    if not isinstance(value, int) or not (1 <= value <= 65535):
        raise ValidationError("port must be an integer between 1 and 65535", field="port", value=repr(value))
    return value


@dataclass(frozen=True)
class ConnectionState:
    """Snapshot of the client's connection."""
    mode: ConnectionMode = ConnectionMode.NONE
    connected: bool = False
    server: Optional[ServerDescriptor] = None
    nickname: str = ""

    def __post_init__(self) -> None:
        if self.connected and (self.mode is ConnectionMode.NONE or self.server is None):
            raise ValidationError("A connected state needs a transport mode and a server")


@dataclass(frozen=True)
class RelayMessage:
    """The wire unit of the relay transport."""
    sender: Optional[str]
    recipient: Optional[str]
    body: str
    type: str = RelayMessageType.CHAT

    @property
    def is_control(self) -> bool:
        return (self.type or "").lower() == RelayMessageType.CONTROL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "recipient": self.recipient,
            "message": self.body,
            "type": self.type,
        }

    def to_json(self) -> str:
        """Serialize to the relay's JSON object format."""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayMessage":
        """Create a message from a decoded relay object, tolerating missing keys."""
        def text(key: str, default: Optional[str]) -> Optional[str]:
            value = data.get(key)
            return default if value is None else str(value)

        return cls(
            sender=text("sender", None),
            recipient=text("recipient", None),
            body=text("message", "") or "",
            type=text("type", RelayMessageType.CHAT) or RelayMessageType.CHAT,
        )

    @classmethod
    def from_json(cls, payload: str) -> "RelayMessage":
        try:
            data = json.loads(payload)
        except (TypeError, ValueError, RecursionError) as e:
            raise ParseError(f"Invalid relay message JSON: {e}", payload=payload) from e
        if not isinstance(data, dict):
            raise ParseError("Relay message must be a JSON object", payload=payload)
        return cls.from_dict(data)


@dataclass(frozen=True)
class ControlPayload:
    """Protocol action nested in the body of a control message."""
    action: str
    nickname: Optional[str] = None
    reason: Optional[str] = None

    def is_action(self, action: str) -> bool:
        return self.action.upper() == action.upper()

    def to_json(self) -> str:
        payload: Dict[str, Any] = {"action": self.action}
        if self.nickname is not None:
            payload["nickname"] = self.nickname
        if self.reason is not None:
            payload["reason"] = self.reason
        return json.dumps(payload, ensure_ascii=False)

    @classmethod
    def from_body(cls, body: str) -> "ControlPayload":
        """
        Parse the body of a control message.

        Raises:
            ParseError: If the body is not a JSON object.
        """
        try:
            data = json.loads(body)
        except (TypeError, ValueError, RecursionError) as e:
            raise ParseError(f"Invalid control payload: {e}", payload=body) from e
        if not isinstance(data, dict):
            raise ParseError("Control payload must be a JSON object", payload=body)

        reason = data.get("reason")
        nickname = data.get("nickname")
        return cls(
            action=str(data.get("action") or ""),
            nickname=None if nickname is None else str(nickname),
            reason=None if reason is None else str(reason),
        )

    @classmethod
    def handshake_request(cls, nickname: str) -> "ControlPayload":
        return cls(action=ControlAction.HANDSHAKE_REQUEST, nickname=nickname)

    @classmethod
    def client_disconnect(cls) -> "ControlPayload":
        return cls(action=ControlAction.CLIENT_DISCONNECT)


def methods_from(values: Iterable[str]) -> FrozenSet[str]:
    """Keep only the transport methods this client understands."""
    return frozenset(v for v in values if v in TransportMethod.ALL)
