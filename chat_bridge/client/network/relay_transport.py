"""
Relay Transport

Emulates a chat session over an HTTP relay: messages are POSTed to the relay
and inbound traffic is fetched by polling. The handshake is carried by
control messages.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import requests

from chat_bridge.shared.constants import (
    ControlAction,
    DEFAULT_POLLER_JOIN_TIMEOUT,
    DEFAULT_RELAY_HANDSHAKE_POLL_INTERVAL,
    DEFAULT_RELAY_HANDSHAKE_TIMEOUT,
    DEFAULT_RELAY_POLL_INTERVAL,
    DEFAULT_RELAY_REQUEST_TIMEOUT,
    DEFAULT_RELAY_URL,
    HTTP_OK_STATUS,
    RELAY_ACCEPTED_STATUS,
    RELAY_POLL_ENDPOINT,
    RELAY_SEND_ENDPOINT,
    RelayMessageType,
)
from chat_bridge.shared.exceptions import (
    ChatBridgeError,
    ConnectTimeoutError,
    HandshakeError,
    HandshakeRejectedError,
    HandshakeTimeoutError,
    ParseError,
    ProtocolError,
    TransportIOError,
)
from chat_bridge.shared.models import ClientIdentity, ControlPayload, RelayMessage, ServerDescriptor
from chat_bridge.shared.protocols import ActivePredicate, LineCallback, LostCallback
from .handshake import HandshakeResult


logger = logging.getLogger(__name__)


@dataclass
class RelayTransportConfig:
    """Configuration for the HTTP relay transport."""
    relay_url: str = DEFAULT_RELAY_URL
    request_timeout: float = DEFAULT_RELAY_REQUEST_TIMEOUT
    handshake_timeout: float = DEFAULT_RELAY_HANDSHAKE_TIMEOUT
    handshake_poll_interval: float = DEFAULT_RELAY_HANDSHAKE_POLL_INTERVAL
    poll_interval: float = DEFAULT_RELAY_POLL_INTERVAL
    join_timeout: float = DEFAULT_POLLER_JOIN_TIMEOUT

    def __post_init__(self) -> None:
        self.relay_url = self.relay_url.rstrip("/")


def parse_relay_messages(text: Optional[str]) -> List[RelayMessage]:
    """
    Parse a poll response body.

    Args:
        text: Raw response body.

    Returns:
        Decoded messages; an empty or ``[]`` body yields an empty list.

    Raises:
        ParseError: If the body is not a JSON array.
    """
    if text is None or not text.strip() or text.strip() == "[]":
        return []

    try:
        data = json.loads(text)
    except (ValueError, RecursionError) as e:
        raise ParseError(f"Malformed relay response: {e}", payload=text) from e

    if not isinstance(data, list):
        raise ParseError("Relay response is not a JSON array", payload=text)

    messages = []
    for item in data:
        if isinstance(item, dict):
            messages.append(RelayMessage.from_dict(item))
        else:
            logger.warning(f"Skipping non-object relay entry: {item!r}")
    return messages


class RelayTransport:
    """
    Session with a chat server through the HTTP relay.

    The HTTP session is a shareable capability; the poll thread is owned
    exclusively by this transport.
    """

    def __init__(self, identity: ClientIdentity,
                 config: Optional[RelayTransportConfig] = None,
                 session: Optional[requests.Session] = None) -> None:
        """
        Initialize the transport.

        Args:
            identity: Local client identity, used as sender and poll key.
            config: Transport configuration.
            session: HTTP session to use. A private one is created if omitted.
        """
        self.identity = identity
        self.config = config or RelayTransportConfig()
        self._session = session or requests.Session()
        self._lock = threading.Lock()
        self._poll_thread: Optional[threading.Thread] = None
        self._poll_stop: Optional[threading.Event] = None

    # Wire operations

    def send_message(self, recipient: str, body: str, message_type: str = RelayMessageType.CHAT,
                     sender: Optional[ClientIdentity] = None) -> None:
        """
        POST one message to the relay.

        Args:
            recipient: Recipient uuid.
            body: Message body.
            message_type: ``chat``, ``system`` or ``control``.
            sender: Sender identity; defaults to this client.

        Raises:
            ProtocolError: If the relay does not answer with its accepted status.
            TransportIOError: If the request cannot be completed.
        """
        message = RelayMessage(
            sender=str(sender or self.identity),
            recipient=recipient,
            body=body,
            type=message_type,
        )
        url = f"{self.config.relay_url}/{RELAY_SEND_ENDPOINT}"

        try:
            response = self._session.post(
                url,
                data=message.to_json().encode("utf-8"),
                headers={"Content-Type": "application/json"},
                timeout=self.config.request_timeout,
            )
        except requests.exceptions.RequestException as e:
            raise _network_error(e, "send", url) from e

        if response.status_code != RELAY_ACCEPTED_STATUS:
            raise ProtocolError(
                f"Relay did not accept message (status {response.status_code})",
                status_code=response.status_code,
                body=response.text,
            )
        logger.debug(f"Relay accepted {message_type} message for {recipient}")

    def send_control(self, recipient: str, payload: ControlPayload,
                     sender: Optional[ClientIdentity] = None) -> None:
        """Send a control message carrying ``payload``."""
        self.send_message(recipient, payload.to_json(), RelayMessageType.CONTROL, sender=sender)

    def poll(self, recipient: Optional[ClientIdentity] = None) -> List[RelayMessage]:
        """
        Fetch pending messages for this client in one round-trip.

        Args:
            recipient: Identity to poll for; defaults to this client.

        Returns:
            Pending messages, possibly empty.

        Raises:
            ProtocolError: On a non-success status.
            TransportIOError: If the request cannot be completed.
            ParseError: If a success response has a malformed body.
        """
        url = f"{self.config.relay_url}/{RELAY_POLL_ENDPOINT}"
        try:
            response = self._session.get(
                url,
                params={"recipient": str(recipient or self.identity)},
                timeout=self.config.request_timeout,
            )
        except requests.exceptions.RequestException as e:
            raise _network_error(e, "poll", url) from e

        if response.status_code != HTTP_OK_STATUS:
            raise ProtocolError(
                f"Relay poll failed (status {response.status_code})",
                status_code=response.status_code,
                body=response.text,
            )
        return parse_relay_messages(response.text)

    # Handshake

    def attempt_handshake(self, server: ServerDescriptor, identity: ClientIdentity, nickname: str,
                          overall_timeout: Optional[float] = None,
                          poll_interval: Optional[float] = None,
                          cancel_event: Optional[threading.Event] = None) -> HandshakeResult:
        """
        Ask the server to accept a relay session and wait for its answer.

        Args:
            server: Target server; its uuid is the relay address.
            identity: Local identity used as sender and poll key.
            nickname: Nickname announced in the request.
            overall_timeout: Seconds to wait for an answer.
            poll_interval: Seconds between polls while waiting.
            cancel_event: When set, the wait is abandoned.

        Returns:
            HandshakeResult.
        """
        if overall_timeout is None:
            overall_timeout = self.config.handshake_timeout
        if poll_interval is None:
            poll_interval = self.config.handshake_poll_interval
        waiter = cancel_event or threading.Event()

        try:
            self.send_control(server.uuid, ControlPayload.handshake_request(nickname), sender=identity)
        except ChatBridgeError as e:
            logger.warning(f"Failed to send relay handshake request: {e}")
            return HandshakeResult.failed(e)
        logger.info(f"Relay handshake request sent to {server.uuid}")

        deadline = time.monotonic() + overall_timeout
        while time.monotonic() < deadline:
            if waiter.is_set():
                return HandshakeResult.failed(HandshakeError("Handshake interrupted"))

            try:
                messages = self.poll(identity)
            except ChatBridgeError as e:
                logger.warning(f"Relay poll failed during handshake: {e}")
                return HandshakeResult.failed(e)

            for message in messages:
                if message.sender != server.uuid or not message.is_control:
                    continue
                try:
                    control = ControlPayload.from_body(message.body)
                except ParseError as e:
                    logger.warning(f"Ignoring unparseable control message during handshake: {e}")
                    continue

                if control.is_action(ControlAction.HANDSHAKE_OK):
                    logger.info(f"Relay handshake with {server.uuid} accepted")
                    return HandshakeResult.accepted()
                if control.is_action(ControlAction.HANDSHAKE_ERROR):
                    reason = control.reason or "Unknown reason"
                    logger.warning(f"Relay handshake rejected: {reason}")
                    return HandshakeResult.failed(
                        HandshakeRejectedError("Relay handshake rejected", reason=reason))

            remaining = deadline - time.monotonic()
            if remaining > 0 and waiter.wait(min(poll_interval, remaining)):
                return HandshakeResult.failed(HandshakeError("Handshake interrupted"))

        logger.warning(f"Relay handshake with {server.uuid} timed out")
        return HandshakeResult.failed(HandshakeTimeoutError("Relay handshake timed out"))

    # Polling

    def start_polling(self, server: ServerDescriptor,
                      on_message: LineCallback,
                      on_status: Callable[[str], None],
                      on_lost: LostCallback,
                      is_active: Optional[ActivePredicate] = None) -> None:
        """
        Start the recurring poll on a dedicated thread.

        The first poll runs immediately, then at a fixed rate.

        Args:
            server: Connected server; messages from other senders are dropped.
            on_message: Receives the text to show for each inbound message.
            on_status: Receives status notes such as a shutdown warning.
            on_lost: Called once if a poll fails at the transport level.
            is_active: Polls are skipped while this returns False.
        """
        self.stop_polling()

        with self._lock:
            stop_event = threading.Event()
            self._poll_stop = stop_event
            self._poll_thread = threading.Thread(
                target=self._poll_loop,
                args=(server, stop_event, on_message, on_status, on_lost, is_active),
                name="Relay-Poller-Thread",
                daemon=True,
            )
            self._poll_thread.start()
        logger.debug("Relay polling started")

    def stop_polling(self) -> None:
        """Stop the poll thread. Idempotent, and safe from the poll thread itself."""
        with self._lock:
            thread, stop_event = self._poll_thread, self._poll_stop
            self._poll_thread = None
            self._poll_stop = None

        if stop_event is None:
            return

        stop_event.set()
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.config.join_timeout)
            if thread.is_alive():
                logger.warning("Relay poller did not stop in time")
        logger.debug("Relay polling stopped")

    def close(self) -> None:
        self.stop_polling()

    def is_polling(self) -> bool:
        return self._poll_thread is not None

    def _poll_loop(self, server: ServerDescriptor, stop_event: threading.Event,
                   on_message: LineCallback, on_status: Callable[[str], None],
                   on_lost: LostCallback, is_active: Optional[ActivePredicate]) -> None:
        interval = self.config.poll_interval
        next_run = time.monotonic()

        while not stop_event.is_set():
            if is_active is None or is_active():
                try:
                    messages = self.poll()
                except ParseError as e:
                    logger.warning(f"Error parsing relay messages: {e}")
                    on_message("[Error] Could not parse message from relay.")
                except ChatBridgeError as e:
                    if not stop_event.is_set():
                        logger.error(f"Relay poll failed: {e}")
                        on_lost(str(e))
                    return
                except Exception as e:
                    logger.exception("Unexpected error in relay poller")
                    if not stop_event.is_set():
                        on_lost(f"Unexpected error polling relay: {e}")
                    return
                else:
                    for message in messages:
                        if stop_event.is_set():
                            return
                        self._dispatch(server, message, on_message, on_status)

            next_run = max(next_run + interval, time.monotonic())
            if stop_event.wait(next_run - time.monotonic()):
                break

    def _dispatch(self, server: ServerDescriptor, message: RelayMessage,
                  on_message: LineCallback, on_status: Callable[[str], None]) -> None:
        """Route one inbound relay message by type."""
        if message.sender != server.uuid:
            logger.info(f"Received relay message from unexpected sender: {message.sender} "
                        f"(expected: {server.uuid})")
            return

        kind = (message.type or "").lower()
        if kind in (RelayMessageType.CHAT, RelayMessageType.SYSTEM):
            on_message(message.body)
        elif kind == RelayMessageType.CONTROL:
            on_message(f"[Control from Server]: {message.body}")
            try:
                control = ControlPayload.from_body(message.body)
            except ParseError:
                return
            if control.is_action(ControlAction.SERVER_SHUTDOWN):
                # Warning only; the session stays up until the relay fails
                logger.warning(f"Server {server.uuid} announced shutdown")
                on_message("[System] Server is shutting down!")
                on_status("Server is shutting down")
        else:
            on_message(f"[Unknown Type from Server] {message.body}")


def _network_error(error: requests.exceptions.RequestException, operation: str, url: str) -> ChatBridgeError:
    """Map a requests failure onto the transport error taxonomy."""
    if isinstance(error, requests.exceptions.ConnectTimeout):
        return ConnectTimeoutError(f"Relay {operation} timed out connecting: {error}",
                                   operation=operation, address=url)
    return TransportIOError(f"Relay {operation} failed: {error}", operation=operation, address=url)
