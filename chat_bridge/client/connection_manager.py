"""
Connection Manager

The chat client's connection engine. Owns the single authoritative
ConnectionState, runs connection attempts (direct first, relay as fallback)
on a worker pool, and publishes every observable change through the
EventBus.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, List, Optional, Set

import requests

from chat_bridge.shared.config import ClientConfig
from chat_bridge.shared.constants import RelayMessageType
from chat_bridge.shared.exceptions import (
    ChatBridgeError,
    ProtocolError,
    ServiceDiscoveryError,
    TransportIOError,
)
from chat_bridge.shared.models import (
    ClientIdentity,
    ConnectionMode,
    ConnectionState,
    ControlPayload,
    ServerDescriptor,
)
from chat_bridge.client.events import EventBus, EventType
from chat_bridge.client.network import (
    DirectTransport,
    DirectTransportConfig,
    RelayTransport,
    RelayTransportConfig,
)
from chat_bridge.discovery import DiscoveryClient, DiscoveryConfig


logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Connection state machine for one chat client.

    User intents (``fetch_servers``, ``connect``, ``send``, ``disconnect``,
    ``shutdown``) never block on the network; the work runs on a bounded
    thread pool and results are delivered through ``events``.

    Mode transitions are NONE -> DIRECT, NONE -> RELAY and back to NONE.
    Every established session gets a new session number; callbacks from
    the transport loops carry it, so a late or duplicate loss report for a
    session that is already gone is ignored.
    """

    def __init__(self,
                 config: Optional[ClientConfig] = None,
                 events: Optional[EventBus] = None,
                 identity: Optional[ClientIdentity] = None,
                 discovery: Optional[DiscoveryClient] = None,
                 direct: Optional[DirectTransport] = None,
                 relay: Optional[RelayTransport] = None) -> None:
        """
        Initialize the manager.

        Args:
            config: Client configuration.
            events: Event bus to publish on; a new one is created if omitted.
            identity: Client identity; generated if omitted.
            discovery: Discovery client override.
            direct: Direct transport override.
            relay: Relay transport override.
        """
        self.config = config or ClientConfig()
        self.config.validate()
        self.events = events or EventBus()
        self._identity = identity or ClientIdentity.generate()

        self._http = requests.Session()
        self._discovery = discovery or DiscoveryClient(
            DiscoveryConfig(self.config.discovery_url, self.config.discovery_timeout),
            session=self._http,
        )
        self._direct = direct or DirectTransport(DirectTransportConfig(
            connect_timeout=self.config.connect_timeout,
            handshake_timeout=self.config.handshake_timeout,
            socket_timeout=self.config.socket_timeout,
            buffer_size=self.config.buffer_size,
            join_timeout=self.config.receiver_join_timeout,
        ))
        self._relay = relay or RelayTransport(self._identity, RelayTransportConfig(
            relay_url=self.config.relay_url,
            request_timeout=self.config.relay_request_timeout,
            handshake_timeout=self.config.relay_handshake_timeout,
            handshake_poll_interval=self.config.relay_handshake_poll_interval,
            poll_interval=self.config.relay_poll_interval,
            join_timeout=self.config.poller_join_timeout,
        ), session=self._http)

        # State owner: every read-modify-write of _state goes through _lock
        self._lock = threading.RLock()
        self._state = ConnectionState()
        self._session_id = 0
        self._connecting = False
        self._shutdown_started = False
        self._shutdown_event = threading.Event()
        # Held while transports are torn down so a new attempt cannot overlap
        self._teardown_lock = threading.Lock()

        # Observable outputs
        self._log_lock = threading.RLock()
        self._status = "Disconnected"
        self._messages: List[str] = []
        self._servers: List[ServerDescriptor] = []

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.worker_pool_size,
            thread_name_prefix="chat-bridge-net",
        )
        self._pending: Set[Future] = set()

        logger.info(f"Client UUID: {self._identity}")
        self._update_status(f"Initialized. Client UUID: {self._identity}")

    # Read-only views

    @property
    def identity(self) -> ClientIdentity:
        return self._identity

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state.connected

    @property
    def mode(self) -> ConnectionMode:
        return self.state.mode

    @property
    def status(self) -> str:
        with self._log_lock:
            return self._status

    @property
    def messages(self) -> List[str]:
        """Copy of the append-only message log."""
        with self._log_lock:
            return list(self._messages)

    @property
    def servers(self) -> List[ServerDescriptor]:
        with self._log_lock:
            return list(self._servers)

    # User intents

    def fetch_servers(self) -> Optional[Future]:
        """
        Refresh the server list in the background.

        The result is published as a SERVER_LIST event; on failure an empty
        list is published together with an error status.

        Returns:
            Future resolving to the new list, or None after shutdown.
        """
        return self._submit(self._run_fetch_servers)

    def connect(self, server: Optional[ServerDescriptor], nickname: Optional[str]) -> Optional[Future]:
        """
        Start a connection attempt: direct first, then relay.

        Args:
            server: Server to connect to.
            nickname: Nickname to use; surrounding whitespace is trimmed.

        Returns:
            Future resolving to True when a session was established, or
            None if the request was rejected up front.
        """
        with self._lock:
            rejection = self._connect_rejection(server, nickname)
            if rejection is None:
                self._connecting = True
                nickname = nickname.strip()
                self._state = ConnectionState(nickname=nickname)

        if rejection is not None:
            message, status = rejection
            self._add_message(message)
            if status:
                self._update_status(status)
            return None

        self._update_status(f"Connecting to {server.name} as {nickname}...")
        self._add_message(f"[System] Attempting connection to: {server.name}")

        future = self._submit(self._run_connect, server, nickname)
        if future is None:
            with self._lock:
                self._connecting = False
            self._add_message("[Error] Client is shutting down.")
        return future

    def send(self, text: Optional[str]) -> Optional[Future]:
        """
        Send a chat line over the active transport in the background.

        Args:
            text: The message as typed.

        Returns:
            Future resolving to True on success, or None if rejected.
        """
        with self._lock:
            state = self._state
            session_id = self._session_id

        if not state.connected:
            self._add_message("[Error] Not connected.")
            return None
        if text is None or not text.strip():
            self._add_message("[Error] Cannot send an empty message.")
            return None

        return self._submit(self._run_send, session_id, state.mode, state.server, text)

    def disconnect(self) -> None:
        """End the current session. Does nothing when not connected."""
        with self._lock:
            state = self._state
        if not state.connected:
            return

        self._add_message("[System] Disconnecting...")
        self._update_status("Disconnecting...")

        if state.mode is ConnectionMode.RELAY and state.server is not None:
            try:
                self._relay.send_control(state.server.uuid, ControlPayload.client_disconnect())
            except ChatBridgeError as e:
                logger.debug(f"Disconnect notice not delivered: {e}")

        self._reset_connection(announce=True)

    def shutdown(self) -> None:
        """
        Release everything. Idempotent and safe from any state, including
        while a connection attempt is in flight.
        """
        with self._lock:
            if self._shutdown_started:
                return
            self._shutdown_started = True
            self._shutdown_event.set()

        logger.info("Shutting down connection manager")
        self._update_status("Shutting down...")
        self.disconnect()

        self._executor.shutdown(wait=False, cancel_futures=True)
        self._relay.stop_polling()

        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=self.config.shutdown_grace_period)
        if not_done:
            logger.warning(f"Cancelling {len(not_done)} network task(s) still running after grace period")
            for future in not_done:
                future.cancel()

        # Closing the transports unblocks any handshake still waiting on I/O
        self._reset_connection(announce=False)
        self._http.close()
        logger.info("Connection manager shutdown complete")

    def __enter__(self) -> "ConnectionManager":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # Background tasks

    def _run_fetch_servers(self) -> List[ServerDescriptor]:
        self._update_status("Fetching server list...")
        try:
            servers = self._discovery.fetch_servers()
        except ProtocolError as e:
            self._report_error("Error fetching server list", f"Status: {e.status_code}")
            servers = []
        except ServiceDiscoveryError as e:
            self._report_error("Error connecting to discovery service", str(e))
            servers = []
        except ChatBridgeError as e:
            self._report_error("Error processing server list", str(e))
            servers = []
        except Exception as e:
            logger.exception("Unexpected error fetching server list")
            self._report_error("Unexpected error fetching server list", str(e))
            servers = []
        else:
            if servers:
                self._update_status("Server list updated. Please select a server.")
            else:
                self._update_status("No active servers found.")

        with self._log_lock:
            self._servers = list(servers)
            self.events.publish(EventType.SERVER_LIST, list(servers))
        return servers

    def _run_connect(self, server: ServerDescriptor, nickname: str) -> bool:
        try:
            # Wait for any teardown still releasing the previous session
            with self._teardown_lock:
                pass

            if server.supports_direct and not self._shutdown_event.is_set():
                self._update_status(f"Trying DIRECT connection to {server.address}...")
                result = self._direct.attempt_handshake(server, self._identity, nickname)
                if result and self._establish(ConnectionMode.DIRECT, server, nickname):
                    return True
                if not result:
                    self._add_message(f"[System] Direct connection failed: {result.reason}")
                    if server.supports_relay:
                        self._update_status("Direct connection failed. Trying Relay...")
                self._direct.close()

            if server.supports_relay and not self._shutdown_event.is_set():
                self._update_status(f"Trying RELAY connection via {self.config.relay_url}...")
                self._add_message("[System] Direct unavailable, requesting relay session...")
                result = self._relay.attempt_handshake(
                    server, self._identity, nickname, cancel_event=self._shutdown_event)
                if result and self._establish(ConnectionMode.RELAY, server, nickname):
                    return True
                if not result:
                    self._add_message(f"[System] Relay connection failed: {result.reason}")

            self._update_status(f"Connection failed to {server.name}")
            self._add_message(f"[Error] Failed to connect to server '{server.name}'.")
            self._reset_connection(announce=False)
            return False
        finally:
            with self._lock:
                self._connecting = False

    def _run_send(self, session_id: int, mode: ConnectionMode,
                  server: ServerDescriptor, text: str) -> bool:
        if not self._is_session_active(session_id, mode):
            self._add_message("[Error] Cannot send message: No active connection.")
            return False

        try:
            if mode is ConnectionMode.DIRECT:
                self._direct.send_line(text)
            else:
                self._relay.send_message(server.uuid, text, RelayMessageType.CHAT)
            return True
        except ChatBridgeError as e:
            logger.error(f"Send over {mode.value} failed: {e}")
            if mode is ConnectionMode.DIRECT:
                self._add_message("[Error] Failed to send message. Connection lost.")
                self._on_session_lost(session_id, f"Direct connection lost: {e}")
            else:
                self._add_message("[Error] Failed to send message via relay.")
                self._on_session_lost(session_id, f"Lost connection to Relay service: {e}")
            return False

    # State transitions

    def _connect_rejection(self, server: Optional[ServerDescriptor],
                           nickname: Optional[str]) -> Optional[tuple]:
        """Return (message, status) explaining why a connect is refused, or None."""
        if self._shutdown_started:
            return "[Error] Client is shutting down.", None
        if self._state.connected:
            return "[System] Already connected. Disconnect first.", None
        if self._connecting:
            return "[System] A connection attempt is already in progress.", None
        if server is None:
            return "[Error] No server selected.", "Connection failed: No server selected."
        if nickname is None or not nickname.strip():
            return "[Error] Nickname cannot be empty.", "Connection failed: Nickname required."
        return None

    def _establish(self, mode: ConnectionMode, server: ServerDescriptor, nickname: str) -> bool:
        """Commit a successful handshake as the live session and start its loop."""
        with self._lock:
            if self._shutdown_event.is_set():
                aborted = True
            else:
                aborted = False
                self._session_id += 1
                session_id = self._session_id
                self._state = ConnectionState(mode=mode, connected=True, server=server, nickname=nickname)

        if aborted:
            logger.info(f"Discarding {mode.value} session established during shutdown")
            if mode is ConnectionMode.DIRECT:
                self._direct.close()
            return False

        self.events.publish(EventType.MODE, mode)
        self.events.publish(EventType.CONNECTION, True)
        self._update_status(f"Connected ({mode.name}) to {server.name}")
        logger.info(f"Connected to {server.name} over {mode.value} as {nickname}")

        if mode is ConnectionMode.DIRECT:
            self._add_message("[System] Direct connection established!")
            self._add_message("[System] Direct message listener started.")
            try:
                self._direct.start_receiving(
                    on_line=self._session_sink(session_id),
                    on_closed=lambda reason: self._on_session_lost(
                        session_id, f"Direct connection lost: {reason}"),
                )
            except TransportIOError as e:
                self._on_session_lost(session_id, f"Direct connection lost: {e}")
        else:
            self._add_message("[System] Relay connection established!")
            self._add_message("[System] Relay message polling started.")
            self._relay.start_polling(
                server,
                on_message=self._session_sink(session_id),
                on_status=self._session_status(session_id),
                on_lost=lambda reason: self._on_session_lost(
                    session_id, f"Lost connection to Relay service: {reason}"),
                is_active=lambda: self._is_session_active(session_id, ConnectionMode.RELAY),
            )
        return True

    def _on_session_lost(self, session_id: int, reason: str) -> None:
        """Escalate an established-session failure to disconnect-and-reset."""
        if self._reset_connection(announce=True, expected_session=session_id, error=reason):
            logger.warning(f"Session {session_id} lost: {reason}")

    def _reset_connection(self, announce: bool, expected_session: Optional[int] = None,
                          error: Optional[str] = None) -> bool:
        """
        Single choke point back to NONE/disconnected.

        Args:
            announce: Publish the disconnect notice.
            expected_session: Only reset if this session is still the live one.
            error: Reason to report before the notice.

        Returns:
            True if a connected session was ended by this call.
        """
        with self._lock:
            was_connected = self._state.connected
            if expected_session is not None and (not was_connected or expected_session != self._session_id):
                return False
            self._session_id += 1
            self._state = ConnectionState(nickname=self._state.nickname)
            self._teardown_lock.acquire()

        try:
            self._relay.stop_polling()
            self._direct.close()
        finally:
            self._teardown_lock.release()

        if error:
            logger.error(error)
            self._add_message(f"[Error] {error}")

        if was_connected:
            self.events.publish(EventType.CONNECTION, False)
            self.events.publish(EventType.MODE, ConnectionMode.NONE)
            if announce:
                self._add_message("[System] Disconnected.")
                self._update_status(f"Disconnected: {error}" if error else "Disconnected.")
        elif announce:
            self._update_status("Disconnected.")
        return was_connected

    def _is_session_active(self, session_id: int, mode: ConnectionMode) -> bool:
        with self._lock:
            return (self._session_id == session_id and self._state.connected
                    and self._state.mode is mode)

    def _session_sink(self, session_id: int) -> Callable[[str], None]:
        """Message callback that drops lines arriving after its session ended."""
        def deliver(text: str) -> None:
            if self._session_id == session_id:
                self._add_message(text)
        return deliver

    def _session_status(self, session_id: int) -> Callable[[str], None]:
        def update(status: str) -> None:
            if self._session_id == session_id:
                self._update_status(status)
        return update

    # Outputs

    def _update_status(self, status: str) -> None:
        with self._log_lock:
            self._status = status
            self.events.publish(EventType.STATUS, status)

    def _add_message(self, message: str) -> None:
        with self._log_lock:
            self._messages.append(message)
            self.events.publish(EventType.MESSAGE, message)

    def _report_error(self, context: str, details: str) -> None:
        logger.error(f"{context}: {details}")
        self._update_status(f"Error: {context}")
        self._add_message(f"[Error] {context}: {details}")

    # Worker pool

    def _submit(self, fn: Callable[..., Any], *args: Any) -> Optional[Future]:
        with self._lock:
            if self._shutdown_started:
                return None
            try:
                future = self._executor.submit(fn, *args)
            except RuntimeError:
                return None
            self._pending.add(future)
        future.add_done_callback(self._task_done)
        return future

    def _task_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Network task failed", exc_info=future.exception())
