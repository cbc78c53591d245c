"""
Unit tests for chat_bridge.client.connection_manager module.
"""

import threading
import time
from unittest.mock import Mock

import pytest
import requests

from chat_bridge.client.connection_manager import ConnectionManager
from chat_bridge.client.events import EventType
from chat_bridge.client.network import DirectTransport, HandshakeResult, RelayTransport, RelayTransportConfig
from chat_bridge.discovery import DiscoveryClient
from chat_bridge.shared.exceptions import (
    HandshakeRejectedError,
    HandshakeTimeoutError,
    ProtocolError,
    ServiceDiscoveryError,
    TransportIOError,
)
from chat_bridge.shared.models import ConnectionMode, ControlPayload


def wait_for(predicate, timeout=5.0):
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class ManagerTestBase:
    """Builds a manager around mocked transports and records its events."""

    @pytest.fixture(autouse=True)
    def setup_manager(self, fast_config, identity, sample_server, relay_only_server):
        self.server = sample_server
        self.relay_only_server = relay_only_server
        self.discovery = Mock(spec=DiscoveryClient)
        self.direct = Mock(spec=DirectTransport)
        self.relay = self.build_relay(fast_config, identity)
        self.direct.attempt_handshake.return_value = HandshakeResult.failed(
            HandshakeTimeoutError("late"))

        self.manager = ConnectionManager(
            fast_config,
            identity=identity,
            discovery=self.discovery,
            direct=self.direct,
            relay=self.relay,
        )
        self.events = {event_type: [] for event_type in EventType}
        for event_type in EventType:
            self.manager.events.subscribe(
                event_type, lambda event: self.events[event.type].append(event.payload))

        yield

        self.manager.shutdown()

    def build_relay(self, config, identity):
        relay = Mock(spec=RelayTransport)
        relay.attempt_handshake.return_value = HandshakeResult.failed(
            HandshakeTimeoutError("Relay handshake timed out"))
        return relay

    def connect_direct(self, nickname="alice"):
        self.direct.attempt_handshake.return_value = HandshakeResult.accepted()
        assert self.manager.connect(self.server, nickname).result(5) is True

    def connect_relay(self, nickname="alice"):
        self.relay.attempt_handshake.return_value = HandshakeResult.accepted()
        assert self.manager.connect(self.relay_only_server, nickname).result(5) is True

    def count(self, message):
        return self.manager.messages.count(message)


class TestFetchServers(ManagerTestBase):
    """Test server list refresh."""

    def test_servers_published(self):
        self.discovery.fetch_servers.return_value = [self.server]

        assert self.manager.fetch_servers().result(5) == [self.server]

        assert self.manager.servers == [self.server]
        assert self.events[EventType.SERVER_LIST] == [[self.server]]
        assert self.manager.status == "Server list updated. Please select a server."

    def test_no_servers(self):
        self.discovery.fetch_servers.return_value = []

        self.manager.fetch_servers().result(5)

        assert self.manager.status == "No active servers found."

    @pytest.mark.parametrize("error", [
        ServiceDiscoveryError("unreachable"),
        ProtocolError("bad", status_code=500),
    ])
    def test_failure_publishes_empty_list(self, error):
        """Test that a discovery failure clears the list and reports an error."""
        self.discovery.fetch_servers.side_effect = [[self.server], error]
        self.manager.fetch_servers().result(5)

        assert self.manager.fetch_servers().result(5) == []

        assert self.manager.servers == []
        assert self.events[EventType.SERVER_LIST][-1] == []
        assert self.manager.status.startswith("Error:")
        assert self.manager.messages[-1].startswith("[Error]")

    def test_unexpected_error_publishes_empty_list(self):
        """Test that an error outside the client error hierarchy is still reported."""
        self.discovery.fetch_servers.side_effect = RuntimeError("maximum recursion depth exceeded")

        assert self.manager.fetch_servers().result(5) == []

        assert self.events[EventType.SERVER_LIST] == [[]]
        assert self.manager.status == "Error: Unexpected error fetching server list"
        assert self.manager.messages[-1] == (
            "[Error] Unexpected error fetching server list: maximum recursion depth exceeded")


class TestConnect(ManagerTestBase):
    """Test connection attempts and the fallback order."""

    def test_rejects_missing_server(self):
        assert self.manager.connect(None, "alice") is None
        assert self.manager.messages[-1] == "[Error] No server selected."
        self.direct.attempt_handshake.assert_not_called()

    @pytest.mark.parametrize("nickname", [None, "", "   "])
    def test_rejects_blank_nickname(self, nickname):
        assert self.manager.connect(self.server, nickname) is None
        assert self.manager.messages[-1] == "[Error] Nickname cannot be empty."

    def test_direct_success(self, identity):
        self.connect_direct(nickname="  alice  ")

        state = self.manager.state
        assert state.mode is ConnectionMode.DIRECT
        assert state.connected
        assert state.server == self.server
        assert state.nickname == "alice"
        self.direct.attempt_handshake.assert_called_once_with(self.server, identity, "alice")
        self.direct.start_receiving.assert_called_once()
        self.relay.attempt_handshake.assert_not_called()
        assert "[System] Direct connection established!" in self.manager.messages
        assert self.events[EventType.MODE] == [ConnectionMode.DIRECT]
        assert self.events[EventType.CONNECTION] == [True]
        assert self.manager.status == "Connected (DIRECT) to Lobby"

    def test_connect_while_connected_is_rejected(self):
        """Test that a second connect leaves the live session alone."""
        self.connect_direct()
        before = self.manager.state

        assert self.manager.connect(self.server, "bob") is None

        assert self.manager.state == before
        assert self.manager.messages[-1] == "[System] Already connected. Disconnect first."
        assert self.direct.attempt_handshake.call_count == 1

    def test_fallback_to_relay(self, identity):
        self.relay.attempt_handshake.return_value = HandshakeResult.accepted()

        assert self.manager.connect(self.server, "alice").result(5) is True

        assert self.manager.mode is ConnectionMode.RELAY
        assert "[System] Direct connection failed: Connection timed out" in self.manager.messages
        self.direct.close.assert_called()
        self.relay.start_polling.assert_called_once()
        assert self.relay.attempt_handshake.call_args.args[:3] == (self.server, identity, "alice")
        assert self.events[EventType.MODE] == [ConnectionMode.RELAY]

    def test_relay_only_server_skips_direct(self):
        self.connect_relay()

        self.direct.attempt_handshake.assert_not_called()
        assert self.manager.mode is ConnectionMode.RELAY

    def test_all_transports_fail(self):
        self.relay.attempt_handshake.return_value = HandshakeResult.failed(
            HandshakeRejectedError("no", reason="Nickname taken"))

        assert self.manager.connect(self.server, "alice").result(5) is False

        state = self.manager.state
        assert state.mode is ConnectionMode.NONE
        assert not state.connected
        assert state.nickname == "alice"
        assert self.manager.messages[-1] == "[Error] Failed to connect to server 'Lobby'."
        assert ("[System] Relay connection failed: Server rejected the connection: Nickname taken"
                in self.manager.messages)
        assert self.events[EventType.CONNECTION] == []

    def test_reconnect_after_failure(self):
        assert self.manager.connect(self.relay_only_server, "alice").result(5) is False
        self.connect_relay()
        assert self.manager.is_connected


class TestSend(ManagerTestBase):
    """Test outbound messages."""

    def test_not_connected(self):
        assert self.manager.send("hello") is None
        assert self.manager.messages[-1] == "[Error] Not connected."

    @pytest.mark.parametrize("text", [None, "", "  \t"])
    def test_blank_message(self, text):
        self.connect_direct()
        assert self.manager.send(text) is None
        self.direct.send_line.assert_not_called()

    def test_direct_send_not_trimmed(self):
        self.connect_direct()

        assert self.manager.send(" hi there ").result(5) is True

        self.direct.send_line.assert_called_once_with(" hi there ")

    def test_relay_send(self):
        self.connect_relay()

        assert self.manager.send("hello").result(5) is True

        self.relay.send_message.assert_called_once_with(self.relay_only_server.uuid, "hello", "chat")

    def test_direct_send_failure_disconnects(self):
        self.connect_direct()
        self.direct.send_line.side_effect = TransportIOError("Broken pipe")

        assert self.manager.send("hello").result(5) is False

        assert not self.manager.is_connected
        assert self.count("[Error] Failed to send message. Connection lost.") == 1
        assert self.count("[System] Disconnected.") == 1
        assert self.events[EventType.CONNECTION] == [True, False]

    def test_relay_send_failure_disconnects(self):
        self.connect_relay()
        self.relay.send_message.side_effect = ProtocolError("status 500", status_code=500)

        assert self.manager.send("hello").result(5) is False

        assert self.manager.mode is ConnectionMode.NONE
        assert self.count("[Error] Failed to send message via relay.") == 1
        assert self.count("[System] Disconnected.") == 1


class TestDisconnect(ManagerTestBase):
    """Test disconnect and session loss handling."""

    def test_disconnect_when_idle_is_noop(self):
        self.manager.disconnect()
        assert self.count("[System] Disconnected.") == 0

    def test_disconnect_twice(self):
        self.connect_direct()

        self.manager.disconnect()
        self.manager.disconnect()

        state = self.manager.state
        assert state.mode is ConnectionMode.NONE
        assert not state.connected
        assert state.server is None
        assert state.nickname == "alice"
        assert self.count("[System] Disconnected.") == 1
        assert self.manager.status == "Disconnected."
        self.direct.close.assert_called()

    def test_relay_disconnect_notifies_server(self):
        self.connect_relay()

        self.manager.disconnect()

        self.relay.send_control.assert_called_once_with(
            self.relay_only_server.uuid, ControlPayload.client_disconnect())
        self.relay.stop_polling.assert_called()
        assert not self.manager.is_connected

    def test_relay_disconnect_notice_failure_ignored(self):
        self.connect_relay()
        self.relay.send_control.side_effect = TransportIOError("down")

        self.manager.disconnect()

        assert not self.manager.is_connected
        assert self.count("[System] Disconnected.") == 1

    def test_duplicate_loss_reports_one_notice(self):
        """Test that two loss reports for one session yield one notice."""
        self.connect_relay()
        on_lost = self.relay.start_polling.call_args.kwargs["on_lost"]

        on_lost("Relay poll failed (status 500)")
        on_lost("Relay poll failed (status 500)")

        assert not self.manager.is_connected
        assert self.count("[System] Disconnected.") == 1
        assert self.count("[Error] Lost connection to Relay service: Relay poll failed (status 500)") == 1

    def test_stale_relay_status_ignored(self):
        """Test that a status update from an ended relay session is dropped."""
        self.connect_relay()
        on_status = self.relay.start_polling.call_args.kwargs["on_status"]

        on_status("Server is shutting down")
        assert self.manager.status == "Server is shutting down"

        self.manager.disconnect()
        on_status("Server is shutting down")

        assert self.manager.status == "Disconnected."

    def test_stale_loss_report_ignored(self):
        """Test that a report from an earlier session cannot end a newer one."""
        self.connect_direct()
        old_on_closed = self.direct.start_receiving.call_args.kwargs["on_closed"]
        self.manager.disconnect()
        self.connect_direct()

        old_on_closed("Connection closed by server")

        assert self.manager.is_connected
        assert self.count("[System] Disconnected.") == 1

    def test_direct_loss(self):
        self.connect_direct()
        on_closed = self.direct.start_receiving.call_args.kwargs["on_closed"]

        on_closed("Connection closed by server")

        assert not self.manager.is_connected
        assert "[Error] Direct connection lost: Connection closed by server" in self.manager.messages
        assert self.manager.status == "Disconnected: Direct connection lost: Connection closed by server"

    def test_lines_after_session_end_dropped(self):
        self.connect_direct()
        on_line = self.direct.start_receiving.call_args.kwargs["on_line"]

        on_line("hello from server")
        self.manager.disconnect()
        on_line("late line")

        assert "hello from server" in self.manager.messages
        assert "late line" not in self.manager.messages


class TestShutdown(ManagerTestBase):
    """Test shutdown behavior."""

    def test_shutdown_twice(self):
        self.connect_direct()

        self.manager.shutdown()
        self.manager.shutdown()

        assert self.manager.mode is ConnectionMode.NONE
        assert not self.manager.is_connected
        assert self.count("[System] Disconnected.") == 1

    def test_intents_after_shutdown(self):
        self.manager.shutdown()

        assert self.manager.fetch_servers() is None
        assert self.manager.connect(self.server, "alice") is None
        assert self.manager.messages[-1] == "[Error] Client is shutting down."

    def test_context_manager(self, fast_config, identity):
        with ConnectionManager(fast_config, identity=identity, discovery=self.discovery,
                               direct=self.direct, relay=self.relay) as manager:
            assert manager.identity == identity
        assert manager.fetch_servers() is None

    def test_handshake_finishing_after_shutdown_is_discarded(self):
        """Test that an in-flight handshake cannot establish after shutdown."""
        entered = threading.Event()
        release = threading.Event()

        def slow_handshake(*args, **kwargs):
            entered.set()
            release.wait(5)
            return HandshakeResult.accepted()

        self.direct.attempt_handshake.side_effect = slow_handshake
        future = self.manager.connect(self.server, "alice")
        assert entered.wait(5)

        stopper = threading.Thread(target=self.manager.shutdown)
        stopper.start()
        assert wait_for(lambda: self.manager._shutdown_event.is_set())
        release.set()
        stopper.join(5)

        assert future.result(5) is False
        assert not self.manager.is_connected
        self.direct.start_receiving.assert_not_called()
        self.relay.attempt_handshake.assert_not_called()


class TestRelayScenarios(ManagerTestBase):
    """End-to-end orchestrator scenarios over a real RelayTransport with a mocked HTTP session."""

    def build_relay(self, config, identity):
        self.http = Mock(spec=requests.Session)
        self.http.post.return_value = Mock(status_code=202, text="")
        self.poll_responses = []
        self.poll_default = Mock(status_code=200, text="[]")
        self.http.get.side_effect = lambda *a, **k: (
            self.poll_responses.pop(0) if self.poll_responses else self.poll_default)
        return RelayTransport(identity, RelayTransportConfig(
            relay_url=config.relay_url,
            handshake_timeout=config.relay_handshake_timeout,
            handshake_poll_interval=config.relay_handshake_poll_interval,
            poll_interval=config.relay_poll_interval,
            join_timeout=config.poller_join_timeout,
        ), session=self.http)

    def handshake_ok_responses(self, http_response, relay_messages):
        return [
            http_response(200, "[]"),
            http_response(200, [relay_messages.control(self.server.uuid, "HANDSHAKE_OK")]),
        ]

    def test_direct_timeout_then_relay_ok(self, http_response, relay_messages):
        self.poll_responses.extend(self.handshake_ok_responses(http_response, relay_messages))

        assert self.manager.connect(self.server, "alice").result(5) is True

        state = self.manager.state
        assert state.mode is ConnectionMode.RELAY
        assert state.connected
        assert self.manager.status == "Connected (RELAY) to Lobby"

    def test_inbound_relay_chat(self, http_response, relay_messages):
        self.poll_responses.extend(self.handshake_ok_responses(http_response, relay_messages))
        self.poll_responses.append(http_response(200, [relay_messages.chat(self.server.uuid, "bob: hi")]))

        assert self.manager.connect(self.server, "alice").result(5) is True

        assert wait_for(lambda: "bob: hi" in self.manager.messages)

    def test_poll_500_disconnects_once(self, http_response, relay_messages):
        """Test that a failing poll resets to NONE with exactly one notice."""
        self.poll_responses.extend(self.handshake_ok_responses(http_response, relay_messages))
        self.poll_default = http_response(500, "server error")

        assert self.manager.connect(self.server, "alice").result(5) is True
        assert wait_for(lambda: not self.manager.is_connected)
        time.sleep(0.1)

        state = self.manager.state
        assert state.mode is ConnectionMode.NONE
        assert not state.connected
        assert self.count("[System] Disconnected.") == 1
        assert self.events[EventType.CONNECTION] == [True, False]

    def test_deeply_nested_poll_body_keeps_session(self, http_response, relay_messages):
        """Test that an undecodable poll body is reported without ending the session."""
        self.poll_responses.extend(self.handshake_ok_responses(http_response, relay_messages))
        self.poll_default = http_response(200, "[" * 100000)

        assert self.manager.connect(self.server, "alice").result(5) is True
        assert wait_for(lambda: self.count("[Error] Could not parse message from relay.") >= 2)

        state = self.manager.state
        assert state.mode is ConnectionMode.RELAY
        assert state.connected
        assert self.count("[System] Disconnected.") == 0
