"""
Pytest Configuration and Shared Fixtures

Provides common test fixtures and configuration for the test suite.
"""

import json
import logging
import socket
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest
import requests

from chat_bridge.shared.config import ClientConfig
from chat_bridge.shared.models import ClientIdentity, ServerDescriptor


SERVER_UUID = "11111111-2222-3333-4444-555555555555"


def make_response(status_code: int = 200, body: Any = None) -> Mock:
    """
    Build a stand-in for ``requests.Response``.

    Args:
        status_code: HTTP status to report.
        body: Response text; lists and dicts are JSON-encoded.
    """
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    if body is None:
        response.text = ""
    elif isinstance(body, str):
        response.text = body
    else:
        response.text = json.dumps(body)
    return response


def relay_entry(sender: Optional[str], body: str, type: str = "chat",
                recipient: Optional[str] = None) -> Dict[str, Any]:
    """One message object as returned by the relay poll endpoint."""
    return {"sender": sender, "recipient": recipient, "message": body, "type": type}


def control_entry(sender: str, action: str, **extra: Any) -> Dict[str, Any]:
    payload = {"action": action}
    payload.update(extra)
    return relay_entry(sender, json.dumps(payload), type="control")


@pytest.fixture
def identity() -> ClientIdentity:
    """Provide a fixed client identity."""
    return ClientIdentity("client-0000-test")


@pytest.fixture
def sample_server() -> ServerDescriptor:
    """Provide a server that offers both transports."""
    return ServerDescriptor(
        uuid=SERVER_UUID,
        name="Lobby",
        host="127.0.0.1",
        port=5000,
        supported_methods=frozenset({"direct", "relay"}),
    )


@pytest.fixture
def relay_only_server() -> ServerDescriptor:
    return ServerDescriptor(
        uuid=SERVER_UUID,
        name="Relay Lobby",
        host="10.0.0.5",
        port=5000,
        supported_methods=frozenset({"relay"}),
    )


@pytest.fixture
def sample_server_entries() -> List[Dict[str, Any]]:
    """Provide raw discovery entries, valid and invalid."""
    return [
        {"uuid": "a", "name": "Alpha", "host": "10.0.0.1", "port": 5000,
         "supported_methods": ["direct", "relay"]},
        {"uuid": "b", "name": "Beta", "host": "10.0.0.2", "port": "6000",
         "supported_methods": ["relay"]},
        {"uuid": "c", "name": "Gamma", "host": "10.0.0.3", "port": 0,
         "supported_methods": ["direct"]},
        {"uuid": "d", "name": "Delta", "host": "10.0.0.4", "port": 7000,
         "supported_methods": ["carrier-pigeon"]},
        {"name": "No uuid", "host": "10.0.0.5", "port": 7000,
         "supported_methods": ["direct"]},
    ]


@pytest.fixture
def fast_config() -> ClientConfig:
    """Provide a client configuration with short timings for tests."""
    return ClientConfig(
        discovery_url="http://discovery.test",
        relay_url="http://relay.test",
        connect_timeout=1.0,
        handshake_timeout=1.0,
        socket_timeout=0.05,
        receiver_join_timeout=0.5,
        discovery_timeout=1.0,
        relay_request_timeout=1.0,
        relay_handshake_timeout=0.5,
        relay_handshake_poll_interval=0.01,
        relay_poll_interval=0.02,
        poller_join_timeout=0.5,
        worker_pool_size=2,
        shutdown_grace_period=0.5,
    )


@pytest.fixture
def mock_http() -> Mock:
    """Provide a mock ``requests.Session``."""
    return Mock(spec=requests.Session)


@pytest.fixture
def available_port() -> int:
    """Get an available port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


@pytest.fixture
def temp_log_file(tmp_path) -> str:
    """Provide a temporary log file path."""
    return str(tmp_path / "test.log")


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration between tests."""
    root_logger = logging.getLogger()
    level = root_logger.level
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    yield

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)


@pytest.fixture
def http_response():
    """Provide the ``make_response`` factory."""
    return make_response


@pytest.fixture
def relay_messages():
    """Provide factories for relay poll entries."""
    return SimpleNamespace(chat=relay_entry, control=control_entry)
