"""
Application Constants

Defines constants used throughout the chat bridge.
"""

# Protocol constants
MESSAGE_DELIMITER = b'\n'
MESSAGE_ENCODING = 'utf-8'
DIRECT_HANDSHAKE_OK = "OK"

# Supported transport methods as advertised by discovery
class TransportMethod:
    """Transport method identifiers used in discovery responses."""
    DIRECT = "direct"
    RELAY = "relay"

    ALL = frozenset({DIRECT, RELAY})


# Relay message types
class RelayMessageType:
    """Relay message type constants."""
    CHAT = "chat"
    SYSTEM = "system"
    CONTROL = "control"


# Control actions carried inside control messages
class ControlAction:
    """Control action constants for the relay protocol."""
    HANDSHAKE_REQUEST = "HANDSHAKE_REQUEST"
    HANDSHAKE_OK = "HANDSHAKE_OK"
    HANDSHAKE_ERROR = "HANDSHAKE_ERROR"
    CLIENT_DISCONNECT = "CLIENT_DISCONNECT"
    SERVER_SHUTDOWN = "SERVER_SHUTDOWN"


# HTTP endpoints
DEFAULT_DISCOVERY_URL = "https://raquelcloud.x10host.com/api/chatroom-19837/discovery"
DEFAULT_RELAY_URL = "https://raquelcloud.x10host.com/api/chatroom-19837/relay"
DISCOVERY_ENDPOINT = "get_servers.php"
RELAY_SEND_ENDPOINT = "send_message.php"
RELAY_POLL_ENDPOINT = "get_messages.php"
RELAY_ACCEPTED_STATUS = 202
HTTP_OK_STATUS = 200

# Buffer constants
DEFAULT_BUFFER_SIZE = 4096

# Timing constants (seconds)
DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_HANDSHAKE_TIMEOUT = 5.0
DEFAULT_DISCOVERY_TIMEOUT = 10.0
DEFAULT_RELAY_REQUEST_TIMEOUT = 5.0
DEFAULT_RELAY_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_RELAY_HANDSHAKE_POLL_INTERVAL = 0.5
DEFAULT_RELAY_POLL_INTERVAL = 3.0
DEFAULT_SOCKET_TIMEOUT = 1.0
DEFAULT_RECEIVER_JOIN_TIMEOUT = 0.5
DEFAULT_POLLER_JOIN_TIMEOUT = 1.0
DEFAULT_SHUTDOWN_GRACE_PERIOD = 2.0

# Worker pool
DEFAULT_WORKER_POOL_SIZE = 4

# Command constants
QUIT_COMMAND = "/quit"
DISCONNECT_COMMAND = "/disconnect"
REFRESH_COMMAND = "/refresh"
HELP_COMMAND = "/help"

# Log format constants
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
