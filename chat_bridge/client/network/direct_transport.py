"""
Direct Transport

Manages a raw line-based TCP session with a chat server: the identity/nickname
handshake, a blocking receive loop on a dedicated thread, and line sends.
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Optional, List, Tuple

from chat_bridge.shared.constants import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_RECEIVER_JOIN_TIMEOUT,
    DEFAULT_SOCKET_TIMEOUT,
    DIRECT_HANDSHAKE_OK,
    MESSAGE_DELIMITER,
    MESSAGE_ENCODING,
)
from chat_bridge.shared.exceptions import (
    ChatBridgeError,
    ConnectRefusedError,
    ConnectTimeoutError,
    HandshakeRejectedError,
    HandshakeTimeoutError,
    TransportIOError,
)
from chat_bridge.shared.models import ClientIdentity, ServerDescriptor
from chat_bridge.shared.protocols import LineCallback, LostCallback
from .handshake import HandshakeResult


logger = logging.getLogger(__name__)


@dataclass
class DirectTransportConfig:
    """Configuration for the direct socket transport."""
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    socket_timeout: float = DEFAULT_SOCKET_TIMEOUT
    buffer_size: int = DEFAULT_BUFFER_SIZE
    join_timeout: float = DEFAULT_RECEIVER_JOIN_TIMEOUT
    enable_keepalive: bool = True


class DirectTransport:
    """
    Line-oriented TCP session with a chat server.

    One instance owns at most one socket at a time. The socket and the
    receive thread are private to the transport; callers interact through
    ``attempt_handshake``, ``start_receiving``, ``send_line`` and ``close``.
    """

    def __init__(self, config: Optional[DirectTransportConfig] = None) -> None:
        """
        Initialize the transport.

        Args:
            config: Transport configuration.
        """
        self.config = config or DirectTransportConfig()
        self._socket: Optional[socket.socket] = None
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._receiver_thread: Optional[threading.Thread] = None
        self._receive_buffer = b""

    def attempt_handshake(self, server: ServerDescriptor, identity: ClientIdentity,
                          nickname: str, timeout: Optional[float] = None) -> HandshakeResult:
        """
        Open a connection and prove identity to the server.

        Writes the identity line and the nickname line, then waits for a single
        reply line. Only the exact token ``OK`` is an acceptance.

        Args:
            server: Server to connect to.
            identity: Local client identity, sent as the first line.
            nickname: Nickname, sent as the second line.
            timeout: Seconds to wait for the reply line.

        Returns:
            HandshakeResult; on failure the socket has already been released.
        """
        if timeout is None:
            timeout = self.config.handshake_timeout

        # Any leftover session is torn down before a new one starts
        self.close()

        try:
            sock = self._open_socket(server)
            with self._lock:
                self._socket = sock
                self._stop_event = threading.Event()
                self._receive_buffer = b""

            self._write(sock, f"{identity}\n{nickname}\n".encode(MESSAGE_ENCODING))
            response = self._read_handshake_line(sock, timeout)
        except ChatBridgeError as e:
            logger.warning(f"Direct handshake with {server.address} failed: {e}")
            self.close()
            return HandshakeResult.failed(e)

        if response != DIRECT_HANDSHAKE_OK:
            logger.warning(f"Server {server.address} rejected direct connection: {response!r}")
            self.close()
            return HandshakeResult.failed(HandshakeRejectedError(
                "Server rejected direct connection",
                reason=response if response else "No response",
            ))

        try:
            with self._lock:
                if self._socket is not sock:
                    raise OSError("connection closed during handshake")
                sock.settimeout(self.config.socket_timeout)
        except OSError as e:
            self.close()
            return HandshakeResult.failed(TransportIOError(str(e), operation="handshake"))

        logger.info(f"Direct handshake with {server.address} accepted")
        return HandshakeResult.accepted()

    def start_receiving(self, on_line: LineCallback, on_closed: LostCallback) -> None:
        """
        Start the receive loop on a dedicated thread.

        Args:
            on_line: Called with every received line, in arrival order.
            on_closed: Called once with a reason if the loop ends without
                ``close()`` having been requested.

        Raises:
            TransportIOError: If no session is open.
        """
        with self._lock:
            sock = self._socket
            if sock is None:
                raise TransportIOError("Not connected to server", operation="receive")
            stop_event = self._stop_event
            pending, self._receive_buffer = self._receive_buffer, b""
            self._receiver_thread = threading.Thread(
                target=self._receive_loop,
                args=(sock, stop_event, pending, on_line, on_closed),
                name="Direct-Receiver-Thread",
                daemon=True,
            )
            self._receiver_thread.start()
        logger.debug("Direct receiver thread started")

    def send_line(self, text: str) -> None:
        """
        Send one newline-terminated line.

        Args:
            text: Line content without the terminator.

        Raises:
            TransportIOError: If not connected or the write fails.
        """
        with self._send_lock:
            sock = self._socket
            if sock is None:
                raise TransportIOError("Not connected to server", operation="send")
            self._write(sock, text.encode(MESSAGE_ENCODING) + MESSAGE_DELIMITER)

    def close(self) -> None:
        """
        Stop the receive loop and release the socket.

        Safe to call repeatedly, with nothing open, or from the receive
        thread itself (the join is skipped in that case).
        """
        with self._lock:
            sock = self._socket
            thread = self._receiver_thread
            stop_event = self._stop_event
            self._socket = None
            self._receiver_thread = None
            self._receive_buffer = b""

        stop_event.set()

        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # Not connected or already shut down

        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.config.join_timeout)
            if thread.is_alive():
                logger.warning("Direct receiver thread did not stop in time")

        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass  # Socket already closed
            logger.debug("Direct connection resources closed")

    def is_open(self) -> bool:
        """Check whether a socket is currently held."""
        return self._socket is not None

    def _open_socket(self, server: ServerDescriptor) -> socket.socket:
        """Create and connect a TCP socket, mapping failures to transport errors."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if self.config.enable_keepalive:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            sock.settimeout(self.config.connect_timeout)
            sock.connect((server.host, server.port))
            return sock
        except socket.timeout as e:
            sock.close()
            raise ConnectTimeoutError(f"Connection to {server.address} timed out",
                                      operation="connect", address=server.address) from e
        except ConnectionRefusedError as e:
            sock.close()
            raise ConnectRefusedError(f"Connection to {server.address} refused",
                                      operation="connect", address=server.address) from e
        except OSError as e:
            sock.close()
            raise TransportIOError(f"Could not connect to {server.address}: {e}",
                                   operation="connect", address=server.address) from e

    def _write(self, sock: socket.socket, data: bytes) -> None:
        try:
            sock.sendall(data)
        except OSError as e:
            raise TransportIOError(f"Failed to send data: {e}", operation="send") from e

    def _read_handshake_line(self, sock: socket.socket, timeout: float) -> str:
        """Read exactly one line within ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        buffer = b""

        while MESSAGE_DELIMITER not in buffer:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HandshakeTimeoutError("Timed out waiting for handshake reply")
            try:
                sock.settimeout(remaining)
                data = sock.recv(self.config.buffer_size)
            except socket.timeout as e:
                raise HandshakeTimeoutError("Timed out waiting for handshake reply") from e
            except OSError as e:
                raise TransportIOError(f"Failed to receive data: {e}", operation="handshake") from e
            if not data:
                # Connection closed before any answer
                return ""
            buffer += data

        line, rest = buffer.split(MESSAGE_DELIMITER, 1)
        with self._lock:
            self._receive_buffer = rest
        return _decode_line(line)

    def _receive_loop(self, sock: socket.socket, stop_event: threading.Event, pending: bytes,
                      on_line: LineCallback, on_closed: LostCallback) -> None:
        """Read lines until the socket closes or ``stop_event`` is set."""
        reason = "Connection closed by server"
        buffer = pending

        try:
            while not stop_event.is_set():
                lines, buffer = _split_lines(buffer)
                for line in lines:
                    if stop_event.is_set():
                        return
                    on_line(line)

                try:
                    data = sock.recv(self.config.buffer_size)
                except socket.timeout:
                    continue
                except OSError as e:
                    if not stop_event.is_set():
                        reason = f"Error reading from server: {e}"
                    break

                if not data:
                    break
                buffer += data
        except Exception as e:
            logger.exception("Unexpected error in direct receiver")
            reason = f"Unexpected error reading: {e}"
        finally:
            logger.debug("Direct receiver thread exiting")
            if not stop_event.is_set():
                logger.warning(f"Direct receiver terminated unexpectedly: {reason}")
                on_closed(reason)


def _split_lines(buffer: bytes) -> Tuple[List[str], bytes]:
    """Split complete lines off the front of a byte buffer."""
    lines = []
    while MESSAGE_DELIMITER in buffer:
        line, buffer = buffer.split(MESSAGE_DELIMITER, 1)
        lines.append(_decode_line(line))
    return lines, buffer


def _decode_line(data: bytes) -> str:
    text = data.decode(MESSAGE_ENCODING, errors='replace')
    return text[:-1] if text.endswith('\r') else text
