"""
Transport - deadline-bounded byte exchange with the companion process

SAFETY:
- connect() is the only blocking call, bounded by the connect timeout
- All other I/O runs on a non-blocking socket with a millisecond deadline
- One lock serializes liveness check, send and receive so bytes of two messages
  never interleave and a liveness peek never races an application read
"""

import select
import socket
import threading
import time
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple

from .constants import (
    DEFAULT_HOST, DEFAULT_PORT, CONNECT_TIMEOUT_S, IO_TIMEOUT_S,
    MAX_LINE_LENGTH, LINE_TERMINATOR
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def create_server_socket(host: str, port: int, backlog: int = 5, timeout: Optional[float] = None) -> socket.socket:
    """
    Create TCP server socket with SO_REUSEADDR enabled.

    Used by the companion simulator and tests. SO_REUSEADDR allows
    rebinding to a port in TIME_WAIT state after a restart.

    Args:
        host: Host address to bind (e.g., '127.0.0.1')
        port: Port number to bind (0 = ephemeral)
        backlog: Maximum queued connections (default 5)
        timeout: Optional accept timeout in seconds (default None = blocking)

    Returns:
        Configured server socket ready to accept connections

    Raises:
        OSError: If socket creation or binding fails
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

    try:
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise

    if timeout is not None:
        sock.settimeout(timeout)

    logger.debug(f"Server socket created: {host}:{sock.getsockname()[1]} (SO_REUSEADDR enabled)")
    return sock


def configure_tcp_keepalive(sock: socket.socket, idle: int = 5, interval: int = 2, count: int = 3):
    """
    Configure TCP keepalive so the kernel also notices a silently dropped peer.

    Args:
        sock: Socket to configure
        idle: Idle time in seconds before first keepalive packet
        interval: Interval in seconds between keepalive packets
        count: Number of unanswered keepalives before declaring connection dead
    """
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

    # Linux-specific keepalive parameters
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, idle)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, interval)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPCNT, count)
    except (OSError, AttributeError):
        logger.debug("TCP keepalive detailed configuration not supported on this platform")


class Transport(ABC):
    """
    Byte-level link to one remote endpoint.

    Implementations must be thread safe: at most one liveness check, send or
    receive in flight at a time. No method raises on network failure.
    """

    @abstractmethod
    def connect(self) -> bool:
        ...

    @abstractmethod
    def disconnect(self):
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        """Non-destructive liveness check."""

    @abstractmethod
    def send_bytes(self, data: bytes) -> bool:
        ...

    @abstractmethod
    def receive_line(self) -> Tuple[bytes, bool]:
        """Read one terminator-stripped line."""

    @abstractmethod
    def exchange(self, data: bytes) -> Tuple[bytes, bool]:
        """Send data and read the reply line under a single lock hold."""


class TcpTransport(Transport):
    """TCP client transport over a non-blocking socket."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 connect_timeout: float = CONNECT_TIMEOUT_S, io_timeout: float = IO_TIMEOUT_S,
                 max_line_length: int = MAX_LINE_LENGTH, clock: Clock = time.monotonic):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.io_timeout = io_timeout
        self.max_line_length = max_line_length
        self._clock = clock

        self._sock: Optional[socket.socket] = None
        self._connected = False
        self._lock = threading.Lock()

        # Partial line carried over after a receive deadline
        self._pending = bytearray()
        # Set after an overflow; drop bytes up to the next terminator
        self._discarding = False

    def connect(self) -> bool:
        """Open the connection; True if already connected."""
        with self._lock:
            if self._connected:
                return True

            self._close_locked()
            sock = None
            try:
                sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                sock.settimeout(self.connect_timeout)
                sock.connect((self.host, self.port))

                # Low latency for small request/response lines
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                configure_tcp_keepalive(sock)
                sock.setblocking(False)
            except OSError as e:
                logger.debug(f"Connect to {self.host}:{self.port} failed: {e}")
                if sock is not None:
                    sock.close()
                return False

            self._sock = sock
            self._connected = True
            self._pending.clear()
            self._discarding = False
            logger.info(f"Connected to companion at {self.host}:{self.port}")
            return True

    def disconnect(self):
        """Close the socket if open; safe to call repeatedly."""
        with self._lock:
            was_connected = self._connected
            self._close_locked()
        if was_connected:
            logger.info(f"Disconnected from companion at {self.host}:{self.port}")

    def is_connected(self) -> bool:
        """
        Peek one byte without consuming it.

        0 bytes means the peer closed; "would block" means alive with no
        data queued; any other error means the link is gone.
        """
        with self._lock:
            if not self._connected or self._sock is None:
                return False
            try:
                data = self._sock.recv(1, socket.MSG_PEEK)
            except (BlockingIOError, InterruptedError):
                return True
            except OSError as e:
                logger.warning(f"Liveness check failed: {e}")
                self._close_locked()
                return False

            if not data:
                logger.warning("Liveness check: peer closed the connection")
                self._close_locked()
                return False
            return True

    def send_bytes(self, data: bytes) -> bool:
        with self._lock:
            return self._send_locked(data)

    def receive_line(self) -> Tuple[bytes, bool]:
        with self._lock:
            return self._receive_locked()

    def exchange(self, data: bytes) -> Tuple[bytes, bool]:
        with self._lock:
            if not self._send_locked(data):
                return b'', False
            return self._receive_locked()

    def _close_locked(self):
        self._connected = False
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as e:
                logger.debug(f"Error closing socket: {e}")
            self._sock = None
        self._pending.clear()
        self._discarding = False

    def _wait(self, readable: bool, deadline: float) -> bool:
        """Wait for socket readiness until deadline; False once the deadline has passed."""
        remaining = deadline - self._clock()
        if remaining <= 0:
            return False
        try:
            if readable:
                select.select([self._sock], [], [], remaining)
            else:
                select.select([], [self._sock], [], remaining)
        except (OSError, ValueError):
            # Socket closed under us; the next I/O call reports it
            pass
        return True

    def _send_locked(self, data: bytes) -> bool:
        if not self._connected or self._sock is None:
            return False

        view = memoryview(data)
        total = 0
        deadline = self._clock() + self.io_timeout

        while total < len(view):
            try:
                n = self._sock.send(view[total:])
            except (BlockingIOError, InterruptedError):
                if not self._wait(False, deadline):
                    logger.warning(f"Send deadline exceeded ({total}/{len(view)} bytes sent)")
                    self._close_locked()
                    return False
                continue
            except OSError as e:
                logger.warning(f"Send failed: {e}")
                self._close_locked()
                return False

            if n == 0:
                logger.warning("Send failed: peer closed the connection")
                self._close_locked()
                return False
            total += n

        return True

    def _receive_locked(self) -> Tuple[bytes, bool]:
        if not self._connected or self._sock is None:
            return b'', False

        deadline = self._clock() + self.io_timeout
        buf = self._pending

        while True:
            try:
                byte = self._sock.recv(1)
            except (BlockingIOError, InterruptedError):
                if not self._wait(True, deadline):
                    # Keep the partial line; the next call resumes it
                    return b'', False
                continue
            except OSError as e:
                logger.warning(f"Receive failed: {e}")
                self._close_locked()
                return b'', False

            if not byte:
                logger.warning("Receive failed: peer closed the connection")
                self._close_locked()
                return b'', False

            buf += byte
            if buf.endswith(LINE_TERMINATOR):
                if self._discarding:
                    # End of an oversized line; resynchronized
                    self._discarding = False
                    buf.clear()
                    continue
                line = bytes(buf[:-len(LINE_TERMINATOR)])
                buf.clear()
                return line, True

            if len(buf) >= self.max_line_length:
                # Keep the last byte in case it starts the terminator
                del buf[:-1]
                if not self._discarding:
                    logger.warning(f"Line exceeds {self.max_line_length} bytes, discarding to next terminator")
                    self._discarding = True
                    return b'', False
