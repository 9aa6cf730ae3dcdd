"""
Connection Management for the network VMU link

Provides:
- ConnectionState: the link lifecycle (DISABLED ... RECONNECTING)
- ExponentialBackoff: reconnect delay, doubling on failure up to a cap
- HealthCheckClock: throttles liveness checks while CONNECTED
- ConnectionManager: polled state machine that owns the Transport

update() never blocks beyond the bounds already enforced by the
Transport (connect timeout, millisecond I/O deadline). The blocking
connect runs without the manager lock, so producers and set_enabled()
on other threads never wait for it.
"""

import json
import threading
import time
import logging
from enum import Enum
from typing import Callable, NamedTuple, Optional, Tuple

from .config import is_valid_target
from .constants import (
    DEFAULT_HOST, DEFAULT_PORT, CONNECT_TIMEOUT_S, IO_TIMEOUT_S, MAX_LINE_LENGTH,
    BACKOFF_INITIAL_S, BACKOFF_MULTIPLIER, BACKOFF_MAX_S,
    HEALTH_CHECK_INTERVAL_S, STATUS_LOG_INTERVAL_S
)
from .framing import FrameCodec, FramingError
from .message import PeripheralMessage
from .notifications import NotificationAdapter
from .transport import Transport, TcpTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, int], Transport]


class _ConnectAttempt(NamedTuple):
    generation: int
    from_state: "ConnectionState"
    host: str
    port: int


class ConnectionState(Enum):
    """Link lifecycle states."""
    DISABLED = "disabled"          # Feature turned off
    DISCONNECTED = "disconnected"  # Enabled, no connect attempted yet
    CONNECTING = "connecting"      # First connect attempt
    CONNECTED = "connected"        # Connected and passing health checks
    RECONNECTING = "reconnecting"  # Waiting out backoff between attempts


class ExponentialBackoff:
    """
    Exponential backoff delay calculator.

    - initial: Starting delay (default 1.0s)
    - multiplier: Delay multiplier on each failure (default 2.0)
    - max_delay: Maximum delay cap (default 30.0s)

    Delays after successive failures: 1s, 2s, 4s, 8s, 16s, 30s, 30s ...
    """

    def __init__(self, initial: float = BACKOFF_INITIAL_S, multiplier: float = BACKOFF_MULTIPLIER,
                 max_delay: float = BACKOFF_MAX_S):
        """
        Initialize exponential backoff.

        Args:
            initial: Initial delay in seconds
            multiplier: Delay multiplier on each failure
            max_delay: Maximum delay cap in seconds
        """
        self.initial = initial
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.current_delay = initial

    def next_delay(self) -> float:
        """
        Advance after a failed attempt.

        Returns:
            New delay in seconds to wait before the next attempt
        """
        self.current_delay = min(self.current_delay * self.multiplier, self.max_delay)
        return self.current_delay

    def reset(self):
        """Reset backoff to initial delay (call on successful connection)."""
        self.current_delay = self.initial


class HealthCheckClock:
    """Allows one liveness check per interval regardless of tick rate."""

    def __init__(self, interval: float = HEALTH_CHECK_INTERVAL_S):
        self.interval = interval
        self.last_checked_at = 0.0

    def mark(self, now: float):
        self.last_checked_at = now

    def due(self, now: float) -> bool:
        return now - self.last_checked_at >= self.interval


class ConnectionManager:
    """
    Polled connection state machine over one Transport.

    Owns the Transport: a fresh one is created for every connect attempt
    and it is torn down synchronously on disable. Thread-safe; update()
    and set_enabled() may be called from any thread, and send()/receive()
    may run on a producer thread while another thread ticks update().

    A connect attempt is claimed under the lock, performed without it and
    applied under it again. Disabling or retargeting in the meantime voids
    the attempt and the new socket is closed.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        notifier: Optional[NotificationAdapter] = None,
        transport_factory: Optional[TransportFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        codec: Optional[FrameCodec] = None,
        connect_timeout: float = CONNECT_TIMEOUT_S,
        io_timeout: float = IO_TIMEOUT_S,
        max_line_length: int = MAX_LINE_LENGTH,
        health_check_interval: float = HEALTH_CHECK_INTERVAL_S,
        status_interval: float = STATUS_LOG_INTERVAL_S,
        backoff: Optional[ExponentialBackoff] = None
    ):
        """
        Initialize connection manager (starts DISABLED).

        Args:
            host: Companion process host
            port: Companion process port
            notifier: Receives connected/disconnected/reconnected edges
            transport_factory: Builds a Transport for (host, port); defaults to TcpTransport
            clock: Monotonic time source for backoff and health-check timing, injectable for tests
            codec: Line codec (default FrameCodec sized to max_line_length)
            connect_timeout: Blocking connect bound in seconds
            io_timeout: send/receive deadline in seconds
            max_line_length: Longest accepted reply line
            health_check_interval: Seconds between liveness checks while CONNECTED
            status_interval: Seconds between JSON status log lines (0 disables)
            backoff: Reconnect delay policy (default 1s doubling to 30s)
        """
        self.host = host
        self.port = port
        self.notifier = notifier or NotificationAdapter()
        self.codec = codec or FrameCodec(max_line_length)
        self.connect_timeout = connect_timeout
        self.io_timeout = io_timeout
        self.max_line_length = max_line_length
        self.status_interval = status_interval
        self._clock = clock
        self._transport_factory = transport_factory or self._default_transport

        self._lock = threading.RLock()
        self._enabled = False
        self._state = ConnectionState.DISABLED
        self._state_entered_at = clock()
        self._transport: Optional[Transport] = None
        self._backoff = backoff or ExponentialBackoff()
        self._health = HealthCheckClock(health_check_interval)
        self._last_status_log = clock()
        self._consecutive_failures = 0

        # Set while a connect runs unlocked; bumped generation voids its result
        self._connecting = False
        self._generation = 0

        # Statistics
        self.messages_sent = 0
        self.messages_received = 0
        self.messages_failed = 0
        self.connect_attempts = 0
        self.reconnects = 0

        logger.info(f"ConnectionManager initialized for {host}:{port}")

    def _default_transport(self, host: str, port: int) -> Transport:
        # Socket deadlines always run on the real monotonic clock
        return TcpTransport(host, port, connect_timeout=self.connect_timeout,
                            io_timeout=self.io_timeout, max_line_length=self.max_line_length)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def configure(self, host: str, port: int):
        """
        Retarget the link. Takes effect on the next connect attempt.

        An invalid target parks the manager in DISABLED until a valid one
        is configured.
        """
        with self._lock:
            if (host, port) != (self.host, self.port):
                self._generation += 1
            self.host = host
            self.port = port
            if not is_valid_target(host, port):
                logger.error(f"Invalid companion target {host!r}:{port!r}, link stays disabled")
                if self._state is not ConnectionState.DISABLED:
                    self._destroy_transport()
                    self._enter_state(ConnectionState.DISABLED)
                return
            logger.info(f"Companion target set to {host}:{port}")
            if self._enabled and self._state is ConnectionState.DISABLED:
                self._enter_state(ConnectionState.DISCONNECTED)

    def set_enabled(self, enable: bool):
        """Turn the feature on or off. Idempotent."""
        with self._lock:
            self._enabled = bool(enable)
            if self._enabled:
                if self._state is ConnectionState.DISABLED:
                    if not is_valid_target(self.host, self.port):
                        logger.error(f"Cannot enable: invalid companion target {self.host!r}:{self.port!r}")
                        return
                    self._enter_state(ConnectionState.DISCONNECTED)
            elif self._state is not ConnectionState.DISABLED:
                self._generation += 1
                self._destroy_transport()
                self._enter_state(ConnectionState.DISABLED)

    def update(self):
        """Advance the state machine by at most one transition."""
        notify: Optional[Callable[[], None]] = None
        attempt: Optional[_ConnectAttempt] = None

        with self._lock:
            if self._connecting:
                # Another thread's connect is in flight; its result is the transition
                return

            now = self._clock()
            state = self._state

            if state is ConnectionState.DISABLED:
                if self._enabled and is_valid_target(self.host, self.port):
                    self._enter_state(ConnectionState.DISCONNECTED)

            elif not self._enabled:
                self._destroy_transport()
                self._enter_state(ConnectionState.DISABLED)

            elif state is ConnectionState.DISCONNECTED:
                self._enter_state(ConnectionState.CONNECTING)

            elif state is ConnectionState.CONNECTING:
                attempt = self._begin_attempt()

            elif state is ConnectionState.CONNECTED:
                if self._health.due(now):
                    self._health.mark(now)
                    if not self._is_connection_healthy():
                        logger.warning("Health check failed, connection lost")
                        self._destroy_transport()
                        self._enter_state(ConnectionState.RECONNECTING)
                        notify = self.notifier.on_disconnected

            elif state is ConnectionState.RECONNECTING:
                if now - self._state_entered_at >= self._backoff.current_delay:
                    attempt = self._begin_attempt()

            self._maybe_log_status(now)

        if attempt is not None:
            notify = self._finish_attempt(attempt)

        # Outside the lock so a slow sink cannot stall producers
        if notify is not None:
            notify()

    def shutdown(self):
        """Disable and release the transport."""
        self.set_enabled(False)
        logger.info(f"ConnectionManager shut down (sent={self.messages_sent}, "
                    f"received={self.messages_received}, failed={self.messages_failed})")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def is_enabled(self) -> bool:
        return self._enabled

    def get_state(self) -> ConnectionState:
        return self._state

    def get_backoff_delay(self) -> float:
        return self._backoff.current_delay

    def get_time_in_state(self) -> float:
        return self._clock() - self._state_entered_at

    def get_stats(self) -> dict:
        """Get link statistics"""
        with self._lock:
            return {
                'state': self._state.value,
                'enabled': self._enabled,
                'target': f"{self.host}:{self.port}",
                'messages_sent': self.messages_sent,
                'messages_received': self.messages_received,
                'messages_failed': self.messages_failed,
                'connect_attempts': self.connect_attempts,
                'reconnects': self.reconnects,
                'backoff_s': self._backoff.current_delay
            }

    # ------------------------------------------------------------------
    # Message exchange
    # ------------------------------------------------------------------

    def send(self, msg: PeripheralMessage) -> bool:
        """
        Send one message to the companion.

        Fails immediately when not CONNECTED. A transport failure is
        reported to the caller only; the next health check reconciles
        the state machine.
        """
        transport = self._connected_transport()
        if transport is None:
            return False

        line = self._encode(msg)
        if line is None:
            return False

        if transport.send_bytes(line):
            self._count(sent=1)
            return True
        logger.debug(f"Send failed: {msg!r}")
        self._count(failed=1)
        return False

    def receive(self) -> Tuple[Optional[PeripheralMessage], bool]:
        """
        Receive one message from the companion.

        Returns:
            (message, True) on success, (None, False) otherwise
        """
        transport = self._connected_transport()
        if transport is None:
            return None, False

        line, ok = transport.receive_line()
        return self._decode(line, ok)

    def request(self, msg: PeripheralMessage) -> Tuple[Optional[PeripheralMessage], bool]:
        """
        Send a message and wait for its reply as one serialized exchange.

        Returns:
            (reply, True) on success, (None, False) otherwise
        """
        transport = self._connected_transport()
        if transport is None:
            return None, False

        line = self._encode(msg)
        if line is None:
            return None, False

        reply, ok = transport.exchange(line)
        if ok:
            self._count(sent=1)
        return self._decode(reply, ok)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _connected_transport(self) -> Optional[Transport]:
        with self._lock:
            if self._state is not ConnectionState.CONNECTED:
                return None
            return self._transport

    def _encode(self, msg: PeripheralMessage) -> Optional[bytes]:
        try:
            return self.codec.encode(msg)
        except FramingError as e:
            logger.warning(f"Cannot encode message: {e}")
            self._count(failed=1)
            return None

    def _decode(self, line: bytes, ok: bool) -> Tuple[Optional[PeripheralMessage], bool]:
        if not ok:
            self._count(failed=1)
            return None, False
        msg, ok = self.codec.decode(line)
        if ok:
            self._count(received=1)
        else:
            self._count(failed=1)
        return msg, ok

    def _count(self, sent: int = 0, received: int = 0, failed: int = 0):
        with self._lock:
            self.messages_sent += sent
            self.messages_received += received
            self.messages_failed += failed

    def _enter_state(self, new_state: ConnectionState):
        old_state = self._state
        self._state = new_state
        self._state_entered_at = self._clock()

        if new_state is ConnectionState.CONNECTED:
            self._health.mark(self._state_entered_at)

        if old_state is new_state:
            logger.debug(f"Re-entered {new_state.name} (backoff={self._backoff.current_delay:.0f}s)")
        else:
            logger.info(f"Link state: {old_state.name} -> {new_state.name}")

    def _begin_attempt(self) -> _ConnectAttempt:
        """Claim the connect slot. Called with the lock held."""
        self._destroy_transport()
        self.connect_attempts += 1
        self._connecting = True
        return _ConnectAttempt(self._generation, self._state, self.host, self.port)

    def _finish_attempt(self, attempt: _ConnectAttempt) -> Optional[Callable[[], None]]:
        """
        Connect a fresh transport without the lock, then apply the result.

        Returns:
            Notification to send for the resulting edge, if any
        """
        try:
            transport = self._transport_factory(attempt.host, attempt.port)
            connected = transport.connect()
        except Exception:
            with self._lock:
                self._connecting = False
            raise

        with self._lock:
            self._connecting = False

            if attempt.generation != self._generation:
                # Disabled or retargeted while connecting
                transport.disconnect()
                logger.info(f"Discarding connection to {attempt.host}:{attempt.port} made stale during connect")
                return None

            if connected:
                self._transport = transport
                self._consecutive_failures = 0
                self._backoff.reset()
                self._enter_state(ConnectionState.CONNECTED)
                if attempt.from_state is ConnectionState.RECONNECTING:
                    self.reconnects += 1
                    return self.notifier.on_reconnected
                return self.notifier.on_connected

            transport.disconnect()
            self._log_connect_failure(attempt.host, attempt.port)
            if attempt.from_state is ConnectionState.RECONNECTING:
                delay = self._backoff.next_delay()
                logger.debug(f"Reconnect failed, next attempt in {delay:.0f}s")
            self._enter_state(ConnectionState.RECONNECTING)
            return None

    def _log_connect_failure(self, host: str, port: int):
        self._consecutive_failures += 1
        if self._consecutive_failures == 1:
            logger.warning(f"Companion not reachable at {host}:{port}, will retry with backoff")
        else:
            logger.debug(f"Connect attempt {self._consecutive_failures} to {host}:{port} failed")

    def _is_connection_healthy(self) -> bool:
        return self._transport is not None and self._transport.is_connected()

    def _destroy_transport(self):
        if self._transport is not None:
            self._transport.disconnect()
            self._transport = None

    def _maybe_log_status(self, now: float):
        if self.status_interval <= 0 or now - self._last_status_log < self.status_interval:
            return
        self._last_status_log = now
        status = {"event": "vmu_link_status"}
        status.update(self.get_stats())
        logger.info(json.dumps(status))
