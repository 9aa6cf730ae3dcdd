"""
Notification Adapter

Maps connection edges (connected, disconnected, reconnected) to the host's
notification sink. Only edges entering or leaving CONNECTED are reported;
repeated failed reconnect attempts stay silent.
"""

import logging
from typing import Callable, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError, SocketIOError

from .constants import (
    NOTIFY_CONNECTED_MSG, NOTIFY_DISCONNECTED_MSG, NOTIFY_RECONNECTED_MSG,
    NOTIFY_CONNECTED_DURATION, NOTIFY_DISCONNECTED_DURATION, NOTIFY_RECONNECTED_DURATION,
    NOTIFY_EVENT
)

logger = logging.getLogger(__name__)


class NotificationSink:
    """Anything with notify(message, duration)."""

    def notify(self, message: str, duration: int):
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    """Default sink: notifications go to the log."""

    def notify(self, message: str, duration: int):
        logger.info(f"[notify] {message} (duration={duration})")


class CallbackNotificationSink(NotificationSink):
    """Wraps a plain callable, e.g. a front-end's on-screen message hook."""

    def __init__(self, callback: Callable[[str, int], None]):
        self.callback = callback

    def notify(self, message: str, duration: int):
        self.callback(message, duration)


class SocketIONotificationSink(NotificationSink):
    """
    Emits notifications to a Socket.IO backend (e.g. a front-end overlay).

    connect() is the only blocking call and belongs at startup, never on
    the driving loop. After a successful connect the client's own
    reconnection handles drops. notify() only emits while connected and
    otherwise logs the notification instead.
    """

    def __init__(self, url: str, client: Optional[socketio.Client] = None):
        self.url = url
        self.sio = client or socketio.Client(reconnection=True, reconnection_delay=2)

        logger.info(f"SocketIONotificationSink initialized (url={url})")

    def connect(self) -> bool:
        """Connect to the backend once; failure leaves the sink logging only."""
        try:
            logger.info(f"Connecting to notification backend at {self.url}")
            self.sio.connect(self.url, wait_timeout=1)
            return True
        except SocketIOConnectionError as e:
            logger.error(f"Failed to connect to notification backend: {e}")
            logger.warning("Notifications will be logged only")
            return False

    def notify(self, message: str, duration: int):
        if not self.sio.connected:
            logger.info(f"[notify] {message} (duration={duration}, backend offline)")
            return
        try:
            self.sio.emit(NOTIFY_EVENT, {'message': message, 'duration': duration})
        except SocketIOError as e:
            logger.error(f"Failed to emit notification: {e}")

    def close(self):
        if self.sio.connected:
            self.sio.disconnect()


class NotificationAdapter:
    """Translates connection edges into sink calls."""

    def __init__(self, sink: Optional[NotificationSink] = None):
        self.sink = sink or LoggingNotificationSink()

    def _send(self, message: str, duration: int):
        try:
            self.sink.notify(message, duration)
        except Exception as e:
            # A broken sink must never affect the connection state machine
            logger.error(f"Notification sink failed: {e}")

    def on_connected(self):
        self._send(NOTIFY_CONNECTED_MSG, NOTIFY_CONNECTED_DURATION)

    def on_disconnected(self):
        self._send(NOTIFY_DISCONNECTED_MSG, NOTIFY_DISCONNECTED_DURATION)

    def on_reconnected(self):
        self._send(NOTIFY_RECONNECTED_MSG, NOTIFY_RECONNECTED_DURATION)
