"""
Network VMU Bridge - consumer-facing API and standalone driving loop

The input-device layer owns one VmuNetworkBridge, calls update() once per
emulated frame and exchanges peripheral messages through send()/receive()
while connected. No background threads are started; the caller's tick is
the only scheduler.
"""

import argparse
import logging
import signal
import sys
import time
from typing import Callable, Optional, Tuple

from . import config
from .connection_manager import ConnectionManager, ConnectionState, TransportFactory
from .logging_config import setup_logging
from .message import PeripheralMessage
from .notifications import (
    NotificationAdapter, NotificationSink, LoggingNotificationSink, SocketIONotificationSink
)

logger = logging.getLogger(__name__)


class VmuNetworkBridge:
    """
    Owns the ConnectionManager and the notification sink.

    Every operation is safe to call before initialize() or after
    shutdown(); it then reports failure instead of raising.
    """

    def __init__(self, sink: Optional[NotificationSink] = None,
                 transport_factory: Optional[TransportFactory] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._sink = sink
        self._owns_sink = False
        self._transport_factory = transport_factory
        self._clock = clock
        self.manager: Optional[ConnectionManager] = None

    def initialize(self, host_override: Optional[str] = None, port_override: Optional[int] = None):
        """
        Build the connection manager. Starts DISABLED; VMU_NETWORK_ENABLED=true
        enables it straight away.

        Args:
            host_override: Companion host (default from VMU_NETWORK_HOST)
            port_override: Companion port (default from VMU_NETWORK_PORT)
        """
        if self.manager is not None:
            self.shutdown()

        host = host_override if host_override is not None else config.VMU_NETWORK_HOST
        port = port_override if port_override is not None else config.VMU_NETWORK_PORT

        sink = self._sink
        if sink is None:
            if config.NOTIFY_SOCKETIO_URL:
                sink = SocketIONotificationSink(config.NOTIFY_SOCKETIO_URL)
                # Blocking connect happens here, never inside update()
                sink.connect()
            else:
                sink = LoggingNotificationSink()
            self._sink = sink
            self._owns_sink = True

        self.manager = ConnectionManager(
            host=host,
            port=port,
            notifier=NotificationAdapter(sink),
            transport_factory=self._transport_factory,
            clock=self._clock,
            connect_timeout=config.CONNECT_TIMEOUT,
            io_timeout=config.IO_TIMEOUT,
            max_line_length=config.LINE_LIMIT
        )
        logger.info(f"VmuNetworkBridge initialized (target={host}:{port})")

        if config.VMU_NETWORK_ENABLED:
            self.manager.set_enabled(True)

    def set_enabled(self, enabled: bool):
        if self.manager is None:
            logger.warning("set_enabled() called before initialize(), ignoring")
            return
        self.manager.set_enabled(enabled)

    def update(self):
        if self.manager is not None:
            self.manager.update()

    def is_connected(self) -> bool:
        return self.manager is not None and self.manager.is_connected()

    def get_state(self) -> ConnectionState:
        if self.manager is None:
            return ConnectionState.DISABLED
        return self.manager.get_state()

    def send(self, msg: PeripheralMessage) -> bool:
        if self.manager is None:
            return False
        return self.manager.send(msg)

    def receive(self) -> Tuple[Optional[PeripheralMessage], bool]:
        if self.manager is None:
            return None, False
        return self.manager.receive()

    def request(self, msg: PeripheralMessage) -> Tuple[Optional[PeripheralMessage], bool]:
        if self.manager is None:
            return None, False
        return self.manager.request(msg)

    def get_stats(self) -> dict:
        if self.manager is None:
            return {'state': ConnectionState.DISABLED.value, 'enabled': False}
        return self.manager.get_stats()

    def shutdown(self):
        """Tear down the link; the bridge can be initialized again afterwards."""
        if self.manager is not None:
            self.manager.shutdown()
            self.manager = None
        if self._owns_sink:
            if isinstance(self._sink, SocketIONotificationSink):
                self._sink.close()
            self._sink = None
            self._owns_sink = False
        logger.info("VmuNetworkBridge shut down")


bridge: Optional[VmuNetworkBridge] = None
running = True


def signal_handler(sig, frame):
    """Handle shutdown signals"""
    global running
    logger.info(f"Received signal {sig}, shutting down...")
    running = False


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Network VMU link driving loop')
    parser.add_argument('--host', default=None, help='Companion host (default: $VMU_NETWORK_HOST)')
    parser.add_argument('--port', type=int, default=None, help='Companion port (default: $VMU_NETWORK_PORT)')
    parser.add_argument('--log-level', default=config.LOG_LEVEL, help='Logging level')
    parser.add_argument('--log-file', default=config.LOG_FILE, help='Optional log file')
    parser.add_argument('--tick-hz', type=float, default=config.TICK_HZ, help='update() rate')
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point"""
    global bridge, running

    args = parse_args(argv)
    setup_logging("vmu_link", args.log_level, args.log_file)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    bridge = VmuNetworkBridge()
    bridge.initialize(args.host, args.port)
    bridge.set_enabled(True)

    tick = 1.0 / args.tick_hz if args.tick_hz > 0 else 1.0 / 60
    running = True
    try:
        while running:
            bridge.update()
            time.sleep(tick)
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        bridge.shutdown()
        sys.exit(1)

    bridge.shutdown()


if __name__ == '__main__':
    main()
