"""
Tests for the consumer-facing VmuNetworkBridge and its entry point helpers.
"""

import unittest
from unittest import mock
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from vmu_link import bridge as bridge_module
from vmu_link import config
from vmu_link.bridge import VmuNetworkBridge, parse_args
from vmu_link.connection_manager import ConnectionState
from vmu_link.constants import DEFAULT_HOST, DEFAULT_PORT, NOTIFY_CONNECTED_MSG
from vmu_link.message import PeripheralMessage
from vmu_link.notifications import CallbackNotificationSink, LoggingNotificationSink
from vmu_link.transport import TcpTransport
from companion import CompanionServer, free_port


def slow_io_transport(host, port):
    return TcpTransport(host, port, connect_timeout=2.0, io_timeout=0.5)


class TestBridgeBeforeInitialize(unittest.TestCase):
    """Every call is safe without a manager"""

    def setUp(self):
        self.bridge = VmuNetworkBridge()

    def test_calls_report_failure(self):
        msg = PeripheralMessage(0x01, 0x20, 0x00)
        self.bridge.set_enabled(True)
        self.bridge.update()
        self.assertFalse(self.bridge.is_connected())
        self.assertIs(self.bridge.get_state(), ConnectionState.DISABLED)
        self.assertFalse(self.bridge.send(msg))
        self.assertEqual(self.bridge.receive(), (None, False))
        self.assertEqual(self.bridge.request(msg), (None, False))
        self.assertEqual(self.bridge.get_stats()['state'], 'disabled')

    def test_shutdown_without_initialize(self):
        self.bridge.shutdown()
        self.bridge.shutdown()


class TestBridgeInitialize(unittest.TestCase):
    """initialize() wiring"""

    def setUp(self):
        self.bridge = VmuNetworkBridge(sink=LoggingNotificationSink())

    def tearDown(self):
        self.bridge.shutdown()

    def test_defaults_from_config(self):
        with mock.patch.object(config, 'VMU_NETWORK_HOST', DEFAULT_HOST), \
                mock.patch.object(config, 'VMU_NETWORK_PORT', DEFAULT_PORT), \
                mock.patch.object(config, 'VMU_NETWORK_ENABLED', False):
            self.bridge.initialize()
        self.assertEqual(self.bridge.manager.host, DEFAULT_HOST)
        self.assertEqual(self.bridge.manager.port, DEFAULT_PORT)
        self.assertIs(self.bridge.get_state(), ConnectionState.DISABLED)

    def test_overrides(self):
        with mock.patch.object(config, 'VMU_NETWORK_ENABLED', False):
            self.bridge.initialize('10.0.0.5', 40000)
        self.assertEqual(self.bridge.get_stats()['target'], '10.0.0.5:40000')

    def test_enabled_from_environment(self):
        with mock.patch.object(config, 'VMU_NETWORK_ENABLED', True):
            self.bridge.initialize('127.0.0.1', free_port())
        self.assertIs(self.bridge.get_state(), ConnectionState.DISCONNECTED)

    def test_reinitialize_replaces_manager(self):
        with mock.patch.object(config, 'VMU_NETWORK_ENABLED', False):
            self.bridge.initialize('127.0.0.1', 1000)
            first = self.bridge.manager
            self.bridge.initialize('127.0.0.1', 2000)
        self.assertIsNot(self.bridge.manager, first)
        self.assertEqual(self.bridge.manager.port, 2000)

    def test_default_sink_is_logging(self):
        bridge = VmuNetworkBridge()
        with mock.patch.object(config, 'NOTIFY_SOCKETIO_URL', None):
            bridge.initialize('127.0.0.1', free_port())
        try:
            self.assertIsInstance(bridge.manager.notifier.sink, LoggingNotificationSink)
        finally:
            bridge.shutdown()

    def test_socketio_sink_connects_at_initialize_only(self):
        bridge = VmuNetworkBridge()
        with mock.patch.object(config, 'NOTIFY_SOCKETIO_URL', 'http://localhost:5000'), \
                mock.patch.object(config, 'VMU_NETWORK_ENABLED', False), \
                mock.patch.object(bridge_module, 'SocketIONotificationSink') as sink_cls:
            bridge.initialize('127.0.0.1', free_port())
            sink_cls.assert_called_once_with('http://localhost:5000')
            sink_cls.return_value.connect.assert_called_once_with()

            bridge.set_enabled(True)
            for _ in range(3):
                bridge.update()
            sink_cls.return_value.connect.assert_called_once_with()
        bridge.shutdown()


class TestBridgeWithCompanion(unittest.TestCase):
    """Bridge driving a real loopback link"""

    def setUp(self):
        self.server = CompanionServer(reply=True).start()
        self.notes = []
        self.bridge = VmuNetworkBridge(
            sink=CallbackNotificationSink(lambda msg, duration: self.notes.append(msg)),
            transport_factory=slow_io_transport
        )
        with mock.patch.object(config, 'VMU_NETWORK_ENABLED', False):
            self.bridge.initialize('127.0.0.1', self.server.port)

    def tearDown(self):
        self.bridge.shutdown()
        self.server.stop()

    def test_connect_and_request(self):
        self.bridge.set_enabled(True)
        self.bridge.update()
        self.bridge.update()
        self.assertTrue(self.bridge.is_connected())
        self.assertEqual(self.notes, [NOTIFY_CONNECTED_MSG])

        reply, ok = self.bridge.request(PeripheralMessage(0x01, 0x20, 0x00))
        self.assertTrue(ok)
        self.assertEqual(reply.command, 0x07)

    def test_send_receive(self):
        self.bridge.set_enabled(True)
        self.bridge.update()
        self.bridge.update()
        self.assertTrue(self.bridge.send(PeripheralMessage(0x09, 0x01, 0x00)))
        reply, ok = self.bridge.receive()
        self.assertTrue(ok)
        self.assertEqual((reply.dest_address, reply.origin_address), (0x00, 0x01))

    def test_shutdown_is_idempotent(self):
        self.bridge.set_enabled(True)
        self.bridge.update()
        self.bridge.update()
        self.bridge.shutdown()
        self.bridge.shutdown()
        self.assertFalse(self.bridge.is_connected())
        self.assertIsNone(self.bridge.manager)


class TestParseArgs(unittest.TestCase):
    """Entry point argument parsing"""

    def test_defaults(self):
        args = parse_args([])
        self.assertIsNone(args.host)
        self.assertIsNone(args.port)
        self.assertEqual(args.tick_hz, config.TICK_HZ)

    def test_overrides(self):
        args = parse_args(['--host', '192.168.1.20', '--port', '4000', '--log-level', 'DEBUG'])
        self.assertEqual(args.host, '192.168.1.20')
        self.assertEqual(args.port, 4000)
        self.assertEqual(args.log_level, 'DEBUG')

    def test_signal_handler_stops_loop(self):
        bridge_module.running = True
        bridge_module.signal_handler(2, None)
        self.assertFalse(bridge_module.running)


if __name__ == '__main__':
    unittest.main()
