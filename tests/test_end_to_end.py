"""
End-to-end tests over real loopback sockets.

The state machine runs on a fake clock so health checks and backoff can be
stepped without sleeping; socket deadlines still use real time.
"""

import time
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
from vmu_link.connection_manager import ConnectionManager, ConnectionState
from vmu_link.constants import (
    HEALTH_CHECK_INTERVAL_S, NOTIFY_CONNECTED_MSG, NOTIFY_DISCONNECTED_MSG, NOTIFY_RECONNECTED_MSG
)
from vmu_link.framing import FrameCodec
from vmu_link.message import PeripheralMessage
from vmu_link.notifications import CallbackNotificationSink, NotificationAdapter
from companion import CompanionServer, free_port

S = ConnectionState


class FakeClock:
    def __init__(self, start: float = 500.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class LinkHarness:
    """Manager + recorded states and notifications"""

    def __init__(self, port: int):
        self.clock = FakeClock()
        self.notes = []
        self.states = []
        self.manager = ConnectionManager(
            host='127.0.0.1',
            port=port,
            notifier=NotificationAdapter(CallbackNotificationSink(
                lambda msg, duration: self.notes.append(msg))),
            clock=self.clock,
            connect_timeout=2.0,
            io_timeout=0.5,
            status_interval=0
        )
        self.states.append(self.manager.get_state())

    def enable(self):
        self.manager.set_enabled(True)
        self.states.append(self.manager.get_state())

    def tick(self, advance: float = 0.0):
        self.clock.advance(advance)
        self.manager.update()
        state = self.manager.get_state()
        if state is not self.states[-1]:
            self.states.append(state)
        return state

    def tick_until(self, target: ConnectionState, advance: float, attempts: int = 20) -> bool:
        for _ in range(attempts):
            if self.tick(advance) is target:
                return True
            time.sleep(0.05)
        return False


class TestNoListener:
    """Enabling with nothing listening"""

    def test_enable_without_listener_enters_reconnecting(self):
        link = LinkHarness(free_port())
        try:
            link.enable()
            link.tick()
            link.tick()
            assert link.states == [S.DISABLED, S.DISCONNECTED, S.CONNECTING, S.RECONNECTING]
            assert link.manager.get_backoff_delay() == 1.0
            assert link.notes == []
        finally:
            link.manager.shutdown()


class TestListenerPresent:
    """Enabling with the companion running"""

    def setup_method(self):
        self.server = CompanionServer(reply=True).start()
        self.link = LinkHarness(self.server.port)

    def teardown_method(self):
        self.link.manager.shutdown()
        self.server.stop()

    def test_enable_with_listener_connects(self):
        self.link.enable()
        self.link.tick()
        self.link.tick()
        assert self.link.states == [S.DISABLED, S.DISCONNECTED, S.CONNECTING, S.CONNECTED]
        assert self.link.notes == [NOTIFY_CONNECTED_MSG]
        assert self.server.wait_for_client()

    def test_request_round_trip(self):
        self.link.enable()
        self.link.tick()
        self.link.tick()
        assert self.link.manager.is_connected()

        reply, ok = self.link.manager.request(PeripheralMessage(0x01, 0x20, 0x00))
        assert ok
        assert reply == PeripheralMessage(0x07, 0x00, 0x20)
        assert self.server.wait_for_lines(1) == [b"01 20 00 00"]

    def test_send_then_receive(self):
        self.link.enable()
        self.link.tick()
        self.link.tick()

        msg = PeripheralMessage(0x0C, 0x01, 0x00)
        msg.set_data(b'\x01\x02\x03\x04\x05\x06\x07\x08')
        assert self.link.manager.send(msg)
        reply, ok = self.link.manager.receive()
        assert ok
        assert reply.command == 0x07
        assert self.server.wait_for_lines(1) == [b"0C 01 00 02 01 02 03 04 05 06 07 08"]

    def test_disable_closes_socket(self):
        self.link.enable()
        self.link.tick()
        self.link.tick()
        assert self.server.wait_for_client()
        self.link.manager.set_enabled(False)
        assert self.link.manager.get_state() is S.DISABLED
        assert not self.link.manager.send(PeripheralMessage(0x01, 0x20, 0x00))


class TestListenerRestart:
    """Companion killed and restored while CONNECTED"""

    def test_outage_and_recovery(self):
        server = CompanionServer().start()
        port = server.port
        link = LinkHarness(port)
        try:
            link.enable()
            link.tick()
            link.tick()
            assert link.manager.is_connected()
            assert server.wait_for_client()

            server.stop()
            # Nothing changes until the health check is due
            assert link.tick(HEALTH_CHECK_INTERVAL_S / 2) is S.CONNECTED
            assert link.tick_until(S.RECONNECTING, HEALTH_CHECK_INTERVAL_S)
            assert link.notes == [NOTIFY_CONNECTED_MSG, NOTIFY_DISCONNECTED_MSG]

            # Failed attempts while the companion is down stay silent
            link.tick(link.manager.get_backoff_delay())
            assert link.manager.get_state() is S.RECONNECTING
            assert link.manager.get_backoff_delay() == 2.0

            server = CompanionServer(port=port).start()
            assert link.tick_until(S.CONNECTED, link.manager.get_backoff_delay())
            assert link.notes == [NOTIFY_CONNECTED_MSG, NOTIFY_DISCONNECTED_MSG, NOTIFY_RECONNECTED_MSG]
            assert link.manager.get_backoff_delay() == 1.0
            assert link.manager.get_stats()['reconnects'] == 1
            assert server.wait_for_client()
        finally:
            link.manager.shutdown()
            server.stop()


class TestKnownLine:
    """The documented wire example"""

    def test_known_line_both_directions(self):
        codec = FrameCodec()
        msg = PeripheralMessage(0x07, 0x01, 0x02, 0x01, bytearray([0xDE, 0xAD, 0xBE, 0xEF]))
        line = codec.encode(msg)
        assert line.upper() == b"07 01 02 01 DE AD BE EF\r\n"
        decoded, ok = codec.decode(line)
        assert ok
        assert decoded == msg
