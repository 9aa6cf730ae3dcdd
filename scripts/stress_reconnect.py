#!/usr/bin/env python3
"""
Reconnect Stress Testing for the network VMU link

Tests rapid connect/disconnect scenarios to verify:
- The link returns to CONNECTED after every companion restart
- Exactly one disconnected/reconnected notification per outage
- No socket leaks across cycles

Usage:
    python scripts/stress_reconnect.py --test companion_restart --cycles 20
    python scripts/stress_reconnect.py --test rapid_toggle --cycles 50
    python scripts/stress_reconnect.py --all

Requires the stress extra: pip install -e .[stress]
"""

import argparse
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, List

import psutil

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
from vmu_link.connection_manager import ConnectionManager, ConnectionState, ExponentialBackoff
from vmu_link.logging_config import setup_logging
from vmu_link.message import PeripheralMessage
from vmu_link.notifications import CallbackNotificationSink, NotificationAdapter
from companion_sim import CompanionSimulator, CMD_DEVICE_REQUEST, CMD_DEVICE_INFO


@dataclass
class TestResult:
    """Result of a reconnect stress test"""
    test_name: str
    cycles_completed: int
    cycles_total: int
    passed: bool
    duration_s: float
    errors: List[str]
    sockets_leaked: int = 0


@dataclass
class NotificationLog:
    messages: List[str] = field(default_factory=list)

    def __call__(self, message: str, duration: int):
        self.messages.append(message)


class ReconnectStressTester:
    """Runs reconnect stress tests against an in-process companion simulator"""

    def __init__(self, port: int = 15393):
        self.port = port
        self.sim = None
        self.notifications = NotificationLog()
        self.manager = ConnectionManager(
            host='127.0.0.1',
            port=port,
            notifier=NotificationAdapter(CallbackNotificationSink(self.notifications)),
            io_timeout=0.25,
            health_check_interval=0.5,
            status_interval=0,
            # Short backoff so cycles stay fast
            backoff=ExponentialBackoff(initial=0.1, max_delay=0.5)
        )

    def count_link_sockets(self) -> int:
        """Count this process's TCP sockets connected to the companion port"""
        proc = psutil.Process()
        if hasattr(proc, 'net_connections'):
            conns = proc.net_connections(kind='tcp')
        else:
            conns = proc.connections(kind='tcp')
        return sum(1 for c in conns if c.raddr and c.raddr.port == self.port)

    def start_companion(self):
        self.sim = CompanionSimulator('127.0.0.1', self.port)
        self.sim.start()

    def stop_companion(self):
        if self.sim:
            self.sim.stop()
            self.sim = None

    def tick_until(self, predicate: Callable[[], bool], timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            self.manager.update()
            if predicate():
                return True
            time.sleep(0.01)
        return False

    def stop_all(self):
        self.manager.shutdown()
        self.stop_companion()

    def test_companion_restart(self, cycles: int = 20) -> TestResult:
        """
        Restart the companion while the link keeps ticking.

        Steps:
        1. Start companion, wait for CONNECTED, run one request
        2. Stop companion, wait for RECONNECTING
        3. Repeat for N cycles
        """
        print(f"\n{'='*60}")
        print(f"Test: Companion Restart ({cycles} cycles)")
        print(f"{'='*60}\n")

        start_time = time.time()
        errors = []
        sockets_start = self.count_link_sockets()
        self.manager.set_enabled(True)

        for cycle in range(cycles):
            print(f"Cycle {cycle + 1}/{cycles}...", end=' ')
            try:
                self.start_companion()

                if not self.tick_until(self.manager.is_connected, timeout=5.0):
                    errors.append(f"Cycle {cycle + 1}: never reached CONNECTED")
                    print("FAIL (connect)")
                    self.stop_companion()
                    continue

                reply, ok = self.manager.request(PeripheralMessage(CMD_DEVICE_REQUEST, 0x01, 0x00))
                if not ok or reply.command != CMD_DEVICE_INFO:
                    errors.append(f"Cycle {cycle + 1}: request failed")
                    print("FAIL (request)")

                self.stop_companion()

                if not self.tick_until(
                        lambda: self.manager.get_state() is ConnectionState.RECONNECTING, timeout=5.0):
                    errors.append(f"Cycle {cycle + 1}: outage not detected")
                    print("FAIL (health check)")
                    continue

                print("OK")

            except Exception as e:
                errors.append(f"Cycle {cycle + 1}: {e}")
                print(f"ERROR: {e}")
                self.stop_companion()

        self.manager.set_enabled(False)
        sockets_leaked = self.count_link_sockets() - sockets_start

        disconnects = self.notifications.messages.count("Network VMU disconnected - retrying")
        if not errors and disconnects != cycles:
            errors.append(f"Expected {cycles} disconnect notifications, got {disconnects}")

        duration = time.time() - start_time
        passed = len(errors) == 0 and sockets_leaked <= 0

        print(f"\nLink sockets: leaked={sockets_leaked}, notifications={len(self.notifications.messages)}")

        return TestResult("companion_restart", cycles - len(errors), cycles,
                          passed, duration, errors, sockets_leaked)

    def test_rapid_toggle(self, cycles: int = 50) -> TestResult:
        """
        Toggle the feature on and off while connected.

        Disable must release the socket synchronously every time.
        """
        print(f"\n{'='*60}")
        print(f"Test: Rapid Enable/Disable ({cycles} cycles)")
        print(f"{'='*60}\n")

        start_time = time.time()
        errors = []
        self.start_companion()
        sockets_start = self.count_link_sockets()

        for cycle in range(cycles):
            self.manager.set_enabled(True)
            if not self.tick_until(self.manager.is_connected, timeout=5.0):
                errors.append(f"Cycle {cycle + 1}: never reached CONNECTED")
            self.manager.set_enabled(False)
            if self.manager.get_state() is not ConnectionState.DISABLED:
                errors.append(f"Cycle {cycle + 1}: not DISABLED after disable")

        sockets_leaked = self.count_link_sockets() - sockets_start
        self.stop_companion()

        duration = time.time() - start_time
        passed = len(errors) == 0 and sockets_leaked <= 0

        print(f"Completed {cycles} toggles, leaked sockets={sockets_leaked}")

        return TestResult("rapid_toggle", cycles - len(errors), cycles,
                          passed, duration, errors, sockets_leaked)


def main():
    parser = argparse.ArgumentParser(
        description='Reconnect stress testing for the network VMU link'
    )
    parser.add_argument('--test', choices=['companion_restart', 'rapid_toggle'],
                        default=None, help='Test to run')
    parser.add_argument('--all', action='store_true', help='Run every test')
    parser.add_argument('--cycles', type=int, default=20,
                        help='Number of cycles to run')
    parser.add_argument('--port', type=int, default=15393, help='Companion port')
    parser.add_argument('--log-level', default='WARNING', help='Logging level')
    args = parser.parse_args()

    setup_logging("stress_reconnect", args.log_level)
    tester = ReconnectStressTester(port=args.port)

    def signal_handler(sig, frame):
        print("\nShutdown signal received...")
        tester.stop_all()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    results = []
    try:
        if args.all or args.test in (None, 'companion_restart'):
            results.append(tester.test_companion_restart(args.cycles))
        if args.all or args.test in (None, 'rapid_toggle'):
            results.append(tester.test_rapid_toggle(args.cycles))
    finally:
        tester.stop_all()

    print(f"\n{'='*60}")
    print("SUMMARY")
    print(f"{'='*60}")
    for result in results:
        status = "PASS" if result.passed else "FAIL"
        print(f"[{status}] {result.test_name}: {result.cycles_completed}/{result.cycles_total} cycles "
              f"in {result.duration_s:.1f}s, leaked sockets={result.sockets_leaked}")
        for error in result.errors:
            print(f"    - {error}")

    sys.exit(0 if all(r.passed for r in results) else 1)


if __name__ == '__main__':
    main()
