#!/usr/bin/env python3
"""
Companion process simulator for the network VMU link.

Listens for the link's TCP connection and answers every request line
with a reply message, so the bridge can be exercised without real
hardware.

Usage:
    python scripts/companion_sim.py                 # Listen on 127.0.0.1:37393
    python scripts/companion_sim.py --port 15393    # Custom port
    python scripts/companion_sim.py --silent        # Accept and read, never reply

Press Ctrl+C to stop.
"""

import argparse
import logging
import os
import signal
import socket
import sys
import threading
import time
from typing import List, Optional

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
from vmu_link.constants import DEFAULT_HOST, DEFAULT_PORT, LINE_TERMINATOR, MAX_LINE_LENGTH
from vmu_link.framing import FrameCodec
from vmu_link.logging_config import setup_logging
from vmu_link.message import PeripheralMessage
from vmu_link.transport import create_server_socket

logger = logging.getLogger("companion_sim")

# Maple command codes used by the simulator
CMD_DEVICE_REQUEST = 0x01
CMD_DEVICE_INFO = 0x05
CMD_ACK = 0x07

# Function code + three function definitions for a memory card with LCD and clock
VMU_DEVICE_INFO_WORDS = [0x0E000000, 0x7E7E3F40, 0x00051000, 0x000F4100]


def build_reply(request: PeripheralMessage) -> PeripheralMessage:
    """Answer a request the way a plain VMU would."""
    if request.command == CMD_DEVICE_REQUEST:
        reply = PeripheralMessage(CMD_DEVICE_INFO, request.origin_address, request.dest_address)
        for i, word in enumerate(VMU_DEVICE_INFO_WORDS):
            reply.set_word(word, i)
        return reply
    return PeripheralMessage(CMD_ACK, request.origin_address, request.dest_address)


class CompanionSimulator:
    """Threaded line server standing in for the companion process."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, reply: bool = True):
        self.host = host
        self.port = port
        self.reply = reply
        self.codec = FrameCodec()

        self.server_socket: Optional[socket.socket] = None
        self.clients: List[socket.socket] = []
        self.running = False
        self.lock = threading.Lock()
        self.requests_handled = 0
        self.thread: Optional[threading.Thread] = None

    def start(self):
        """Bind and start accepting in a background thread."""
        self.server_socket = create_server_socket(self.host, self.port, backlog=1, timeout=0.5)
        self.port = self.server_socket.getsockname()[1]
        self.running = True
        self.thread = threading.Thread(target=self._accept_loop, daemon=True)
        self.thread.start()
        logger.info(f"Companion simulator listening on {self.host}:{self.port}")

    def stop(self):
        """Close the listener and every client connection."""
        self.running = False
        if self.server_socket:
            try:
                self.server_socket.close()
            except OSError:
                pass
            self.server_socket = None
        with self.lock:
            for client in self.clients:
                try:
                    client.close()
                except OSError:
                    pass
            self.clients.clear()
        if self.thread:
            self.thread.join(timeout=2.0)
            self.thread = None
        logger.info(f"Companion simulator stopped (requests={self.requests_handled})")

    def _accept_loop(self):
        while self.running:
            try:
                client, addr = self.server_socket.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            logger.info(f"Link connected from {addr[0]}:{addr[1]}")
            client.settimeout(0.5)
            with self.lock:
                self.clients.append(client)
            threading.Thread(target=self._serve, args=(client,), daemon=True).start()

    def _serve(self, client: socket.socket):
        buf = b''
        while self.running:
            try:
                chunk = client.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            if not chunk:
                break
            buf += chunk

            while LINE_TERMINATOR in buf:
                line, buf = buf.split(LINE_TERMINATOR, 1)
                self._handle_line(client, line)

            if len(buf) > MAX_LINE_LENGTH:
                logger.warning("Oversized line from link, dropping buffer")
                buf = b''

        with self.lock:
            if client in self.clients:
                self.clients.remove(client)
        try:
            client.close()
        except OSError:
            pass
        logger.info("Link disconnected")

    def _handle_line(self, client: socket.socket, line: bytes):
        request, ok = self.codec.decode(line)
        if not ok:
            return
        self.requests_handled += 1
        logger.debug(f"Request: {request!r}")
        if not self.reply:
            return
        try:
            client.sendall(self.codec.encode(build_reply(request)))
        except OSError as e:
            logger.warning(f"Failed to send reply: {e}")


def main():
    parser = argparse.ArgumentParser(description='Network VMU companion simulator')
    parser.add_argument('--host', default=DEFAULT_HOST, help='Bind address')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='Bind port')
    parser.add_argument('--silent', action='store_true', help='Never send replies')
    parser.add_argument('--log-level', default='INFO', help='Logging level')
    args = parser.parse_args()

    setup_logging("companion_sim", args.log_level)

    sim = CompanionSimulator(args.host, args.port, reply=not args.silent)
    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda sig, frame: stop.set())
    signal.signal(signal.SIGTERM, lambda sig, frame: stop.set())

    sim.start()
    try:
        while not stop.is_set():
            time.sleep(0.2)
    finally:
        sim.stop()


if __name__ == '__main__':
    main()
