"""
Network VMU Link

Relays peripheral-bus messages between an emulated accessory and a
companion process over TCP.
"""

from .message import PeripheralMessage
from .framing import FrameCodec, FramingError
from .transport import Transport, TcpTransport
from .connection_manager import ConnectionManager, ConnectionState, ExponentialBackoff
from .notifications import NotificationAdapter, NotificationSink
from .bridge import VmuNetworkBridge

__all__ = [
    'PeripheralMessage', 'FrameCodec', 'FramingError', 'Transport', 'TcpTransport',
    'ConnectionManager', 'ConnectionState', 'ExponentialBackoff',
    'NotificationAdapter', 'NotificationSink', 'VmuNetworkBridge'
]
