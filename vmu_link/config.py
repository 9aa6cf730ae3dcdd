"""
Configuration for the network VMU link

Values are read once from the environment at import time. Fixed limits
(payload capacity, backoff cap, health interval) come from constants.py
and cannot be overridden via environment variables.
"""
import logging
import os

from .constants import (
    DEFAULT_HOST, DEFAULT_PORT,
    CONNECT_TIMEOUT_S, MIN_CONNECT_TIMEOUT_S, MAX_CONNECT_TIMEOUT_S,
    IO_TIMEOUT_S, MAX_LINE_LENGTH, MIN_LINE_LENGTH
)

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def _clamp(value, low, high):
    return max(low, min(high, value))


def is_valid_target(host, port) -> bool:
    """True if host/port can be used for a connect attempt."""
    if not host or not isinstance(host, str) or not host.strip():
        return False
    return isinstance(port, int) and 0 < port < 65536


# Feature toggle (host front-end normally drives this through set_enabled)
VMU_NETWORK_ENABLED = os.getenv('VMU_NETWORK_ENABLED', 'false').lower() == 'true'

# Companion process target
VMU_NETWORK_HOST = os.getenv('VMU_NETWORK_HOST', DEFAULT_HOST)
VMU_NETWORK_PORT = _env_int('VMU_NETWORK_PORT', DEFAULT_PORT)

# Transport timing
CONNECT_TIMEOUT = _clamp(_env_float('VMU_CONNECT_TIMEOUT', CONNECT_TIMEOUT_S),
                         MIN_CONNECT_TIMEOUT_S, MAX_CONNECT_TIMEOUT_S)
IO_TIMEOUT = max(0.001, _env_int('VMU_IO_TIMEOUT_MS', int(IO_TIMEOUT_S * 1000)) / 1000.0)
LINE_LIMIT = _clamp(_env_int('VMU_MAX_LINE_LENGTH', MAX_LINE_LENGTH), MIN_LINE_LENGTH, MAX_LINE_LENGTH)

# Logging Configuration
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FILE = os.getenv('LOG_FILE') or None

# Optional Socket.IO notification backend (unset = log only)
NOTIFY_SOCKETIO_URL = os.getenv('VMU_NOTIFY_SOCKETIO_URL') or None

# Driving loop rate for the standalone entry point
TICK_HZ = _env_float('VMU_TICK_HZ', 60.0)
if TICK_HZ <= 0:
    logger.warning(f"Invalid VMU_TICK_HZ={TICK_HZ}, using 60")
    TICK_HZ = 60.0
