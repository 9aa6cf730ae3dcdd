"""
Fixed limits and defaults for the network VMU link.
Payload capacity, backoff and health-check timing are not configurable.
"""

# Companion process defaults
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 37393

# Buffer limits - bound memory on malformed input
MAX_PAYLOAD_SIZE = 1024         # Peripheral message payload capacity in bytes
MAX_WORD_COUNT = 255            # word_count is a single byte on the wire
WORD_SIZE = 4
HEADER_TOKENS = 4               # command, dest, origin, word_count
MAX_LINE_LENGTH = 4096          # Longest line accepted by receive_line()
MIN_LINE_LENGTH = 1024
LINE_TERMINATOR = b"\r\n"

# Timing constants
CONNECT_TIMEOUT_S = 3.0         # Blocking connect bound
MIN_CONNECT_TIMEOUT_S = 2.0
MAX_CONNECT_TIMEOUT_S = 5.0
IO_TIMEOUT_S = 0.005            # send/receive deadline (5 ms)
HEALTH_CHECK_INTERVAL_S = 5.0   # Liveness check at most this often while CONNECTED
STATUS_LOG_INTERVAL_S = 30.0    # Periodic JSON status line

# Reconnect backoff
BACKOFF_INITIAL_S = 1.0
BACKOFF_MULTIPLIER = 2.0
BACKOFF_MAX_S = 30.0

# Notification durations (display frames)
NOTIFY_CONNECTED_DURATION = 180
NOTIFY_DISCONNECTED_DURATION = 120
NOTIFY_RECONNECTED_DURATION = 120

NOTIFY_CONNECTED_MSG = "Network VMU connected"
NOTIFY_DISCONNECTED_MSG = "Network VMU disconnected - retrying"
NOTIFY_RECONNECTED_MSG = "Network VMU reconnected"

# Socket.IO event name for remote notification sinks
NOTIFY_EVENT = "vmu_notification"
