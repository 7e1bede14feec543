# =============================================================================
# Booth Client -- Protocol Constants
# =============================================================================
#
# Defaults for the realtime session client.  Per-instance overrides live in
# ClientConfig (see types.py).
# =============================================================================

# -- Timing (seconds) --------------------------------------------------------

HEARTBEAT_INTERVAL = 30.0
HEARTBEAT_TIMEOUT = 90.0
CONNECTION_TIMEOUT = 10.0
AUTH_RETRY_DELAY = 1.0
ERROR_CLEAR_DELAY = 5.0

# -- Reconnection -------------------------------------------------------------

RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
RECONNECT_MAX_ATTEMPTS = 10
RECONNECT_JITTER_RATIO = 0.3

# -- Token refresh -------------------------------------------------------------

TOKEN_REFRESH_MAX_ATTEMPTS = 2

# -- Outbound messages ---------------------------------------------------------

MESSAGE_QUEUE_MAX_SIZE = 50
MESSAGE_MAX_LENGTH = 500  # matches server limit

# -- Rate limiting -------------------------------------------------------------

RATE_LIMIT_DEFAULT_WINDOW = 5.0  # used when the server gives no hint

# -- Roster polling fallback ---------------------------------------------------

POLL_INTERVAL = 8.0
POLL_TIMEOUT = 5.0

# -- Messages ------------------------------------------------------------------

MAX_FRAME_SIZE = 1_048_576  # 1 MB

# -- WebSocket close codes -----------------------------------------------------

WS_CLOSE_NORMAL = 1000
WS_CLOSE_ABNORMAL = 1006
WS_CLOSE_HEARTBEAT_TIMEOUT = 4000
WS_CLOSE_AUTH_FAILED = 4401
