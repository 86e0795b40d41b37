import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = os.getenv("REDIS_PORT", 6379)
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

if REDIS_PASSWORD:
    REDIS_URL = os.getenv("REDIS_URL", f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}")
else:
    REDIS_URL = os.getenv("REDIS_URL", f"redis://{REDIS_HOST}:{REDIS_PORT}")

RELAY_HOST = os.getenv("RELAY_HOST", "localhost")
RELAY_PORT = int(os.getenv("RELAY_PORT", 8000))
RELAY_HTTP_URL = os.getenv("RELAY_HTTP_URL", f"http://{RELAY_HOST}:{RELAY_PORT}")
RELAY_WS_URL = os.getenv("RELAY_WS_URL", f"ws://{RELAY_HOST}:{RELAY_PORT}")

# Reconnect backoff (seconds): min(base * 2**attempt, max), attempt capped
RECONNECT_BASE_DELAY = float(os.getenv("RECONNECT_BASE_DELAY", 1.0))
RECONNECT_MAX_DELAY = float(os.getenv("RECONNECT_MAX_DELAY", 10.0))
RECONNECT_MAX_ATTEMPTS = int(os.getenv("RECONNECT_MAX_ATTEMPTS", 5))

# Playback reconciliation (seconds)
SYNC_WINDOW_SECONDS = 0.5
DRIFT_THRESHOLD_SECONDS = 1.0

# Pub/sub poll timeout used by listeners (seconds)
PUBSUB_POLL_TIMEOUT = 1.0
