import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# "redis" or "memory" (single process, no external store)
STORE_BACKEND = os.getenv("STORE_BACKEND", "redis")

# Broadcaster presence older than this is abandoned and may be reclaimed
STALE_THRESHOLD_MS = int(os.getenv("STALE_THRESHOLD_MS", 60000))
HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", 30))

VIEWER_TIMEOUT_MS = int(os.getenv("VIEWER_TIMEOUT_MS", 40000))
VIEWER_PING_INTERVAL_SECONDS = float(os.getenv("VIEWER_PING_INTERVAL_SECONDS", 15))

# Debounce for start/stop, UX only
ACTION_COOLDOWN_SECONDS = float(os.getenv("ACTION_COOLDOWN_SECONDS", 6))
ELAPSED_TICK_SECONDS = float(os.getenv("ELAPSED_TICK_SECONDS", 1))
NOTIFY_INTERVAL_SECONDS = float(os.getenv("NOTIFY_INTERVAL_SECONDS", 2))

# TTL used to emulate remove-on-disconnect on Redis
DISCONNECT_LEASE_SECONDS = int(os.getenv("DISCONNECT_LEASE_SECONDS", 45))

