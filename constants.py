import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

DOMAIN = os.getenv("DOMAIN", "localhost")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Watch party records
WATCHPARTY_TTL_SECONDS = int(os.getenv("WATCHPARTY_TTL_SECONDS", 6 * 60 * 60))
DEFAULT_MAX_PARTICIPANTS = int(os.getenv("DEFAULT_MAX_PARTICIPANTS", 10))
DEFAULT_ROOM_NAME = "Watch Party"
MESSAGE_HISTORY_MAX = int(os.getenv("MESSAGE_HISTORY_MAX", 200))
MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", 1000))
INVITE_TTL_SECONDS = int(os.getenv("INVITE_TTL_SECONDS", 24 * 60 * 60))

# Live rooms
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", 5.0))
ROOM_IDLE_SECONDS = float(os.getenv("ROOM_IDLE_SECONDS", 300))
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", 60))
