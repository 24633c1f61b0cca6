import os

REDIS_HOST = os.getenv("REDIS_HOST", None)
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

if os.getenv("REDIS_URL"):
    REDIS_URL = os.getenv("REDIS_URL")
elif REDIS_HOST:
    REDIS_URL = f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}" if REDIS_PASSWORD else f"redis://{REDIS_HOST}:{REDIS_PORT}"
else:
    REDIS_URL = None

ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 60 * 60 * 24))  # 24 hours
AUTO_SKIP_GRACE_MS = int(os.getenv("AUTO_SKIP_GRACE_MS", 2000))
REMOVE_RETRY_BACKOFF_SECONDS = float(os.getenv("REMOVE_RETRY_BACKOFF_SECONDS", 0.05))

ROOM_ID_LENGTH = 10
ANONYMOUS_NAME = "Anonymous"

MAX_MESSAGES = 100
MAX_HISTORY = 50
MAX_TODOS_PER_USER = 50
MAX_MESSAGE_LENGTH = 500
MAX_TODO_LENGTH = 200
