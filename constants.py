import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

# "memory" keeps fan-out inside this process, "redis" relays room broadcasts over pub/sub
BROADCAST_BACKEND = os.getenv("BROADCAST_BACKEND", "memory")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", 100))
# A send to one socket that takes longer than this drops that connection
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", 5))
DISPLAY_NAME_MAX_LENGTH = 32
SYSTEM_USER = "System"

# Client-side attachment ceiling, checked before anything is sent
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", 5 * 1024 * 1024))

# Key derivation parameters must match across every client, so they are not configurable
PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
KEY_LENGTH = 32
IV_LENGTH = 12
