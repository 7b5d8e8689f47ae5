import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Application environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Application settings
APP_NAME = "TravelConnect Messaging API"
APP_VERSION = "1.0.0"

# JWT settings (tokens are issued by the auth service; we only verify them)
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_LEEWAY_SECONDS = int(os.getenv("JWT_LEEWAY_SECONDS", "60"))  # clock-skew tolerance
JWT_ACCESS_TOKEN_EXPIRE_SECONDS = int(os.getenv("JWT_ACCESS_TOKEN_EXPIRE_SECONDS", "86400"))

# Redis settings
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_ENABLED = os.getenv("REDIS_ENABLED", "true").lower() == "true"
REDIS_RETRY_INTERVAL_SECONDS = int(os.getenv("REDIS_RETRY_INTERVAL_SECONDS", "1"))

# Live delivery: 'memory' (single process) or 'redis' (pub/sub relay across workers)
REALTIME_BACKEND = os.getenv("REALTIME_BACKEND", "memory").lower()
REALTIME_FANOUT_CHANNEL = os.getenv("REALTIME_FANOUT_CHANNEL", "chat:fanout")

# Messaging settings
MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", "5000"))
MESSAGE_SANITIZE_ENABLED = os.getenv("MESSAGE_SANITIZE_ENABLED", "true").lower() == "true"
REACTION_MAX_LENGTH = int(os.getenv("REACTION_MAX_LENGTH", "10"))
LAST_MESSAGE_PREVIEW_LENGTH = int(os.getenv("LAST_MESSAGE_PREVIEW_LENGTH", "200"))
MESSAGE_PAGE_SIZE_DEFAULT = int(os.getenv("MESSAGE_PAGE_SIZE_DEFAULT", "50"))
MESSAGE_PAGE_SIZE_MAX = int(os.getenv("MESSAGE_PAGE_SIZE_MAX", "100"))
CONVERSATION_PAGE_SIZE_DEFAULT = int(os.getenv("CONVERSATION_PAGE_SIZE_DEFAULT", "20"))
MESSAGE_SEND_MAX_PER_MINUTE = int(os.getenv("MESSAGE_SEND_MAX_PER_MINUTE", "60"))
MESSAGE_SEND_BURST_LIMIT = int(os.getenv("MESSAGE_SEND_BURST_LIMIT", "10"))
MESSAGE_SEND_BURST_WINDOW_SECONDS = int(os.getenv("MESSAGE_SEND_BURST_WINDOW_SECONDS", "5"))

# Groups Settings
GROUP_NAME_MAX_LENGTH = int(os.getenv("GROUP_NAME_MAX_LENGTH", "100"))
GROUP_MIN_MEMBERS = 3
GROUP_MAX_MEMBERS = int(os.getenv("GROUP_MAX_MEMBERS", "100"))
