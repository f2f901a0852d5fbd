"""Application configuration from environment variables."""

import os
from pathlib import Path

# Load .env if present
env_file = Path(__file__).parent.parent / ".env"
if env_file.exists():
    with open(env_file) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                os.environ.setdefault(key.strip(), value.strip())

# HTTP server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "3001"))

# CORS Configuration
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

# Database
DATABASE_PATH = os.getenv("DATABASE_PATH", "./earthforus.db")

# Error log sink (markdown file)
ERROR_LOG_PATH = os.getenv("ERROR_LOG_PATH", "./ERRORS_LOGS.md")

# Real-time chat
WS_HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("WS_HEARTBEAT_INTERVAL_SECONDS", "30"))
WS_RECONNECT_BASE_DELAY_SECONDS = float(
    os.getenv("WS_RECONNECT_BASE_DELAY_SECONDS", "1.0")
)
WS_MAX_RECONNECT_ATTEMPTS = int(os.getenv("WS_MAX_RECONNECT_ATTEMPTS", "5"))
WS_OUTBOX_SIZE = int(os.getenv("WS_OUTBOX_SIZE", "256"))

# Chat persistence and polling fallback
CHAT_POLL_INTERVAL_SECONDS = float(os.getenv("CHAT_POLL_INTERVAL_SECONDS", "30"))
CHAT_MESSAGE_MAX_LENGTH = int(os.getenv("CHAT_MESSAGE_MAX_LENGTH", "1000"))
CHAT_HISTORY_LIMIT = int(os.getenv("CHAT_HISTORY_LIMIT", "50"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Debug mode
DEBUG = os.getenv("DEBUG", "false").lower() in ("true", "1", "yes")
