"""Centralized configuration — all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- Rate Limiting ---
RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "30"))  # uploads / room creations per window per IP

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10
MAX_WS_MESSAGE_SIZE = 4096  # bytes

# --- Storage Limits ---
MAX_ROOMS = int(os.getenv("MAX_ROOMS", "50"))
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", "1800"))
ROOM_CLEANUP_INTERVAL = 60  # seconds
ROOM_CODE_LENGTH = 6
MAX_ROOM_CODE_ATTEMPTS = 10

# --- Uploads ---
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "uploads"))
UPLOAD_URL_PREFIX = "/uploads"
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))

# --- Game ---
MAX_NAME_LENGTH = 20
MAX_LABEL_LENGTH = 50
MAX_MEDIA_REF_LENGTH = 300
MIN_READY_PLAYERS = 2
SETTLE_DELAY_SECONDS = float(os.getenv("SETTLE_DELAY_SECONDS", "3.0"))
MANUAL_ADVANCE = os.getenv("MANUAL_ADVANCE", "0") == "1"

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
