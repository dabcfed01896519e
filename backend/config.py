"""Centralized configuration: all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = int(os.getenv("WS_RATE_LIMIT_PER_SEC", "10"))  # max messages per second per connection
MAX_WS_MESSAGE_SIZE = int(os.getenv("MAX_WS_MESSAGE_SIZE", "4096"))  # bytes
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", "5.0"))  # a stalled peer is skipped after this

# --- Rooms ---
ROOM_CODE_LENGTH = int(os.getenv("ROOM_CODE_LENGTH", "6"))
MAX_ROOM_CODE_ATTEMPTS = int(os.getenv("MAX_ROOM_CODE_ATTEMPTS", "5"))
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", str(60 * 60 * 24)))
ROOM_SWEEP_INTERVAL = int(os.getenv("ROOM_SWEEP_INTERVAL", "60"))
MAX_ROOMS = int(os.getenv("MAX_ROOMS", "0"))  # 0 = bounded by the code space only
DEFAULT_MAX_PLAYERS = int(os.getenv("DEFAULT_MAX_PLAYERS", "8"))
MAX_PLAYERS_PER_ROOM = int(os.getenv("MAX_PLAYERS_PER_ROOM", "100"))

# Joining an unknown code creates the room instead of failing with room_not_found
AUTO_CREATE_ROOMS = _env_bool("AUTO_CREATE_ROOMS", False)
ALLOW_MID_GAME_JOIN = _env_bool("ALLOW_MID_GAME_JOIN", False)

# --- Game ---
QUESTIONS_PER_GAME = int(os.getenv("QUESTIONS_PER_GAME", "10"))
ROUND_TIMER_ENABLED = _env_bool("ROUND_TIMER_ENABLED", True)
ROUND_TIME_LIMIT_MS = int(os.getenv("ROUND_TIME_LIMIT_MS", "30000"))
RESULTS_DELAY_SECONDS = float(os.getenv("RESULTS_DELAY_SECONDS", "1.0"))
NEXT_QUESTION_DELAY_SECONDS = float(os.getenv("NEXT_QUESTION_DELAY_SECONDS", "5.0"))

# --- Scoring ---
POINTS_BASE = int(os.getenv("POINTS_BASE", "500"))
BONUS_MAX = int(os.getenv("BONUS_MAX", "500"))

# --- Player input ---
MAX_NICKNAME_LENGTH = int(os.getenv("MAX_NICKNAME_LENGTH", "20"))
MAX_CHAT_LENGTH = int(os.getenv("MAX_CHAT_LENGTH", "280"))
MAX_CATEGORY_LENGTH = int(os.getenv("MAX_CATEGORY_LENGTH", "50"))

# --- Question bank ---
QUESTION_BANK_PATH = os.getenv(
    "QUESTION_BANK_PATH",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "questions.json"),
)
QUESTION_BANK_URL = os.getenv("QUESTION_BANK_URL", "")  # empty = local bank file
QUESTION_SOURCE_TIMEOUT = int(os.getenv("QUESTION_SOURCE_TIMEOUT", "10"))
QUESTION_SOURCE_MAX_RETRIES = int(os.getenv("QUESTION_SOURCE_MAX_RETRIES", "3"))

# --- Auth service ---
AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "")
AUTH_SERVICE_TIMEOUT = int(os.getenv("AUTH_SERVICE_TIMEOUT", "10"))

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
