"""Centralized configuration: all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- Client ---
SERVER_URL = os.getenv("SERVER_URL", f"http://localhost:{PORT}")
TRANSPORT = os.getenv("TRANSPORT", "relay").lower()  # relay | direct | shared
VALID_TRANSPORTS = ("relay", "direct", "shared")
JOIN_TIMEOUT = float(os.getenv("JOIN_TIMEOUT", "10"))
SESSION_FILE = os.getenv("SESSION_FILE", ".tug_session.json")

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes

# --- Rooms ---
MAX_ROOMS = int(os.getenv("MAX_ROOMS", "200"))
MAX_PLAYERS_PER_ROOM = 2
ROOM_CODE_LENGTH = 5
MAX_ROOM_CODE_ATTEMPTS = 10
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", "1800"))
MAX_NAME_LENGTH = 20

# --- Game ---
GAME_MODE = os.getenv("GAME_MODE", "single_round").lower()  # single_round | rounds
VALID_GAME_MODES = ("single_round", "rounds")
ROUNDS_TO_WIN = int(os.getenv("ROUNDS_TO_WIN", "3"))
AUTO_START = _env_bool("AUTO_START")

ROPE_START = 50
ROPE_MIN = 5
ROPE_MAX = 95
TEAM1_WIN_AT = 90  # rope_position >= this: team 1 wins
TEAM2_WIN_AT = 10  # rope_position <= this: team 2 wins
ANSWER_STEP = 5

COUNTDOWN_SECONDS = 3
COUNTDOWN_TICK = float(os.getenv("COUNTDOWN_TICK", "1.0"))
ANSWER_FEEDBACK_DELAY = float(os.getenv("ANSWER_FEEDBACK_DELAY", "1.0"))

# --- Questions ---
QUESTION_BANK_PATH = os.getenv(
    "QUESTION_BANK_PATH",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "questions.json"),
)

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
