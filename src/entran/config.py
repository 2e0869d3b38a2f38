# config.py
# Runtime configuration. Values come from the environment (or a .env file)
# and fall back to the defaults below. No logic lives here.

import os

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Session Manager ceilings
MAX_SESSIONS = _int("ENTRAN_MAX_SESSIONS", 10)
MAX_STEPS = _int("ENTRAN_MAX_STEPS", 1000)
IDLE_TIMEOUT_SECONDS = _int("ENTRAN_IDLE_TIMEOUT_SECONDS", 3600)

# SessionOptions defaults
DEFAULT_TIMEOUT_MS = _int("ENTRAN_DEFAULT_TIMEOUT_MS", 30_000)
DEFAULT_MEMORY_LIMIT = _int("ENTRAN_DEFAULT_MEMORY_LIMIT", 10 * 1024 * 1024)

# Console
QUIET = _flag("ENTRAN_QUIET")
