"""Configuration settings for FocusFlow."""

import logging
import os
from pathlib import Path
from dotenv import load_dotenv


# Load environment variables from .env file
# Explicitly load from the project root (where config.py lives)
# This ensures .env is found regardless of current working directory
_env_path = Path(__file__).parent / ".env"
load_dotenv(_env_path)


def _get_int(env_var: str, default: int) -> int:
    """
    Read an integer setting, falling back to the default on bad input.

    Args:
        env_var: Environment variable name.
        default: Value used when the variable is unset or not an integer.

    Returns:
        Parsed integer value.
    """
    raw = os.getenv(env_var, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(
            f"{env_var}={raw!r} is not an integer, using default {default}"
        )
        return default


def _get_float(env_var: str, default: float) -> float:
    """Read a float setting, falling back to the default on bad input."""
    raw = os.getenv(env_var, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning(
            f"{env_var}={raw!r} is not a number, using default {default}"
        )
        return default


def _validate_api_key_format(key: str, key_type: str) -> bool:
    """
    Validate API key format to catch configuration errors early.

    Args:
        key: The API key to validate.
        key_type: Type of key ("openai", "gemini", "supabase")

    Returns:
        True if key format is valid, False otherwise.
    """
    if not key:
        return False

    if len(key) < 10:
        return False

    expected_prefixes = {
        "openai": "sk-",
        "gemini": "AI",  # Gemini keys typically start with AI
        "supabase": "ey",  # Supabase anon keys are JWTs
    }

    if key_type in expected_prefixes:
        return key.startswith(expected_prefixes[key_type])

    return True  # Unknown key type - accept any format


def _get_api_key(env_var: str, key_type: str = "") -> str:
    """
    Get an API key from the environment.

    Args:
        env_var: Environment variable name.
        key_type: Optional key type for format validation logging.

    Returns:
        API key string, or empty string if not found.
    """
    key = os.getenv(env_var, "")
    if key and key_type and not _validate_api_key_format(key, key_type):
        # Log warning if format looks wrong (doesn't prevent usage)
        logging.getLogger(__name__).warning(
            f"{env_var} may have invalid format for {key_type} key"
        )
    return key


# --- Score classifier ---
# Options: "openai", "gemini" or "keyword" (deterministic fallback only)
SCORE_PROVIDER = os.getenv("SCORE_PROVIDER", "openai")

OPENAI_API_KEY = _get_api_key("OPENAI_API_KEY", "openai")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

GEMINI_API_KEY = _get_api_key("GEMINI_API_KEY", "gemini")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

# Hard upper bound on a single classifier call (seconds)
CLASSIFIER_TIMEOUT = _get_float("CLASSIFIER_TIMEOUT", 10.0)
CLASSIFIER_MAX_RETRIES = _get_int("CLASSIFIER_MAX_RETRIES", 1)
CLASSIFIER_RETRY_DELAY = _get_float("CLASSIFIER_RETRY_DELAY", 0.5)

# --- Score -> time adjustment policy (minutes) ---
HIGH_FOCUS_THRESHOLD = _get_int("HIGH_FOCUS_THRESHOLD", 70)  # score >= threshold earns bonus
LOW_FOCUS_THRESHOLD = _get_int("LOW_FOCUS_THRESHOLD", 40)  # score < threshold earns penalty
HIGH_FOCUS_BONUS_MINUTES = _get_int("HIGH_FOCUS_BONUS_MINUTES", 10)
LOW_FOCUS_PENALTY_MINUTES = _get_int("LOW_FOCUS_PENALTY_MINUTES", -20)

# --- Aggregation ---
MINUTES_PER_LEVEL = 60  # Level up every hour of credited focus
AGGREGATION_MAX_ATTEMPTS = _get_int("AGGREGATION_MAX_ATTEMPTS", 3)
AGGREGATION_RETRY_DELAY = _get_float("AGGREGATION_RETRY_DELAY", 0.05)
RECONCILE_PENDING_GRACE_SECONDS = _get_int("RECONCILE_PENDING_GRACE_SECONDS", 300)  # Pending rollups older than this were abandoned
DEFAULT_GROUP_DAILY_GOAL_MINUTES = 60
INITIAL_TREE_HEALTH = 100

# --- Leaderboard ---
LEADERBOARD_DEFAULT_LIMIT = _get_int("LEADERBOARD_DEFAULT_LIMIT", 50)
LEADERBOARD_MAX_LIMIT = 200
SESSIONS_DEFAULT_LIMIT = 20
SESSIONS_MAX_LIMIT = 100
STOP_MAX_ATTEMPTS = 5  # Stop retries when concurrent scores keep moving the session version

# --- Backing store ---
# Options: "memory" (single process) or "supabase"
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory")

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_ANON_KEY = _get_api_key("SUPABASE_ANON_KEY", "supabase")

USERS_TABLE = os.getenv("USERS_TABLE", "users")
FOCUS_SESSIONS_TABLE = os.getenv("FOCUS_SESSIONS_TABLE", "focus_sessions")
FOCUS_SCORES_TABLE = os.getenv("FOCUS_SCORES_TABLE", "focus_scores")
GROUPS_TABLE = os.getenv("GROUPS_TABLE", "groups")
GROUP_MEMBERS_TABLE = os.getenv("GROUP_MEMBERS_TABLE", "group_members")

# --- HTTP boundary ---
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = _get_int("API_PORT", 8000)
USER_ID_HEADER = "x-user-id"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")  # Can override in .env: DEBUG, INFO, WARNING, ERROR
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
