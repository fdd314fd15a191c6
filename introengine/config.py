"""
Runtime configuration for IntroEngine.
Loads .env (private_data/.env first, then project root) and exposes
service settings. Scoring weights and thresholds live in thresholds.py.
"""

import os

from dotenv import load_dotenv

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

load_dotenv(os.path.join(ROOT, "private_data", ".env"))
load_dotenv(os.path.join(ROOT, ".env"))


def _env_int(key: str, default: int) -> int:
    val = os.environ.get(key)
    if val:
        try:
            return int(val)
        except ValueError:
            pass
    return default


def _env_float(key: str, default: float) -> float:
    val = os.environ.get(key)
    if val:
        try:
            return float(val)
        except ValueError:
            pass
    return default


def get_db_path() -> str:
    """
    Resolve database path with fallback chain:
    1. INTROENGINE_DB_PATH environment variable
    2. private_data/introengine.db (live DB, .gitignored)
    3. data/introengine.db (dev/seed DB)
    """
    env_path = os.environ.get("INTROENGINE_DB_PATH")
    if env_path:
        return env_path

    private = os.path.join(ROOT, "private_data", "introengine.db")
    if os.path.exists(private):
        return private

    return os.path.join(ROOT, "data", "introengine.db")


# Completion service
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
COMPLETION_MODEL = os.environ.get("INTROENGINE_MODEL", "claude-sonnet-4-20250514")
COMPLETION_MAX_TOKENS = _env_int("COMPLETION_MAX_TOKENS", 1024)
COMPLETION_TIMEOUT_SECONDS = _env_float("COMPLETION_TIMEOUT_SECONDS", 30.0)
COMPLETION_MAX_RETRIES = _env_int("COMPLETION_MAX_RETRIES", 1)

# Batch execution
PIPELINE_MAX_WORKERS = _env_int("PIPELINE_MAX_WORKERS", 4)
PATH_DISCOVERY_WORKERS = _env_int("PATH_DISCOVERY_WORKERS", 4)
ACCOUNT_LOCK_TTL_MINUTES = _env_int("ACCOUNT_LOCK_TTL_MINUTES", 60)
SQLITE_BUSY_TIMEOUT_MS = _env_int("SQLITE_BUSY_TIMEOUT_MS", 5000)

# Scheduler
SCHEDULER_TIMEZONE = os.environ.get("SCHEDULER_TIMEZONE", "UTC")

# Notifications
DISCORD_WEBHOOK_URL = os.environ.get("DISCORD_WEBHOOK_URL", "")

LOG_LEVEL = os.environ.get("INTROENGINE_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
