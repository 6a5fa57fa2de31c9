# Configuration module for server-side constants and defaults.
# Every value can be overridden through the environment (or a local .env file).

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path.cwd() / ".env")


def _get_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name) or default
    assert value is not None, f"Expected {name} environment variable to be provided"
    return value


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got '{value}'")


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default

    v = value.strip().upper()
    if v == "TRUE":
        return True
    elif v == "FALSE":
        return False
    else:
        raise ValueError(f"Environment variable {name} must be a boolean ('TRUE' or 'FALSE'), got '{value}'")


# Letters per word and guesses per puzzle. Fixed by the game rules.
WORD_LENGTH = 5
MAX_GUESSES = 6

# "production" switches logging to JSON lines.
ENVIRONMENT = _get_env("ENVIRONMENT", "development")

# SQLAlchemy database URL for puzzles, profiles and device subscriptions.
DATABASE_URL = _get_env("DATABASE_URL", f"sqlite:///{Path(__file__).parent / 'duet.db'}")

# Secret key for signing identity tokens handed out by the auth collaborator.
SECRET_KEY = _get_env("SECRET_KEY", "change-me-in-prod-please")
TOKEN_MAX_AGE_SECS = _get_env_int("TOKEN_MAX_AGE_SECS", 60 * 60 * 24 * 30)

# CORS origins (comma separated) for the web client.
CORS_ORIGINS = [o.strip() for o in _get_env("CORS_ORIGINS", "*").split(",") if o.strip()]

# Durable writes issued by a client fail closed after this many seconds.
WRITE_TIMEOUT_SECS = _get_env_int("WRITE_TIMEOUT_SECS", 15)

# Web push delivery settings.
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY")
VAPID_SUBJECT = _get_env("VAPID_SUBJECT", "mailto:admin@example.com")
PUSH_TIMEOUT_SECS = _get_env_int("PUSH_TIMEOUT_SECS", 10)
PUSH_TTL_SECS = _get_env_int("PUSH_TTL_SECS", 60 * 60 * 12)
PUSH_CONCURRENCY = _get_env_int("PUSH_CONCURRENCY", 8)

# Day boundaries and reminder time are evaluated in each user's timezone.
DEFAULT_TIMEZONE = _get_env("DEFAULT_TIMEZONE", "UTC")
REMINDER_HOUR = _get_env_int("REMINDER_HOUR", 20)

# Run the hourly reminder job inside the API process.
SCHEDULER_ENABLED = _get_env_bool("SCHEDULER_ENABLED", True)

# User ids (comma separated) allowed to trigger a reminder sweep by hand.
REMINDER_ADMINS = [u.strip() for u in _get_env("REMINDER_ADMINS", "").split(",") if u.strip()]
