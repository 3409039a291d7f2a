"""Simple runtime configuration for the tasklens service.

Control flags are read from environment variables to allow toggling in
development or production without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


# Async SQLAlchemy URL for the record store. Tests point this at a scratch
# sqlite file before importing tasklens.db.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./tasklens.db')

# Echo SQL statements to the log (noisy; development only).
SQL_ECHO = _trueish(os.getenv('SQL_ECHO', '0'))

# SECRET_KEY should be set in the environment in production. The fallback is
# rejected by the app lifespan so a server never starts with it.
SECRET_KEY = os.getenv('SECRET_KEY', 'CHANGE_ME_IN_ENV_FOR_TESTS')
ACCESS_TOKEN_EXPIRE_MINUTES = _int_env('ACCESS_TOKEN_EXPIRE_MINUTES', 60 * 24)

# Upper bound on how long a cached view may be served when an invalidation
# was missed. Successful mutations invalidate immediately regardless.
CACHE_TTL_SECONDS = _int_env('CACHE_TTL_SECONDS', 60)

# IANA timezone used for "today" when neither the request nor the user
# supplies one.
DEFAULT_TIMEZONE = os.getenv('DEFAULT_TIMEZONE', 'UTC')

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()


# Optional local overrides: define variables in tasklens/local_config.py to
# extend or override the defaults above without changing versioned config.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    # No local overrides present; proceed with defaults.
    pass
