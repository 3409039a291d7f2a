import logging
import zoneinfo
from datetime import datetime, timezone

from . import config
from .errors import Unauthorized

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes; those are stored as UTC so they are
    tagged rather than converted.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resolve_timezone(tz_name: str | None) -> zoneinfo.ZoneInfo:
    """Return the ZoneInfo for tz_name, falling back to DEFAULT_TIMEZONE."""
    for candidate in (tz_name, config.DEFAULT_TIMEZONE):
        if not candidate:
            continue
        try:
            return zoneinfo.ZoneInfo(candidate)
        except (zoneinfo.ZoneInfoNotFoundError, ValueError):
            logger.warning('unknown timezone %r; falling back', candidate)
    return zoneinfo.ZoneInfo('UTC')


def owner_id_of(owner) -> int:
    """Accept a User or a bare id; None means no resolvable caller."""
    if owner is None:
        raise Unauthorized('no caller identity')
    return owner if isinstance(owner, int) else owner.id


def is_known_timezone(tz_name: str) -> bool:
    try:
        zoneinfo.ZoneInfo(tz_name)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError):
        return False
    return True


def clean_name(value) -> str:
    """Trim a user supplied name; non-strings become the empty string."""
    if not isinstance(value, str):
        return ''
    return value.strip()
