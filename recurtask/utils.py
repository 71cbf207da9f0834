from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Return `dt` as an aware UTC datetime.

    SQLite hands datetimes back without tzinfo; those are stored as UTC so a
    naive value is interpreted as UTC rather than local time.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def canonical_timestamp(dt) -> str:
    """Return canonical ISO Z string for dedup keys; accept str or datetime."""
    if dt is None:
        return ''
    if isinstance(dt, str):
        d = parse_iso(dt)
        if d is None:
            return dt.strip()
        dt = d
    return ensure_utc(dt).isoformat().replace('+00:00', 'Z')


def parse_iso(s: str | None) -> datetime | None:
    """Parse an ISO-8601 string (a trailing 'Z' is accepted) into aware UTC."""
    if not s:
        return None
    try:
        d = datetime.fromisoformat(s.strip().replace('Z', '+00:00'))
    except ValueError:
        logger.debug('could not parse ISO datetime %r', s)
        return None
    return ensure_utc(d)


def format_utc(dt: datetime | None) -> str | None:
    """Render `dt` for JSON payloads as UTC ISO with a trailing Z."""
    if dt is None:
        return None
    return canonical_timestamp(dt)
