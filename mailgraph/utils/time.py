"""Time helpers (timezone-aware UTC everywhere)."""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from mailgraph.core.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch_ms(value) -> datetime | None:
    """Parse provider epoch-millisecond strings (internalDate, expiration)."""
    if value in (None, ""):
        return None
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def parse_retry_after(value: str | None, *, default: float | None = None) -> float:
    """Retry-After is either delta-seconds or an HTTP date."""
    fallback = float(settings.GMAIL_DEFAULT_RETRY_AFTER_SECONDS if default is None else default)
    if not value:
        return fallback
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return fallback
    if when is None:
        return fallback
    return max(0.0, (when - utcnow()).total_seconds())
