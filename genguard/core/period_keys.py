"""
Timezone-aware period keys and cache/lock key composition.

Periodic content is generated per identity timezone, not per server
timezone: a user's "today" starts at their local midnight. Missing or
invalid timezones fall back to UTC.
"""

from datetime import datetime, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from genguard.core.models import PeriodKeys

logger = structlog.get_logger()

UTC = "UTC"


class Timeframe(str, Enum):
    """Logical timeframes callers ask for, mapped to period buckets."""

    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @property
    def bucket(self) -> str:
        return _BUCKETS[self]


_BUCKETS = {
    Timeframe.TODAY: "daily",
    Timeframe.WEEK: "weekly",
    Timeframe.MONTH: "monthly",
    Timeframe.YEAR: "yearly",
}


def resolve_timezone(tz_name: str | None) -> ZoneInfo:
    """IANA zone for tz_name, or UTC (logged) when missing or invalid."""
    if tz_name and tz_name.strip():
        try:
            return ZoneInfo(tz_name.strip())
        except (ZoneInfoNotFoundError, ValueError, OSError):
            logger.warning("invalid_timezone_fallback_utc", timezone=tz_name)
    else:
        logger.warning("missing_timezone_fallback_utc", timezone=tz_name)
    return ZoneInfo(UTC)


def to_local(tz_name: str | None, now: datetime | None = None) -> datetime:
    """Convert `now` (naive means UTC) to local wall-clock time in tz_name."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(resolve_timezone(tz_name))


def get_user_period_keys(tz_name: str | None, now: datetime | None = None) -> PeriodKeys:
    """
    Period keys for an identity's local calendar.

    Args:
        tz_name: IANA timezone (e.g. "America/New_York"); UTC if unusable
        now: Instant to bucket (defaults to the current time)

    Returns:
        PeriodKeys(daily="2025-03-15", weekly="2025-W11",
                   monthly="2025-03", yearly="2025")
    """
    local = to_local(tz_name, now)
    iso_year, iso_week, _ = local.isocalendar()
    return PeriodKeys(
        daily=local.strftime("%Y-%m-%d"),
        weekly=f"{iso_year:04d}-W{iso_week:02d}",
        monthly=local.strftime("%Y-%m"),
        yearly=local.strftime("%Y"),
    )


def today_local_date(tz_name: str | None, now: datetime | None = None) -> str:
    return to_local(tz_name, now).strftime("%Y-%m-%d")


def period_value(keys: PeriodKeys, timeframe: Timeframe | str) -> str:
    """The period key that buckets content for `timeframe`."""
    return getattr(keys, Timeframe(timeframe).bucket)


def _check_component(name: str, value: str):
    if not value or ":" in value:
        raise ValueError(f"invalid key component {name}={value!r}")


def build_content_key(
    kind: str,
    identity: str,
    timeframe: Timeframe | str,
    period: str,
    variant: str = "en",
    version: int = 1,
) -> str:
    """
    Cache key for one generated result.

    e.g. "insight:v1:user-123:daily:2025-03-15:en"
    """
    bucket = Timeframe(timeframe).bucket
    for name, value in (("kind", kind), ("identity", identity), ("period", period), ("variant", variant)):
        _check_component(name, value)
    return f"{kind}:v{version}:{identity}:{bucket}:{period}:{variant}"


def build_lock_key(kind: str, identity: str, timeframe: Timeframe | str, period: str) -> str:
    """
    Lock key preventing duplicate generation of one result.

    e.g. "lock:insight:user-123:daily:2025-03-15"
    """
    bucket = Timeframe(timeframe).bucket
    for name, value in (("kind", kind), ("identity", identity), ("period", period)):
        _check_component(name, value)
    return f"lock:{kind}:{identity}:{bucket}:{period}"
