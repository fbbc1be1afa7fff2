"""Time helpers for hindsight.

All persisted timestamps are timezone-aware UTC datetimes.
"""

from datetime import UTC, datetime, timedelta

MS_PER_DAY = 24 * 60 * 60 * 1000


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def age_ms(then: datetime, now: datetime | None = None) -> float:
    """Milliseconds elapsed between ``then`` and ``now`` (never negative).

    Args:
        then: Earlier instant.
        now: Reference instant, defaults to the current time.
    """
    now = now or utc_now()
    delta = ensure_utc(now) - ensure_utc(then)
    return max(0.0, delta / timedelta(milliseconds=1))

