"""
orrery.engine.epoch — Weekly Reset Cutoff
==========================================

Every "since" query in Orrery (dedup windows, unlinked-key sweeps, the
weekly archive) is bounded by the most recent weekly reset: **Tuesday
07:00 in America/Los_Angeles**.

The boundary is computed in zoned local time rather than by adding a
fixed UTC offset, so it stays on 07:00 local across DST changes
(15:00 UTC in winter, 14:00 UTC in summer).

Stored completion timestamps use one canonical UTC form
(``2026-02-04T03:12:45.000Z``) so that string comparison in SQL is
chronological comparison.
"""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

from orrery.errors import MalformedRecordError

RESET_ZONE = ZoneInfo("America/Los_Angeles")
RESET_WEEKDAY = 1  # Tuesday (Monday == 0)
RESET_HOUR = 7


def utc_now() -> datetime:
    """Default clock used when no drift-corrected clock is injected."""
    return datetime.now(UTC)


def weekly_reset(now: datetime | None = None, tz: tzinfo = RESET_ZONE) -> datetime:
    """Return the most recent weekly reset at or before *now*.

    Naive datetimes are interpreted as UTC.  The result is an aware
    datetime in *tz*.
    """
    if now is None:
        now = utc_now()
    elif now.tzinfo is None:
        now = now.replace(tzinfo=UTC)

    local = now.astimezone(tz)
    days_back = (local.weekday() - RESET_WEEKDAY) % 7
    reset_day = local.date() - timedelta(days=days_back)
    reset = datetime.combine(reset_day, time(RESET_HOUR), tzinfo=tz)
    if local < reset:
        reset = datetime.combine(reset_day - timedelta(days=7), time(RESET_HOUR), tzinfo=tz)
    return reset


def weekly_reset_weeks_ago(weeks: int, now: datetime | None = None) -> datetime:
    """Return the reset boundary *weeks* resets before the current one."""
    current = weekly_reset(now)
    # Step in local calendar days so DST never shifts the hour.
    day = current.date() - timedelta(days=7 * weeks)
    return datetime.combine(day, time(RESET_HOUR), tzinfo=current.tzinfo)


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware datetime.

    Accepts a trailing ``Z``, explicit offsets and any number of
    fractional-second digits (Raider.IO sends milliseconds, other sources
    send up to nanoseconds).

    Raises
    ------
    MalformedRecordError
        If *value* is empty or not a timestamp.
    """
    if not value or not value.strip():
        raise MalformedRecordError("empty timestamp")

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"

    # fromisoformat only takes up to six fractional digits.
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}" if digits else head + rest

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedRecordError(f"invalid timestamp {value!r}") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Render *value* in the canonical stored form (UTC, milliseconds, ``Z``)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def within_last_hour(value: datetime, now: datetime | None = None) -> bool:
    """True if *value* is less than one hour before *now*."""
    if now is None:
        now = utc_now()
    return value > now - timedelta(hours=1)
