"""
Timespan Module
===============

Parses the localized "DD.MM.YYYY HH:MM" display strings attached to pins,
streets and cadastral properties, and derives the normalized
timespan_start / timespan_end instants stored on each message.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from civic_ingest.core.schema import ExtractedLocations, Timespan

TIMESPAN_MIN_DATE = datetime(2025, 1, 1, tzinfo=UTC)

DEFAULT_TIMEZONE = "Europe/Sofia"

_DATE_PATTERN = re.compile(r"^(\d{2})\.(\d{2})\.(\d{4})\s+(\d{2}):(\d{2})$")


def parse_local_date(value: str | None, timezone: str = DEFAULT_TIMEZONE) -> datetime | None:
    """
    Parse a "DD.MM.YYYY HH:MM" string in the locality's time zone.

    Args:
        value: Display string as produced by the extraction stage.
        timezone: IANA zone the string is expressed in.

    Returns:
        Timezone-aware UTC datetime, or None if the string is malformed or
        names an impossible date (e.g. 31.02).
    """
    if not value or not isinstance(value, str):
        return None

    match = _DATE_PATTERN.match(value.strip())
    if not match:
        return None

    day, month, year, hours, minutes = (int(part) for part in match.groups())
    try:
        local = datetime(year, month, day, hours, minutes, tzinfo=ZoneInfo(timezone))
    except ValueError:
        return None

    return local.astimezone(UTC)


def is_valid_timespan_date(value: datetime) -> bool:
    """Reject dates before 2025-01-01, which only come from parsing mistakes."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value >= TIMESPAN_MIN_DATE


def validate_and_fallback(
    start: datetime | None,
    end: datetime | None,
    fallback: datetime,
) -> tuple[datetime, datetime]:
    """Replace missing or implausible bounds with the fallback date."""
    valid_start = start if start is not None and is_valid_timespan_date(start) else fallback
    valid_end = end if end is not None and is_valid_timespan_date(end) else fallback
    return valid_start, valid_end


def collect_timespans(locations: ExtractedLocations) -> list[Timespan]:
    """Gather the timespans of every pin, street and cadastral property."""
    timespans: list[Timespan] = []
    for pin in locations.pins:
        timespans.extend(pin.timespans)
    for street in locations.streets:
        timespans.extend(street.timespans)
    for prop in locations.cadastral_properties:
        timespans.extend(prop.timespans)
    return timespans


def _parse_all(timespans: Iterable[Timespan], timezone: str) -> list[datetime]:
    dates = []
    for timespan in timespans:
        for value in (timespan.start, timespan.end):
            parsed = parse_local_date(value, timezone)
            if parsed is not None:
                dates.append(parsed)
    return dates


def extract_timespan_range(
    locations: ExtractedLocations | None,
    fallback: datetime,
    timezone: str = DEFAULT_TIMEZONE,
) -> tuple[datetime, datetime]:
    """
    Derive the message-level range from entity timespans.

    The start is the earliest parsed date and the end the latest one; when
    nothing parses the fallback (normally crawled_at) is used for both. The
    result is validated so a bound never precedes 2025-01-01.
    """
    if locations is None:
        return fallback, fallback

    dates = _parse_all(collect_timespans(locations), timezone)
    if not dates:
        return fallback, fallback

    return validate_and_fallback(min(dates), max(dates), fallback)


def ensure_aware(value: datetime | None) -> datetime:
    """Return a UTC-aware datetime, using now() for missing values."""
    if value is None:
        return datetime.now(UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
