"""Utility helpers for Gatherly."""

from __future__ import annotations

import re
import unicodedata
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_slug_invalid = re.compile(r"[^a-z0-9]+")
_email_pattern = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a canonical slug suitable for URLs."""
    value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    value = value.strip().lower()
    value = _slug_invalid.sub("-", value)
    value = value.strip("-")
    return value


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def is_valid_email(value: str | None) -> bool:
    return bool(value) and bool(_email_pattern.match(value.strip()))


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def localize(value: datetime, tz_name: str | None) -> datetime:
    """Convert a stored naive-UTC datetime into the event's local zone."""
    aware = value if value.tzinfo else value.replace(tzinfo=UTC)
    return aware.astimezone(_zone(tz_name))


def format_event_date(value: datetime, tz_name: str | None) -> str:
    """Return e.g. 'Friday, March 7, 2025' in the event's zone."""
    local = localize(value, tz_name)
    return f"{local:%A}, {local:%B} {local.day}, {local.year}"


def format_event_time(value: datetime, tz_name: str | None) -> str:
    """Return e.g. '6:30 PM CET' in the event's zone."""
    local = localize(value, tz_name)
    hour = local.hour % 12 or 12
    return f"{hour}:{local:%M} {local:%p} {local.tzname()}"
