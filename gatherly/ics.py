"""iCalendar (.ics) helpers."""

from __future__ import annotations

import html
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gatherly.models import Event


_tag_pattern = re.compile(r"<[^>]+>")
DEFAULT_ORGANIZER_EMAIL = "events@gatherly.local"
MAX_LINE_OCTETS = 75


def _ensure_utc(dt: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _format_utc(dt: datetime) -> str:
    """Format a datetime as an RFC5545 UTC timestamp."""

    return _ensure_utc(dt).replace(microsecond=0).strftime("%Y%m%dT%H%M%SZ")


def _escape_text(value: str | None) -> str:
    """Escape text for ICS fields and strip any HTML tags."""

    if not value:
        return ""
    stripped = _tag_pattern.sub("", html.unescape(value))
    normalized = stripped.replace("\r\n", "\n").replace("\r", "\n")
    return (
        normalized.replace("\\", "\\\\")
        .replace(";", r"\;")
        .replace(",", r"\,")
        .replace("\n", r"\n")
    )


def _fold(line: str) -> str:
    """Fold a content line at 75 octets as required by RFC 5545 3.1."""
    encoded = line.encode("utf-8")
    if len(encoded) <= MAX_LINE_OCTETS:
        return line
    parts: list[str] = []
    current = ""
    limit = MAX_LINE_OCTETS
    for char in line:
        if len((current + char).encode("utf-8")) > limit:
            parts.append(current)
            current = char
            # continuation lines start with a space which counts towards the limit
            limit = MAX_LINE_OCTETS - 1
        else:
            current += char
    parts.append(current)
    return "\r\n ".join(parts)


def generate_ics(
    *,
    uid: str,
    title: str,
    start: datetime,
    end: datetime | None = None,
    description: str | None = None,
    location: str | None = None,
    url: str | None = None,
    organizer_name: str,
    organizer_email: str | None = None,
    now: datetime | None = None,
) -> str:
    """Return ICS text for a single event."""

    dtstamp = _format_utc(now or datetime.now(UTC))
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Gatherly//Events//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:{uid}@gatherly",
        f"DTSTAMP:{dtstamp}",
        f"DTSTART:{_format_utc(start)}",
        f"DTEND:{_format_utc(end or start)}",
        f"SUMMARY:{_escape_text(title)}",
        f"DESCRIPTION:{_escape_text(description or f'Event: {title}')}",
    ]
    if location:
        lines.append(f"LOCATION:{_escape_text(location)}")
    if url:
        lines.append(f"URL:{url}")
    organizer = organizer_email or DEFAULT_ORGANIZER_EMAIL
    cn = organizer_name.replace('"', "'")
    lines.extend(
        [
            f'ORGANIZER;CN="{cn}":mailto:{organizer}',
            "STATUS:CONFIRMED",
            "BEGIN:VALARM",
            "ACTION:DISPLAY",
            "DESCRIPTION:Event reminder",
            "TRIGGER:-PT1H",
            "END:VALARM",
            "END:VEVENT",
            "END:VCALENDAR",
        ]
    )
    return "\r\n".join(_fold(line) for line in lines) + "\r\n"


def event_ics(
    event: Event,
    *,
    organizer_name: str,
    url: str | None = None,
    now: datetime | None = None,
) -> str:
    """Return ICS text built from an :class:`Event` row."""

    return generate_ics(
        uid=event.id,
        title=event.title,
        start=event.start_time,
        end=event.end_time,
        description=event.description,
        location=event.location_text,
        url=url,
        organizer_name=organizer_name,
        now=now,
    )
