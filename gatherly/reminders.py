"""Reminder emails sent ahead of an event's start time.

A run is triggered per bucket (``1-hour``, ``3-hours`` or ``1-day``) by an
external cron hitting ``/api/send-reminders``, by the CLI, or by the optional
in-process scheduler. Runs may overlap and may repeat inside one window;
the ``sent_reminders`` row for (registration, bucket) is claimed before the
email goes out, so each registrant gets at most one reminder per bucket.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import crud, emails
from .config import settings
from .database import get_session
from .mailer import EmailConfigurationError, EmailDeliveryError, Mailer
from .models import Event, EventRegistration, User
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

# bucket -> (lead time, symmetric tolerance)
REMINDER_OFFSETS: dict[str, tuple[timedelta, timedelta]] = {
    "1-hour": (timedelta(hours=1), timedelta(minutes=10)),
    "3-hours": (timedelta(hours=3), timedelta(minutes=15)),
    "1-day": (timedelta(days=1), timedelta(minutes=30)),
}


def reminder_window(bucket: str, now: datetime | None = None) -> tuple[datetime, datetime]:
    """Return the start-time range of events due a ``bucket`` reminder."""
    if bucket not in REMINDER_OFFSETS:
        raise ValueError(f"Unknown reminder bucket: {bucket}")
    offset, tolerance = REMINDER_OFFSETS[bucket]
    target = (now or utcnow()) + offset
    return target - tolerance, target + tolerance


def events_due(session: Session, bucket: str, now: datetime | None = None) -> list[Event]:
    start, end = reminder_window(bucket, now)
    stmt = (
        select(Event)
        .where(
            Event.status == "published",
            Event.start_time >= start,
            Event.start_time <= end,
        )
        .order_by(Event.start_time)
    )
    return [
        event
        for event in session.scalars(stmt).all()
        if bucket in (event.reminder_times or [])
    ]


def _reminder_recipients(session: Session, event: Event) -> list[EventRegistration]:
    stmt = select(EventRegistration).where(
        EventRegistration.event_id == event.id,
        EventRegistration.approval_status == "approved",
        EventRegistration.rsvp_status == "going",
    )
    return list(session.scalars(stmt).all())


def _resolve_participant(
    session: Session, registration: EventRegistration
) -> tuple[str | None, str, str | None]:
    """Return ``(email, name, problem)`` for one registration."""
    if registration.user_id:
        email = crud.get_user_email(session, registration.user_id)
        if not email:
            return None, "", "Could not fetch user email"
        user = session.get(User, registration.user_id)
        return email, user.display_name, None
    if not registration.anonymous_email:
        return None, "", "Anonymous but no email provided"
    return registration.anonymous_email, registration.anonymous_name or "Guest", None


def send_reminders(
    session: Session,
    mailer: Mailer,
    bucket: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Send ``bucket`` reminders for every due event.

    Each claim is committed before its email is sent so a concurrent run
    sees it; a failed send deletes the claim again so a later run retries.
    """
    now = now or utcnow()
    start, end = reminder_window(bucket, now)
    logger.info("Reminder run %s: window %s to %s", bucket, start.isoformat(), end.isoformat())

    events = events_due(session, bucket, now)
    if not events:
        logger.info("No events found for %s reminders", bucket)
        return {"success": True, "reminders_sent": 0, "message": "No events to remind"}

    sent = 0
    failures: list[str] = []
    for event in events:
        logger.info("Processing %s reminders for event %s (%s)", bucket, event.title, event.id)
        event_link = settings.absolute_url(f"/c/{event.community.slug}/events/{event.id}")
        for registration in _reminder_recipients(session, event):
            email, name, problem = _resolve_participant(session, registration)
            if problem:
                logger.warning("Registration %s: %s", registration.id, problem)
                failures.append(f"Registration {registration.id}: {problem}")
                continue

            claim = crud.claim_reminder(
                session,
                registration=registration,
                reminder_time=bucket,
                recipient_email=email,
            )
            if claim is None:
                logger.info("Reminder already sent for registration %s", registration.id)
                continue
            session.commit()

            try:
                emails.send_reminder_email(
                    mailer,
                    event=event,
                    community=event.community,
                    recipient_name=name,
                    recipient_email=email,
                    event_link=event_link,
                    reminder_time=bucket,
                )
            except (EmailConfigurationError, EmailDeliveryError) as exc:
                logger.error("Failed to send reminder to %s: %s", email, exc)
                failures.append(f"{email}: {exc}")
                crud.release_reminder(session, claim)
                session.commit()
                continue
            sent += 1

    logger.info("Reminder run %s complete. Sent: %s, Failed: %s", bucket, sent, len(failures))
    result: dict[str, Any] = {"success": True, "reminders_sent": sent}
    if failures:
        result["failures"] = failures
    return result


def run_reminder_cycle(mailer: Mailer, bucket: str) -> dict[str, Any]:
    """Entry point for the scheduler and the CLI."""
    with get_session() as session:
        return send_reminders(session, mailer, bucket)
