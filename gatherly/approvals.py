"""Organizer actions on registrations: approval, removal and schedule notices."""

from __future__ import annotations

import logging
import time
from datetime import datetime

from sqlalchemy.orm import Session

from . import crud, emails
from .config import settings
from .custom_questions import flatten_answers
from .mailer import EmailConfigurationError, EmailDeliveryError, Mailer
from .models import APPROVAL_STATUSES, Event, EventRegistration, User
from .results import ActionResult, fail, forbidden, not_found, ok, unauthorized

logger = logging.getLogger("uvicorn.error")

NO_PERMISSION = "You do not have permission to manage this event"


def _event_link(event: Event) -> str:
    return settings.absolute_url(f"/c/{event.community.slug}/events/{event.id}")


def resolve_recipient(
    session: Session, registration: EventRegistration
) -> tuple[str | None, str]:
    """Return ``(email, name)`` for a registrant, anonymous or signed in."""
    if registration.anonymous_email:
        return registration.anonymous_email, registration.anonymous_name or "there"
    email = crud.get_user_email(session, registration.user_id)
    user = session.get(User, registration.user_id) if registration.user_id else None
    name = (user.full_name if user else None) or registration.anonymous_name or "there"
    return email, name


def _can_manage_host(session: Session, event: Event, user: User) -> bool:
    return crud.is_community_owner_or_admin(session, event.community_id, user.id)


def _can_manage_any_collaborator(session: Session, event: Event, user: User) -> bool:
    if _can_manage_host(session, event, user):
        return True
    return any(
        crud.is_community_owner_or_admin(session, community.id, user.id)
        for community in crud.accepted_co_host_communities(session, event.id)
    )


def update_registration_status(
    session: Session,
    mailer: Mailer,
    *,
    user: User | None,
    event_id: str | None,
    registration_id: str | None,
    status: str | None,
) -> ActionResult:
    """Set a registration's approval status and email the registrant.

    Setting the status a registration already has changes nothing in the
    database but still sends the email again.
    """
    if user is None:
        return unauthorized("Unauthorized")
    if not registration_id or not event_id or not status:
        return fail("Missing required fields")
    if status not in APPROVAL_STATUSES:
        return fail("Invalid status")

    event = session.get(Event, event_id)
    if event is None:
        return not_found("Event not found")
    if not _can_manage_host(session, event, user):
        return forbidden(NO_PERMISSION)

    registration = session.get(EventRegistration, registration_id)
    if registration is None or registration.event_id != event.id:
        return not_found("Registration not found")

    crud.set_approval_status(session, registration=registration, status=status)

    email, name = resolve_recipient(session, registration)
    if not email:
        logger.warning("No email address for registration %s", registration.id)
        return ok("Status updated, but failed to send email (details not found)")
    try:
        emails.send_status_update_email(
            mailer,
            event=event,
            community=event.community,
            recipient_name=name,
            recipient_email=email,
            event_link=_event_link(event),
            status=status,
        )
    except (EmailConfigurationError, EmailDeliveryError) as exc:
        logger.error("Failed to send status update to %s: %s", email, exc)
        return ok("Status updated, but the notification email could not be sent")
    return ok()


def delete_registration(
    session: Session,
    *,
    user: User | None,
    event_id: str | None,
    registration_id: str | None,
) -> ActionResult:
    """Remove a registration on behalf of a host or accepted co-host admin."""
    if user is None:
        return unauthorized("Unauthorized")
    if not registration_id or not event_id:
        return fail("Missing required fields")
    event = session.get(Event, event_id)
    if event is None:
        return not_found("Event not found")
    if not _can_manage_any_collaborator(session, event, user):
        return forbidden(NO_PERMISSION)

    deleted = crud.delete_registration(
        session, event_id=event.id, registration_id=registration_id
    )
    if not deleted:
        return not_found("Registration not found")
    logger.info("Registration %s removed from event %s by %s", registration_id, event.id, user.id)
    return ok("Registration deleted successfully")


def _serialize_registration(
    session: Session, event: Event, registration: EventRegistration
) -> dict:
    email, name = resolve_recipient(session, registration)
    return {
        "id": registration.id,
        "user_id": registration.user_id,
        "name": name,
        "email": email,
        "is_anonymous": registration.is_anonymous,
        "is_verified": registration.is_verified,
        "rsvp_status": registration.rsvp_status,
        "approval_status": registration.approval_status,
        "registered_at": registration.created_at.isoformat(),
        "answers": flatten_answers(registration.custom_answers, event.custom_questions),
    }


def list_registrations(
    session: Session, *, user: User | None, event_id: str
) -> ActionResult:
    """Every registration of an event, with contact details and answers.

    Open to admins of the host community and of accepted co-host communities.
    """
    if user is None:
        return unauthorized("Unauthorized")
    event = session.get(Event, event_id)
    if event is None:
        return not_found("Event not found")
    if not _can_manage_any_collaborator(session, event, user):
        return forbidden(NO_PERMISSION)
    registrations = [
        _serialize_registration(session, event, registration)
        for registration in crud.list_event_registrations(session, event.id)
    ]
    return ok(registrations=registrations)


def list_attendees(session: Session, event: Event) -> list[dict]:
    """Public attendee names: verified, going and approved registrations."""
    attendees = []
    for registration in crud.registrations_for_notice(session, event.id):
        if registration.user_id:
            user = registration.user
            name = user.full_name if user else None
            if not name:
                continue
        else:
            name = registration.anonymous_name or "Anonymous"
        attendees.append({"id": registration.id, "name": name})
    return attendees


def send_schedule_update(
    session: Session,
    mailer: Mailer,
    *,
    user: User | None,
    event_id: str | None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    timezone: str | None = None,
) -> ActionResult:
    """Email every confirmed attendee the event's schedule.

    When ``start_time`` is given the event is rescheduled first.
    """
    if user is None:
        return unauthorized("Unauthorized")
    if not event_id:
        return fail("Missing required fields")
    event = session.get(Event, event_id)
    if event is None:
        return not_found("Event not found")
    if not _can_manage_host(session, event, user):
        return forbidden(NO_PERMISSION)
    if start_time is not None:
        try:
            crud.update_event_schedule(
                session, event, start_time=start_time, end_time=end_time, timezone=timezone
            )
        except ValueError as exc:
            return fail(str(exc))

    link = _event_link(event)
    delay = settings.email_fanout_delay_seconds
    sent = 0
    failures: list[str] = []
    for index, registration in enumerate(crud.registrations_for_notice(session, event.id)):
        email, name = resolve_recipient(session, registration)
        if not email:
            failures.append(f"Registration {registration.id}: no email address")
            continue
        if index and delay > 0:
            time.sleep(delay)
        try:
            emails.send_schedule_update_email(
                mailer,
                event=event,
                community=event.community,
                recipient_name=name,
                recipient_email=email,
                event_link=link,
            )
        except (EmailConfigurationError, EmailDeliveryError) as exc:
            failures.append(f"{email}: {exc}")
            continue
        sent += 1

    logger.info(
        "Schedule update for %s: %s sent, %s failed", event.id, sent, len(failures)
    )
    result = ok(f"Schedule update sent to {sent} attendees", sent=sent)
    if failures:
        result.payload["failures"] = failures
    return result
