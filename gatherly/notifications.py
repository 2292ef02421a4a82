"""Email fan-out to community members and organizers.

Three notification kinds are supported, discriminated on ``type``:

``collaboration-accepted-new-event``
    A co-host joined an event that had not been announced yet; members of
    both the co-host and the host community hear about it.
``collaboration-accepted-existing-event``
    A co-host joined an event that was already live; only the co-host's
    members are told.
``registration-notification``
    Someone registered; owners and admins of the host and of every accepted
    co-host are told.

Sends are paced by ``email_fanout_delay_seconds`` to stay under the
provider's rate limit. A failed send is logged and counted; it never stops
the batch.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sqlalchemy.orm import Session

from . import crud, emails
from .config import settings
from .database import get_session
from .mailer import EmailConfigurationError, EmailDeliveryError, Mailer
from .models import Community, Event, User
from .results import ActionResult, not_found, ok

logger = logging.getLogger("uvicorn.error")


class _NotificationBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_id: str = Field(alias="eventId")


class CollaborationAcceptedNotification(_NotificationBase):
    type: Literal[
        "collaboration-accepted-new-event", "collaboration-accepted-existing-event"
    ]
    host_community_id: str = Field(alias="hostCommunityId")
    co_host_community_id: str = Field(alias="coHostCommunityId")

    @property
    def is_new_event(self) -> bool:
        return self.type == "collaboration-accepted-new-event"


class RegistrationNotification(_NotificationBase):
    type: Literal["registration-notification"]
    registrant_name: str = Field(alias="registrantName")
    registrant_email: str = Field(alias="registrantEmail")


NotificationPayload = Annotated[
    Union[CollaborationAcceptedNotification, RegistrationNotification],
    Field(discriminator="type"),
]
notification_adapter: TypeAdapter[NotificationPayload] = TypeAdapter(NotificationPayload)


def event_link(event: Event, community: Community) -> str:
    return settings.absolute_url(f"/c/{community.slug}/events/{event.id}")


def _fan_out(recipients: Iterable[str], send_one: Callable[[str], object]) -> tuple[int, int]:
    sent = failed = 0
    delay = settings.email_fanout_delay_seconds
    for index, recipient in enumerate(recipients):
        if index and delay > 0:
            time.sleep(delay)
        try:
            send_one(recipient)
        except (EmailConfigurationError, EmailDeliveryError) as exc:
            failed += 1
            logger.warning("Notification to %s failed: %s", recipient, exc)
        else:
            sent += 1
    return sent, failed


def _notify_collaboration_accepted(
    session: Session, mailer: Mailer, payload: CollaborationAcceptedNotification
) -> ActionResult:
    event = session.get(Event, payload.event_id)
    host = session.get(Community, payload.host_community_id)
    co_host = session.get(Community, payload.co_host_community_id)
    if not event or not host or not co_host:
        return not_found("Event or community not found")

    recipients = crud.community_member_emails(session, co_host.id)
    if payload.is_new_event:
        recipients += crud.community_member_emails(session, host.id)
    link = event_link(event, host)

    def send_one(email: str) -> str:
        return emails.send_collaboration_event_email(
            mailer,
            event=event,
            host_community=host,
            co_host_community=co_host,
            recipient_email=email,
            recipient_name=email.split("@")[0],
            event_link=link,
            is_new_event=payload.is_new_event,
        )

    sent, failed = _fan_out(dict.fromkeys(recipients), send_one)
    logger.info(
        "Collaboration fan-out for %s (%s): %s sent, %s failed",
        event.id,
        payload.type,
        sent,
        failed,
    )
    return ok("Collaboration notifications sent", sent=sent, failed=failed)


def _notify_registration(
    session: Session, mailer: Mailer, payload: RegistrationNotification
) -> ActionResult:
    event = session.get(Event, payload.event_id)
    if not event:
        return not_found("Event not found")
    host = event.community
    co_hosts = crud.accepted_co_host_communities(session, event.id)

    admin_ids = crud.community_admin_user_ids(session, host.id)
    for community in co_hosts:
        admin_ids += crud.community_member_user_ids(
            session, community.id, roles=crud.ADMIN_ROLES
        )
    admins = [session.get(User, user_id) for user_id in dict.fromkeys(admin_ids)]
    by_email = {admin.email: admin for admin in admins if admin is not None}
    link = event_link(event, host)
    co_host_names = [community.name for community in co_hosts]

    def send_one(email: str) -> str:
        return emails.send_registration_notification_email(
            mailer,
            event=event,
            host_community=host,
            co_host_community_names=co_host_names,
            registrant_name=payload.registrant_name,
            registrant_email=payload.registrant_email,
            recipient_email=email,
            recipient_name=by_email[email].display_name,
            event_link=link,
        )

    sent, failed = _fan_out(by_email, send_one)
    logger.info(
        "Registration fan-out for %s: %s sent, %s failed", event.id, sent, failed
    )
    return ok("Registration notifications sent", sent=sent, failed=failed)


NOTIFICATION_HANDLERS: dict[str, Callable[[Session, Mailer, NotificationPayload], ActionResult]] = {
    "collaboration-accepted-new-event": _notify_collaboration_accepted,
    "collaboration-accepted-existing-event": _notify_collaboration_accepted,
    "registration-notification": _notify_registration,
}


def dispatch_notification(
    session: Session, mailer: Mailer, payload: NotificationPayload
) -> ActionResult:
    return NOTIFICATION_HANDLERS[payload.type](session, mailer, payload)


def run_notification(mailer: Mailer, payload: NotificationPayload) -> None:
    """Background-task entry point with its own transaction scope."""
    try:
        with get_session() as session:
            dispatch_notification(session, mailer, payload)
    except Exception:
        logger.exception("Notification fan-out %s failed", payload.type)
