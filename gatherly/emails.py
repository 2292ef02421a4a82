"""Email messages sent by Gatherly.

Each ``send_*`` function renders one Jinja2 template from
``templates/emails`` and hands it to a :class:`~gatherly.mailer.Mailer`.
Delivery errors propagate; callers decide whether a failure matters.
"""

from __future__ import annotations

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .ics import event_ics
from .mailer import Attachment, Mailer
from .models import Community, Event
from .utils import format_event_date, format_event_time

TEMPLATE_DIR = Path(__file__).parent / "templates" / "emails"

EXTERNAL_PLATFORM_NAMES = {
    "google_forms": "Google Forms",
    "microsoft_forms": "Microsoft Forms",
    "luma": "Luma",
    "eventbrite": "Eventbrite",
}

REMINDER_SUBJECT_SUFFIX = {
    "1-day": "tomorrow",
    "3-hours": "starting in 3 hours",
    "1-hour": "starting in 1 hour",
}

env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def external_platform_name(platform: str | None) -> str:
    return EXTERNAL_PLATFORM_NAMES.get(platform or "", "the registration page")


def event_context(event: Event, community: Community, event_link: str) -> dict:
    return {
        "event_title": event.title,
        "community_name": community.name,
        "event_date": format_event_date(event.start_time, event.timezone),
        "event_time": format_event_time(event.start_time, event.timezone),
        "event_link": event_link,
        "location_address": event.location_address,
        "online_meeting_link": event.online_meeting_link,
    }


def calendar_attachment(event: Event, community: Community, event_link: str) -> Attachment:
    return Attachment(
        filename="invite.ics",
        content=event_ics(event, organizer_name=community.name, url=event_link),
    )


def render(template_name: str, **context) -> str:
    return env.get_template(template_name).render(**context)


def _send(
    mailer: Mailer,
    template_name: str,
    *,
    to: str,
    subject: str,
    attachments: list[Attachment] | None = None,
    **context,
) -> str:
    html = render(template_name, subject=subject, **context)
    return mailer.send(to=to, subject=subject, html=html, attachments=attachments)


def send_verification_email(
    mailer: Mailer,
    *,
    event: Event,
    community: Community,
    recipient_name: str,
    recipient_email: str,
    verification_link: str,
    register_account_link: str,
) -> str:
    return _send(
        mailer,
        "verification.html",
        to=recipient_email,
        subject=f"Verify your registration for {event.title}",
        event_title=event.title,
        community_name=community.name,
        recipient_name=recipient_name,
        verification_link=verification_link,
        register_account_link=register_account_link,
    )


def send_registration_confirmation_email(
    mailer: Mailer,
    *,
    event: Event,
    community: Community,
    recipient_name: str,
    recipient_email: str,
    event_link: str,
    register_account_link: str | None = None,
) -> str:
    return _send(
        mailer,
        "registration_confirmation.html",
        to=recipient_email,
        subject=f"You're registered for {event.title}!",
        attachments=[calendar_attachment(event, community, event_link)],
        recipient_name=recipient_name,
        register_account_link=register_account_link,
        **event_context(event, community, event_link),
    )


def send_registration_request_email(
    mailer: Mailer,
    *,
    event: Event,
    community: Community,
    recipient_name: str,
    recipient_email: str,
    event_link: str,
) -> str:
    return _send(
        mailer,
        "registration_request.html",
        to=recipient_email,
        subject=f"Registration request received for {event.title}",
        recipient_name=recipient_name,
        **event_context(event, community, event_link),
    )


def send_subscription_confirmation_email(
    mailer: Mailer,
    *,
    event: Event,
    community: Community,
    recipient_name: str,
    recipient_email: str,
    event_link: str,
    register_account_link: str | None = None,
) -> str:
    return _send(
        mailer,
        "subscription_confirmation.html",
        to=recipient_email,
        subject=f"You're subscribed to updates for {event.title}",
        attachments=[calendar_attachment(event, community, event_link)],
        recipient_name=recipient_name,
        register_account_link=register_account_link,
        external_registration_url=event.external_registration_url or "",
        external_platform_name=external_platform_name(event.external_platform),
        **event_context(event, community, event_link),
    )


def send_status_update_email(
    mailer: Mailer,
    *,
    event: Event,
    community: Community,
    recipient_name: str,
    recipient_email: str,
    event_link: str,
    status: str,
) -> str:
    attachments = None
    if status == "approved":
        attachments = [calendar_attachment(event, community, event_link)]
    subjects = {
        "approved": f"Your registration for {event.title} was approved",
        "rejected": f"Update on your registration for {event.title}",
        "pending": f"Your registration for {event.title} is under review",
    }
    return _send(
        mailer,
        "status_update.html",
        to=recipient_email,
        subject=subjects[status],
        attachments=attachments,
        recipient_name=recipient_name,
        status=status,
        **event_context(event, community, event_link),
    )


def send_collaboration_invite_email(
    mailer: Mailer,
    *,
    event: Event,
    host_community: Community,
    co_host_community: Community,
    recipient_email: str,
    invite_link: str,
    event_link: str,
    invited_by_name: str,
) -> str:
    return _send(
        mailer,
        "collaboration_invite.html",
        to=recipient_email,
        subject=f"{host_community.name} invited {co_host_community.name} to co-host {event.title}",
        event_title=event.title,
        host_community_name=host_community.name,
        co_host_community_name=co_host_community.name,
        invite_link=invite_link,
        event_link=event_link,
        invited_by_name=invited_by_name,
    )


def send_collaboration_accepted_email(
    mailer: Mailer,
    *,
    event: Event,
    host_community: Community,
    co_host_community: Community,
    recipient_email: str,
    event_link: str,
) -> str:
    return _send(
        mailer,
        "collaboration_accepted.html",
        to=recipient_email,
        subject=f"{co_host_community.name} is now co-hosting {event.title}",
        event_title=event.title,
        host_community_name=host_community.name,
        co_host_community_name=co_host_community.name,
        event_link=event_link,
    )


def send_collaboration_event_email(
    mailer: Mailer,
    *,
    event: Event,
    host_community: Community,
    co_host_community: Community,
    recipient_email: str,
    recipient_name: str,
    event_link: str,
    is_new_event: bool,
) -> str:
    if is_new_event:
        subject = f"New event: {event.title} by {host_community.name} & {co_host_community.name}"
    else:
        subject = f"{co_host_community.name} is co-hosting {event.title}"
    return _send(
        mailer,
        "collaboration_event.html",
        to=recipient_email,
        subject=subject,
        recipient_name=recipient_name,
        host_community_name=host_community.name,
        co_host_community_name=co_host_community.name,
        is_new_event=is_new_event,
        **event_context(event, host_community, event_link),
    )


def send_registration_notification_email(
    mailer: Mailer,
    *,
    event: Event,
    host_community: Community,
    co_host_community_names: list[str],
    registrant_name: str,
    registrant_email: str,
    recipient_email: str,
    recipient_name: str,
    event_link: str,
) -> str:
    return _send(
        mailer,
        "registration_notification.html",
        to=recipient_email,
        subject=f"New registration for {event.title}",
        recipient_name=recipient_name,
        registrant_name=registrant_name,
        registrant_email=registrant_email,
        host_community_name=host_community.name,
        co_host_community_names=co_host_community_names,
        **event_context(event, host_community, event_link),
    )


def send_reminder_email(
    mailer: Mailer,
    *,
    event: Event,
    community: Community,
    recipient_name: str,
    recipient_email: str,
    event_link: str,
    reminder_time: str,
) -> str:
    return _send(
        mailer,
        "reminder.html",
        to=recipient_email,
        subject=f"Reminder: {event.title} is {REMINDER_SUBJECT_SUFFIX[reminder_time]}!",
        recipient_name=recipient_name,
        reminder_time=reminder_time,
        custom_message=event.reminder_message,
        **event_context(event, community, event_link),
    )


def send_schedule_update_email(
    mailer: Mailer,
    *,
    event: Event,
    community: Community,
    recipient_name: str,
    recipient_email: str,
    event_link: str,
) -> str:
    return _send(
        mailer,
        "schedule_update.html",
        to=recipient_email,
        subject=f"Schedule update: {event.title}",
        attachments=[calendar_attachment(event, community, event_link)],
        recipient_name=recipient_name,
        **event_context(event, community, event_link),
    )
