"""CRUD helpers for users, communities, events, registrations and collaborations."""

from __future__ import annotations

import secrets
from datetime import datetime
from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    APPROVAL_STATUSES,
    COMMUNITY_ROLES,
    EVENT_STATUSES,
    EVENT_TYPES,
    REGISTRATION_TYPES,
    REMINDER_BUCKETS,
    Community,
    CommunityMember,
    Event,
    EventCollaboration,
    EventRegistration,
    SentReminder,
    User,
)
from .utils import normalize_email, slugify, to_naive_utc, utcnow

ADMIN_ROLES = ("owner", "admin")

ALREADY_REGISTERED_MESSAGE = "This email is already registered for this event"
VERIFICATION_PENDING_MESSAGE = (
    "A verification email has already been sent to this address"
)


class DuplicateRegistrationError(Exception):
    """Raised when the store rejects a second registration for the same identity."""

    def __init__(self, message: str = ALREADY_REGISTERED_MESSAGE):
        super().__init__(message)
        self.message = message


def sanitize_duplicate_error(
    exc: Exception, *, email: str | None = None, is_verified: bool | None = None
) -> str | None:
    """Return a user-facing message for unique violations, ``None`` otherwise."""
    raw = str(getattr(exc, "orig", None) or exc).lower()
    is_duplicate = isinstance(exc, DuplicateRegistrationError) or any(
        marker in raw for marker in ("duplicate", "unique constraint", "already exists")
    )
    if not is_duplicate:
        return None
    if email and is_verified is False:
        return VERIFICATION_PENDING_MESSAGE
    return ALREADY_REGISTERED_MESSAGE


def _now() -> datetime:
    return utcnow()


def create_user(session: Session, *, email: str, full_name: str | None = None) -> User:
    user = User(
        email=normalize_email(email),
        full_name=(full_name or "").strip() or None,
        api_token=secrets.token_urlsafe(32),
    )
    session.add(user)
    session.flush()
    return user


def get_user_by_token(session: Session, token: str | None) -> User | None:
    if not token:
        return None
    return session.scalars(select(User).where(User.api_token == token)).first()


def get_user_by_email(session: Session, email: str | None) -> User | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return session.scalars(select(User).where(User.email == normalized)).first()


def get_user_email(session: Session, user_id: str | None) -> str | None:
    """Administrative lookup of another user's email address."""
    if not user_id:
        return None
    user = session.get(User, user_id)
    return user.email if user else None


def get_community_by_slug(session: Session, slug: str) -> Community | None:
    normalized = (slug or "").strip().lower()
    if not normalized:
        return None
    return session.scalars(select(Community).where(Community.slug == normalized)).first()


def create_community(
    session: Session,
    *,
    name: str,
    creator: User,
    description: str | None = None,
    slug: str | None = None,
) -> Community:
    """Create a community and make its creator the owner."""
    resolved_slug = slugify(slug or name)
    if not resolved_slug:
        raise ValueError("Invalid community name")
    if get_community_by_slug(session, resolved_slug):
        raise ValueError("A community with this slug already exists")
    community = Community(
        name=name.strip(),
        slug=resolved_slug,
        description=description,
        created_by=creator.id,
    )
    session.add(community)
    session.flush()
    add_community_member(session, community=community, user=creator, role="owner")
    return community


def add_community_member(
    session: Session, *, community: Community, user: User, role: str = "member"
) -> CommunityMember:
    if role not in COMMUNITY_ROLES:
        raise ValueError("Invalid community role")
    stmt = select(CommunityMember).where(
        CommunityMember.community_id == community.id,
        CommunityMember.user_id == user.id,
    )
    member = session.scalars(stmt).first()
    if member:
        member.role = role
    else:
        member = CommunityMember(community_id=community.id, user_id=user.id, role=role)
        session.add(member)
    session.flush()
    return member


def get_membership_role(session: Session, community_id: str, user_id: str) -> str | None:
    stmt = select(CommunityMember.role).where(
        CommunityMember.community_id == community_id,
        CommunityMember.user_id == user_id,
    )
    return session.scalars(stmt).first()


def is_community_owner_or_admin(
    session: Session, community_id: str, user_id: str
) -> bool:
    community = session.get(Community, community_id)
    if community and community.created_by == user_id:
        return True
    return get_membership_role(session, community_id, user_id) in ADMIN_ROLES


def community_member_user_ids(
    session: Session, community_id: str, *, roles: Sequence[str] | None = None
) -> list[str]:
    stmt = select(CommunityMember.user_id).where(
        CommunityMember.community_id == community_id
    )
    if roles:
        stmt = stmt.where(CommunityMember.role.in_(roles))
    return list(session.scalars(stmt).all())


def community_member_emails(session: Session, community_id: str) -> list[str]:
    """Return unique member emails of a community, in join order."""
    stmt = (
        select(User.email)
        .join(CommunityMember, CommunityMember.user_id == User.id)
        .where(CommunityMember.community_id == community_id)
        .order_by(CommunityMember.joined_at)
    )
    return list(dict.fromkeys(session.scalars(stmt).all()))


def community_admin_user_ids(session: Session, community_id: str) -> list[str]:
    """Owner/admin user ids, falling back to the creator when none are recorded."""
    user_ids = community_member_user_ids(session, community_id, roles=ADMIN_ROLES)
    if user_ids:
        return user_ids
    community = session.get(Community, community_id)
    return [community.created_by] if community else []


def create_event(
    session: Session,
    *,
    community: Community,
    creator: User,
    title: str,
    start_time: datetime,
    end_time: datetime | None = None,
    timezone: str = "UTC",
    description: str | None = None,
    capacity: int | None = None,
    status: str = "published",
    event_type: str = "in-person",
    registration_type: str = "internal",
    external_registration_url: str | None = None,
    external_platform: str | None = None,
    location_address: str | None = None,
    online_meeting_link: str | None = None,
    is_approve_required: bool = False,
    custom_questions: dict | None = None,
    reminder_times: Sequence[str] | None = None,
    reminder_message: str | None = None,
) -> Event:
    """Create an event together with its accepted host collaboration row."""
    if status not in EVENT_STATUSES:
        raise ValueError("Invalid event status")
    if event_type not in EVENT_TYPES:
        raise ValueError("Invalid event type")
    if registration_type not in REGISTRATION_TYPES:
        raise ValueError("Invalid registration type")
    buckets = list(dict.fromkeys(reminder_times or []))
    if any(bucket not in REMINDER_BUCKETS for bucket in buckets):
        raise ValueError("Invalid reminder time")
    normalized_start = to_naive_utc(start_time)
    normalized_end = to_naive_utc(end_time)
    if normalized_end and normalized_end <= normalized_start:
        raise ValueError("End time must be after the start time")

    now = _now()
    event = Event(
        community_id=community.id,
        created_by=creator.id,
        title=title,
        description=description,
        start_time=normalized_start,
        end_time=normalized_end,
        timezone=timezone or "UTC",
        capacity=capacity,
        status=status,
        event_type=event_type,
        registration_type=registration_type,
        external_registration_url=external_registration_url,
        external_platform=external_platform,
        location_address=location_address,
        online_meeting_link=online_meeting_link,
        is_approve_required=is_approve_required,
        custom_questions=custom_questions,
        reminder_times=buckets or None,
        reminder_message=reminder_message,
        created_at=now,
    )
    event.collaborations.append(
        EventCollaboration(
            community_id=community.id,
            role="host",
            status="accepted",
            invited_by=creator.id,
            invited_at=now,
            accepted_at=now,
        )
    )
    session.add(event)
    session.flush()
    return event


def update_event_schedule(
    session: Session,
    event: Event,
    *,
    start_time: datetime,
    end_time: datetime | None,
    timezone: str | None = None,
) -> Event:
    normalized_start = to_naive_utc(start_time)
    normalized_end = to_naive_utc(end_time)
    if normalized_end and normalized_end <= normalized_start:
        raise ValueError("End time must be after the start time")
    event.start_time = normalized_start
    event.end_time = normalized_end
    if timezone:
        event.timezone = timezone
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def get_host_collaboration(session: Session, event_id: str) -> EventCollaboration | None:
    stmt = select(EventCollaboration).where(
        EventCollaboration.event_id == event_id,
        EventCollaboration.role == "host",
    )
    return session.scalars(stmt).first()


def accepted_co_host_communities(session: Session, event_id: str) -> list[Community]:
    stmt = (
        select(Community)
        .join(EventCollaboration, EventCollaboration.community_id == Community.id)
        .where(
            EventCollaboration.event_id == event_id,
            EventCollaboration.role == "co-host",
            EventCollaboration.status == "accepted",
        )
        .order_by(EventCollaboration.accepted_at)
    )
    return list(session.scalars(stmt).all())


def find_registration(
    session: Session,
    *,
    event_id: str,
    user_id: str | None = None,
    email: str | None = None,
) -> EventRegistration | None:
    stmt = select(EventRegistration).where(EventRegistration.event_id == event_id)
    if user_id:
        stmt = stmt.where(EventRegistration.user_id == user_id)
    elif email:
        stmt = stmt.where(EventRegistration.anonymous_email == normalize_email(email))
    else:
        return None
    return session.scalars(stmt).first()


def get_registration_by_token(session: Session, token: str) -> EventRegistration | None:
    stmt = select(EventRegistration).where(EventRegistration.verification_token == token)
    return session.scalars(stmt).first()


def create_registration(
    session: Session,
    *,
    event: Event,
    user: User | None = None,
    name: str | None = None,
    email: str | None = None,
    phone: str | None = None,
    is_verified: bool,
    approval_status: str,
    verification_token: str | None = None,
    token_expires_at: datetime | None = None,
    custom_answers: dict | None = None,
    rsvp_status: str = "going",
) -> EventRegistration:
    """Insert a registration; the unique constraints decide duplicates."""
    if approval_status not in APPROVAL_STATUSES:
        raise ValueError("Invalid approval status")
    registration = EventRegistration(
        event_id=event.id,
        user_id=user.id if user else None,
        anonymous_name=None if user else name,
        anonymous_email=None if user else normalize_email(email),
        anonymous_phone=phone,
        rsvp_status=rsvp_status,
        is_verified=is_verified,
        approval_status=approval_status,
        verification_token=verification_token,
        token_expires_at=token_expires_at,
        custom_answers=custom_answers,
    )
    try:
        with session.begin_nested():
            session.add(registration)
            session.flush()
    except IntegrityError as exc:
        raise DuplicateRegistrationError() from exc
    return registration


def mark_registration_verified(
    session: Session, registration: EventRegistration
) -> EventRegistration:
    registration.is_verified = True
    registration.verification_token = None
    registration.token_expires_at = None
    registration.updated_at = _now()
    session.add(registration)
    session.flush()
    return registration


def set_approval_status(
    session: Session, *, registration: EventRegistration, status: str
) -> EventRegistration:
    """Set the approval status; setting the current value again is a no-op."""
    if status not in APPROVAL_STATUSES:
        raise ValueError("Invalid approval status")
    if registration.approval_status != status:
        registration.approval_status = status
        registration.updated_at = _now()
        session.add(registration)
        session.flush()
    return registration


def delete_user_registration(session: Session, *, event_id: str, user_id: str) -> int:
    result = session.execute(
        delete(EventRegistration).where(
            EventRegistration.event_id == event_id,
            EventRegistration.user_id == user_id,
        )
    )
    return result.rowcount or 0


def delete_registration(session: Session, *, event_id: str, registration_id: str) -> int:
    result = session.execute(
        delete(EventRegistration).where(
            EventRegistration.event_id == event_id,
            EventRegistration.id == registration_id,
        )
    )
    return result.rowcount or 0


def registrations_for_notice(session: Session, event_id: str) -> Sequence[EventRegistration]:
    """Verified, going, approved registrations of an event."""
    stmt = select(EventRegistration).where(
        EventRegistration.event_id == event_id,
        EventRegistration.is_verified.is_(True),
        EventRegistration.rsvp_status == "going",
        EventRegistration.approval_status == "approved",
    ).order_by(EventRegistration.created_at.desc())
    return session.scalars(stmt).all()


def list_event_registrations(session: Session, event_id: str) -> Sequence[EventRegistration]:
    """Every registration of an event, newest first."""
    stmt = (
        select(EventRegistration)
        .where(EventRegistration.event_id == event_id)
        .order_by(EventRegistration.created_at.desc())
    )
    return session.scalars(stmt).all()


def get_collaboration(
    session: Session, *, event_id: str, community_id: str
) -> EventCollaboration | None:
    stmt = select(EventCollaboration).where(
        EventCollaboration.event_id == event_id,
        EventCollaboration.community_id == community_id,
    )
    return session.scalars(stmt).first()


def create_collaboration_invite(
    session: Session, *, event: Event, community: Community, invited_by: User
) -> EventCollaboration:
    """Create a pending co-host row; any existing row for the pair blocks it."""
    if get_collaboration(session, event_id=event.id, community_id=community.id):
        raise ValueError("Collaboration already exists")
    collaboration = EventCollaboration(
        event_id=event.id,
        community_id=community.id,
        role="co-host",
        status="pending",
        invited_by=invited_by.id,
        invited_at=_now(),
    )
    try:
        with session.begin_nested():
            session.add(collaboration)
            session.flush()
    except IntegrityError as exc:
        raise ValueError("Collaboration already exists") from exc
    return collaboration


def set_collaboration_status(
    session: Session, *, collaboration: EventCollaboration, status: str
) -> EventCollaboration:
    """Resolve a pending collaboration; resolved rows never move again."""
    if status not in ("accepted", "rejected"):
        raise ValueError("Invalid collaboration status")
    if collaboration.status != "pending":
        raise ValueError(f"Collaboration has already been {collaboration.status}")
    now = _now()
    collaboration.status = status
    collaboration.updated_at = now
    if status == "accepted":
        collaboration.accepted_at = now
    session.add(collaboration)
    session.flush()
    return collaboration


def delete_collaboration(session: Session, collaboration: EventCollaboration) -> None:
    if collaboration.role == "host":
        raise ValueError("The host collaboration cannot be removed")
    session.delete(collaboration)
    session.flush()


def claim_reminder(
    session: Session,
    *,
    registration: EventRegistration,
    reminder_time: str,
    recipient_email: str,
) -> SentReminder | None:
    """Insert the idempotency row, or return ``None`` when it already exists."""
    reminder = SentReminder(
        event_id=registration.event_id,
        registration_id=registration.id,
        reminder_time=reminder_time,
        recipient_email=recipient_email,
        sent_at=_now(),
    )
    try:
        with session.begin_nested():
            session.add(reminder)
            session.flush()
    except IntegrityError:
        return None
    return reminder


def release_reminder(session: Session, reminder: SentReminder) -> None:
    session.delete(reminder)
    session.flush()
