"""SQLAlchemy models for Gatherly."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

COMMUNITY_ROLES = ("owner", "admin", "member")
EVENT_STATUSES = ("draft", "published", "cancelled")
EVENT_TYPES = ("in-person", "online", "hybrid")
REGISTRATION_TYPES = ("internal", "external")
RSVP_STATUSES = ("going", "not_going", "maybe")
APPROVAL_STATUSES = ("pending", "approved", "rejected")
COLLABORATION_ROLES = ("host", "co-host")
COLLABORATION_STATUSES = ("pending", "accepted", "rejected")
REMINDER_BUCKETS = ("1-hour", "3-hours", "1-day")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(320), nullable=False, unique=True)
    full_name = Column(String(255), nullable=True)
    api_token = Column(String(128), nullable=False, unique=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    memberships = relationship(
        "CommunityMember", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str:
        return self.full_name or self.email.split("@")[0]


class Community(Base):
    __tablename__ = "communities"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(128), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    creator = relationship("User")
    members = relationship(
        "CommunityMember", back_populates="community", cascade="all, delete-orphan"
    )
    events = relationship("Event", back_populates="community")


class CommunityMember(Base):
    __tablename__ = "community_members"
    __table_args__ = (
        UniqueConstraint("community_id", "user_id", name="uq_community_member"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    community_id = Column(
        String(36), ForeignKey("communities.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String(16), nullable=False, default="member")
    joined_at = Column(DateTime, default=_now, nullable=False)

    community = relationship("Community", back_populates="members")
    user = relationship("User", back_populates="memberships")


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    community_id = Column(String(36), ForeignKey("communities.id"), nullable=False)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")
    capacity = Column(Integer, nullable=True)
    status = Column(String(16), nullable=False, default="draft")
    event_type = Column(String(16), nullable=False, default="in-person")
    registration_type = Column(String(16), nullable=False, default="internal")
    external_registration_url = Column(String(2048), nullable=True)
    external_platform = Column(String(32), nullable=True)
    location_address = Column(String(512), nullable=True)
    online_meeting_link = Column(String(2048), nullable=True)
    is_approve_required = Column(Boolean, default=False, nullable=False)
    custom_questions = Column(JSON, nullable=True)
    reminder_times = Column(JSON, nullable=True)
    reminder_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    community = relationship("Community", back_populates="events")
    creator = relationship("User")
    registrations = relationship(
        "EventRegistration",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    collaborations = relationship(
        "EventCollaboration",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="EventCollaboration.created_at",
    )

    @property
    def is_external(self) -> bool:
        return self.registration_type == "external"

    @property
    def location_text(self) -> str | None:
        return self.location_address or self.online_meeting_link


class EventRegistration(Base):
    __tablename__ = "event_registrations"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_registration_user"),
        UniqueConstraint(
            "event_id", "anonymous_email", name="uq_registration_anonymous_email"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    anonymous_name = Column(String(255), nullable=True)
    anonymous_email = Column(String(320), nullable=True)
    anonymous_phone = Column(String(32), nullable=True)
    rsvp_status = Column(String(16), nullable=False, default="going")
    is_verified = Column(Boolean, default=False, nullable=False)
    approval_status = Column(String(16), nullable=False, default="approved")
    verification_token = Column(String(128), nullable=True, unique=True)
    token_expires_at = Column(DateTime, nullable=True)
    custom_answers = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="registrations")
    user = relationship("User")
    sent_reminders = relationship(
        "SentReminder",
        back_populates="registration",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


class EventCollaboration(Base):
    __tablename__ = "event_collaborations"
    __table_args__ = (
        UniqueConstraint("event_id", "community_id", name="uq_collaboration_pair"),
        Index(
            "uq_collaboration_single_host",
            "event_id",
            unique=True,
            sqlite_where=text("role = 'host'"),
            postgresql_where=text("role = 'host'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    community_id = Column(
        String(36), ForeignKey("communities.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String(16), nullable=False, default="co-host")
    status = Column(String(16), nullable=False, default="pending")
    invited_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    invited_at = Column(DateTime, default=_now, nullable=False)
    accepted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="collaborations")
    community = relationship("Community")


class SentReminder(Base):
    __tablename__ = "sent_reminders"
    __table_args__ = (
        UniqueConstraint(
            "registration_id", "reminder_time", name="uq_sent_reminder_bucket"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    registration_id = Column(
        String(36),
        ForeignKey("event_registrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    reminder_time = Column(String(16), nullable=False)
    recipient_email = Column(String(320), nullable=False)
    sent_at = Column(DateTime, default=_now, nullable=False)

    registration = relationship("EventRegistration", back_populates="sent_reminders")
