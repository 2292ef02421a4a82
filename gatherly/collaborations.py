"""Co-hosting workflow between communities.

A host community invites another community to co-host one of its events.
The invitation is a ``pending`` co-host row; owners or admins of the invited
community accept or reject it, after which the row never changes again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from . import crud, emails
from .config import settings
from .mailer import EmailConfigurationError, EmailDeliveryError, Mailer
from .models import Community, Event, EventCollaboration, User
from .notifications import CollaborationAcceptedNotification, NotificationPayload
from .results import ActionResult, fail, forbidden, not_found, ok, unauthorized

logger = logging.getLogger("uvicorn.error")


class _CollaborationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InviteCollaborationRequest(_CollaborationRequest):
    intent: Literal["invite-collaboration"]
    co_host_community_id: str = Field(default="", alias="coHostCommunityId")


class AcceptCollaborationRequest(_CollaborationRequest):
    intent: Literal["accept-collaboration"]
    collaboration_id: str = Field(default="", alias="collaborationId")


class RejectCollaborationRequest(_CollaborationRequest):
    intent: Literal["reject-collaboration"]
    collaboration_id: str = Field(default="", alias="collaborationId")


class RemoveCollaborationRequest(_CollaborationRequest):
    intent: Literal["remove-collaboration"]
    collaboration_id: str = Field(default="", alias="collaborationId")


CollaborationRequest = Annotated[
    Union[
        InviteCollaborationRequest,
        AcceptCollaborationRequest,
        RejectCollaborationRequest,
        RemoveCollaborationRequest,
    ],
    Field(discriminator="intent"),
]
collaboration_request_adapter: TypeAdapter[CollaborationRequest] = TypeAdapter(
    CollaborationRequest
)


@dataclass
class CollaborationContext:
    session: Session
    mailer: Mailer
    event: Event
    user: User
    notify: Callable[[NotificationPayload], None] | None = None

    @property
    def host_community(self) -> Community:
        return self.event.community

    @property
    def event_link(self) -> str:
        return settings.absolute_url(
            f"/c/{self.host_community.slug}/events/{self.event.id}"
        )


def serialize_collaboration(collaboration: EventCollaboration) -> dict[str, Any]:
    return {
        "id": collaboration.id,
        "event_id": collaboration.event_id,
        "community_id": collaboration.community_id,
        "role": collaboration.role,
        "status": collaboration.status,
        "invited_by": collaboration.invited_by,
        "invited_at": collaboration.invited_at.isoformat() if collaboration.invited_at else None,
        "accepted_at": collaboration.accepted_at.isoformat() if collaboration.accepted_at else None,
    }


def is_new_event(event: Event, collaboration: EventCollaboration) -> bool:
    """Whether the co-host was invited while the event was still fresh.

    An invitation sent within ``new_event_window_hours`` of the event's
    creation means the event is announced together with its co-host.
    """
    invited_at = collaboration.invited_at or collaboration.created_at
    return invited_at - event.created_at <= settings.new_event_window


def _can_manage_host(ctx: CollaborationContext) -> bool:
    if ctx.event.created_by == ctx.user.id:
        return True
    return crud.is_community_owner_or_admin(
        ctx.session, ctx.event.community_id, ctx.user.id
    )


def _load_collaboration(
    ctx: CollaborationContext, collaboration_id: str
) -> EventCollaboration | ActionResult:
    if not collaboration_id:
        return fail("Collaboration ID required")
    collaboration = ctx.session.get(EventCollaboration, collaboration_id)
    if collaboration is None or collaboration.event_id != ctx.event.id:
        return not_found("Collaboration not found")
    return collaboration


def handle_invite(
    ctx: CollaborationContext, request: InviteCollaborationRequest
) -> ActionResult:
    if not _can_manage_host(ctx):
        return forbidden("Only host community can invite collaborators")
    co_host_id = request.co_host_community_id.strip()
    if not co_host_id:
        return fail("Co-host community ID required")
    if co_host_id == ctx.event.community_id:
        return fail("Cannot invite your own community")
    co_host = ctx.session.get(Community, co_host_id)
    if co_host is None:
        return not_found("Co-host community not found")

    try:
        collaboration = crud.create_collaboration_invite(
            ctx.session, event=ctx.event, community=co_host, invited_by=ctx.user
        )
    except ValueError as exc:
        return fail(str(exc), status_code=409)

    recipient = crud.get_user_email(ctx.session, co_host.created_by)
    if recipient:
        try:
            emails.send_collaboration_invite_email(
                ctx.mailer,
                event=ctx.event,
                host_community=ctx.host_community,
                co_host_community=co_host,
                recipient_email=recipient,
                invite_link=settings.absolute_url(
                    f"/c/{co_host.slug}/collaboration-invite/{collaboration.id}"
                ),
                event_link=ctx.event_link,
                invited_by_name=ctx.user.display_name,
            )
        except (EmailConfigurationError, EmailDeliveryError) as exc:
            logger.error("Failed to send collaboration invite to %s: %s", recipient, exc)
    logger.info(
        "Community %s invited %s to co-host %s",
        ctx.event.community_id,
        co_host.id,
        ctx.event.id,
    )
    return ok(collaboration=serialize_collaboration(collaboration))


def _resolve(
    ctx: CollaborationContext, collaboration_id: str, *, status: str, verb: str
) -> EventCollaboration | ActionResult:
    collaboration = _load_collaboration(ctx, collaboration_id)
    if isinstance(collaboration, ActionResult):
        return collaboration
    if not crud.is_community_owner_or_admin(
        ctx.session, collaboration.community_id, ctx.user.id
    ):
        return forbidden(f"Only community owners can {verb} collaborations")
    try:
        return crud.set_collaboration_status(
            ctx.session, collaboration=collaboration, status=status
        )
    except ValueError as exc:
        return fail(str(exc), status_code=409)


def handle_accept(
    ctx: CollaborationContext, request: AcceptCollaborationRequest
) -> ActionResult:
    collaboration = _resolve(
        ctx, request.collaboration_id, status="accepted", verb="accept"
    )
    if isinstance(collaboration, ActionResult):
        return collaboration
    co_host = collaboration.community

    recipient = crud.get_user_email(ctx.session, ctx.host_community.created_by)
    if recipient:
        try:
            emails.send_collaboration_accepted_email(
                ctx.mailer,
                event=ctx.event,
                host_community=ctx.host_community,
                co_host_community=co_host,
                recipient_email=recipient,
                event_link=ctx.event_link,
            )
        except (EmailConfigurationError, EmailDeliveryError) as exc:
            logger.error("Failed to send collaboration accepted email to %s: %s", recipient, exc)

    notification_type = (
        "collaboration-accepted-new-event"
        if is_new_event(ctx.event, collaboration)
        else "collaboration-accepted-existing-event"
    )
    if ctx.notify is not None:
        ctx.notify(
            CollaborationAcceptedNotification(
                type=notification_type,
                event_id=ctx.event.id,
                host_community_id=ctx.host_community.id,
                co_host_community_id=co_host.id,
            )
        )
    return ok(collaboration=serialize_collaboration(collaboration))


def handle_reject(
    ctx: CollaborationContext, request: RejectCollaborationRequest
) -> ActionResult:
    collaboration = _resolve(
        ctx, request.collaboration_id, status="rejected", verb="reject"
    )
    if isinstance(collaboration, ActionResult):
        return collaboration
    return ok(collaboration=serialize_collaboration(collaboration))


def handle_remove(
    ctx: CollaborationContext, request: RemoveCollaborationRequest
) -> ActionResult:
    if not _can_manage_host(ctx):
        return forbidden("Only host community can remove collaborations")
    collaboration = _load_collaboration(ctx, request.collaboration_id)
    if isinstance(collaboration, ActionResult):
        return collaboration
    try:
        crud.delete_collaboration(ctx.session, collaboration)
    except ValueError as exc:
        return fail(str(exc))
    return ok()


INTENT_HANDLERS: dict[str, Callable[[CollaborationContext, Any], ActionResult]] = {
    "invite-collaboration": handle_invite,
    "accept-collaboration": handle_accept,
    "reject-collaboration": handle_reject,
    "remove-collaboration": handle_remove,
}


def handle_collaboration_action(
    session: Session,
    mailer: Mailer,
    *,
    event_id: str,
    user: User | None,
    form: dict[str, Any],
    notify: Callable[[NotificationPayload], None] | None = None,
) -> ActionResult:
    if user is None:
        return unauthorized()
    event = session.get(Event, event_id)
    if event is None:
        return not_found("Event not found")
    if crud.get_host_collaboration(session, event.id) is None:
        return not_found("Host community not found")
    try:
        request = collaboration_request_adapter.validate_python(form)
    except ValidationError:
        return fail("Invalid intent")
    ctx = CollaborationContext(
        session=session, mailer=mailer, event=event, user=user, notify=notify
    )
    return INTENT_HANDLERS[request.intent](ctx, request)
