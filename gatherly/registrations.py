"""Registration, subscription and verification flows for events.

Every form post to an event carries an ``intent``. The posted form is parsed
into one of the request models below and handed to the matching function in
``INTENT_HANDLERS``. Handlers return an :class:`~gatherly.results.ActionResult`
and never raise for expected failures. Email problems after a registration
is stored are logged and otherwise ignored.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from . import crud, emails
from .config import settings
from .custom_questions import has_custom_questions, parse_answers, validate_answers
from .mailer import EmailConfigurationError, EmailDeliveryError, Mailer
from .models import Community, Event, EventRegistration, User
from .notifications import NotificationPayload, RegistrationNotification
from .results import ActionResult, fail, not_found, ok, redirect, unauthorized
from .utils import normalize_email, utcnow

logger = logging.getLogger("uvicorn.error")

NAME_AND_EMAIL_REQUIRED = "Name and email are required"
REQUIRED_FIELDS_MISSING = "Please fill in all required fields"
SUBSCRIBE_EXTERNAL_ONLY = "Subscribe is only available for external events"
ALREADY_SUBSCRIBED = "This email is already subscribed to this event"
LOGIN_REQUIRED = "Please login to register for this event"

EMAIL_ERRORS = (EmailConfigurationError, EmailDeliveryError)


class _IntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _AnonymousRequest(_IntentRequest):
    name: str = ""
    email: str = ""

    @property
    def cleaned_name(self) -> str:
        return self.name.strip()

    @property
    def cleaned_email(self) -> str:
        return normalize_email(self.email)


class RegisterRequest(_IntentRequest):
    intent: Literal["register"]
    custom_answers: str | None = None


class AnonymousRegisterRequest(_AnonymousRequest):
    intent: Literal["anonymous-register"]
    source: str | None = Field(default=None, alias="_source")


class AnonymousCustomQuestionsRequest(_AnonymousRequest):
    intent: Literal["anonymous-custom-questions"]
    custom_answers: str | None = None
    source: str | None = Field(default=None, alias="_source")


class SubscribeRequest(_IntentRequest):
    intent: Literal["subscribe"]


class AnonymousSubscribeRequest(_AnonymousRequest):
    intent: Literal["anonymous-subscribe"]


class UnregisterRequest(_IntentRequest):
    intent: Literal["unregister", "unsubscribe"]


RegistrationRequest = Annotated[
    Union[
        RegisterRequest,
        AnonymousRegisterRequest,
        AnonymousCustomQuestionsRequest,
        SubscribeRequest,
        AnonymousSubscribeRequest,
        UnregisterRequest,
    ],
    Field(discriminator="intent"),
]
registration_request_adapter: TypeAdapter[RegistrationRequest] = TypeAdapter(
    RegistrationRequest
)


@dataclass
class RegistrationContext:
    session: Session
    mailer: Mailer
    event: Event
    community: Community
    slug: str
    user: User | None = None
    notify: Callable[[NotificationPayload], None] | None = None

    @property
    def event_path(self) -> str:
        return f"/c/{self.slug}/events/{self.event.id}"

    @property
    def event_link(self) -> str:
        return settings.absolute_url(self.event_path)

    @property
    def register_account_link(self) -> str:
        return settings.absolute_url("/signup")

    def schedule(self, payload: NotificationPayload) -> None:
        if self.notify is not None:
            self.notify(payload)


def parse_registration_request(form: dict[str, Any]) -> RegistrationRequest | None:
    try:
        return registration_request_adapter.validate_python(form)
    except ValidationError:
        return None


def _approval_status(event: Event) -> str:
    return "pending" if event.is_approve_required else "approved"


def _log_email_failure(kind: str, recipient: str, exc: Exception) -> None:
    logger.error("Failed to send %s email to %s: %s", kind, recipient, exc)


def _notify_organizers(ctx: RegistrationContext, *, name: str, email: str) -> None:
    ctx.schedule(
        RegistrationNotification(
            type="registration-notification",
            event_id=ctx.event.id,
            registrant_name=name,
            registrant_email=email,
        )
    )


def _verification_redirect(ctx: RegistrationContext, email: str, source: str | None) -> ActionResult:
    if source == "sidebar":
        return ok(verificationSent=True, email=email)
    query = urlencode({"email": email})
    return redirect(f"{ctx.event_path}/verification-sent?{query}")


def _create_unverified(
    ctx: RegistrationContext,
    *,
    name: str,
    email: str,
    existing: EventRegistration | None,
    custom_answers: dict | None = None,
) -> ActionResult | EventRegistration:
    token = secrets.token_hex(32)
    try:
        return crud.create_registration(
            ctx.session,
            event=ctx.event,
            name=name,
            email=email,
            phone=(custom_answers or {}).get("phone") or None,
            is_verified=False,
            approval_status=_approval_status(ctx.event),
            verification_token=token,
            token_expires_at=utcnow() + settings.verification_token_ttl,
            custom_answers=custom_answers,
        )
    except crud.DuplicateRegistrationError as exc:
        # A concurrent submit won the insert; report what that row looks like.
        winner = existing or crud.find_registration(
            ctx.session, event_id=ctx.event.id, email=email
        )
        return fail(
            crud.sanitize_duplicate_error(
                exc, email=email, is_verified=winner.is_verified if winner else None
            ),
            status_code=409,
        )


def _send_verification(ctx: RegistrationContext, registration: EventRegistration) -> None:
    link = settings.absolute_url(
        f"{ctx.event_path}/verify?{urlencode({'token': registration.verification_token})}"
    )
    try:
        emails.send_verification_email(
            ctx.mailer,
            event=ctx.event,
            community=ctx.community,
            recipient_name=registration.anonymous_name,
            recipient_email=registration.anonymous_email,
            verification_link=link,
            register_account_link=ctx.register_account_link,
        )
    except EMAIL_ERRORS as exc:
        _log_email_failure("verification", registration.anonymous_email, exc)


def handle_anonymous_register(
    ctx: RegistrationContext, request: AnonymousRegisterRequest
) -> ActionResult:
    name, email = request.cleaned_name, request.cleaned_email
    if not name or not email:
        return fail(NAME_AND_EMAIL_REQUIRED)

    if has_custom_questions(ctx.event.custom_questions):
        return ok(needsCustomQuestions=True, anonymousName=name, anonymousEmail=email)

    existing = crud.find_registration(ctx.session, event_id=ctx.event.id, email=email)
    if existing:
        message = (
            crud.ALREADY_REGISTERED_MESSAGE
            if existing.is_verified
            else crud.VERIFICATION_PENDING_MESSAGE
        )
        return fail(message, status_code=409)

    created = _create_unverified(ctx, name=name, email=email, existing=existing)
    if isinstance(created, ActionResult):
        return created
    _send_verification(ctx, created)
    return _verification_redirect(ctx, email, request.source)


def handle_anonymous_custom_questions(
    ctx: RegistrationContext, request: AnonymousCustomQuestionsRequest
) -> ActionResult:
    name, email = request.cleaned_name, request.cleaned_email
    if not name or not email:
        return fail(NAME_AND_EMAIL_REQUIRED)

    answers = parse_answers(request.custom_answers)
    if ctx.event.custom_questions:
        errors = validate_answers(answers, ctx.event.custom_questions)
        if errors:
            return fail(REQUIRED_FIELDS_MISSING, validationErrors=errors)

    existing = crud.find_registration(ctx.session, event_id=ctx.event.id, email=email)
    if existing:
        message = (
            crud.ALREADY_REGISTERED_MESSAGE
            if existing.is_verified
            else crud.VERIFICATION_PENDING_MESSAGE
        )
        return fail(message, status_code=409)

    created = _create_unverified(
        ctx, name=name, email=email, existing=existing, custom_answers=answers
    )
    if isinstance(created, ActionResult):
        return created
    _send_verification(ctx, created)
    return _verification_redirect(ctx, email, request.source)


def handle_anonymous_subscribe(
    ctx: RegistrationContext, request: AnonymousSubscribeRequest
) -> ActionResult:
    if not ctx.event.is_external:
        return fail(SUBSCRIBE_EXTERNAL_ONLY)
    name, email = request.cleaned_name, request.cleaned_email
    if not name or not email:
        return fail(NAME_AND_EMAIL_REQUIRED)
    if crud.find_registration(ctx.session, event_id=ctx.event.id, email=email):
        return fail(ALREADY_SUBSCRIBED, status_code=409)

    try:
        crud.create_registration(
            ctx.session,
            event=ctx.event,
            name=name,
            email=email,
            is_verified=True,
            approval_status="approved",
        )
    except crud.DuplicateRegistrationError as exc:
        return fail(
            crud.sanitize_duplicate_error(exc, email=email, is_verified=True),
            status_code=409,
        )

    _send_subscription_confirmation(ctx, name=name, email=email)
    return ok("Successfully subscribed for event updates!")


def _send_subscription_confirmation(ctx: RegistrationContext, *, name: str, email: str) -> None:
    try:
        emails.send_subscription_confirmation_email(
            ctx.mailer,
            event=ctx.event,
            community=ctx.community,
            recipient_name=name,
            recipient_email=email,
            event_link=ctx.event_link,
            register_account_link=ctx.register_account_link,
        )
    except EMAIL_ERRORS as exc:
        _log_email_failure("subscription confirmation", email, exc)


def _user_conflict(ctx: RegistrationContext, user: User) -> bool:
    """True when the user's email already holds an anonymous row for this event."""
    return (
        crud.find_registration(ctx.session, event_id=ctx.event.id, email=user.email)
        is not None
    )


def handle_register(ctx: RegistrationContext, request: RegisterRequest) -> ActionResult:
    user = ctx.user
    if crud.find_registration(ctx.session, event_id=ctx.event.id, user_id=user.id):
        return fail("You are already registered for this event", status_code=409)
    if _user_conflict(ctx, user):
        return fail(crud.ALREADY_REGISTERED_MESSAGE, status_code=409)

    answers = parse_answers(request.custom_answers)
    if ctx.event.custom_questions and answers:
        errors = validate_answers(answers, ctx.event.custom_questions)
        if errors:
            return fail(REQUIRED_FIELDS_MISSING, validationErrors=errors)

    approval_status = _approval_status(ctx.event)
    try:
        crud.create_registration(
            ctx.session,
            event=ctx.event,
            user=user,
            phone=(answers or {}).get("phone") or None,
            is_verified=True,
            approval_status=approval_status,
            custom_answers=answers,
        )
    except crud.DuplicateRegistrationError as exc:
        return fail(crud.sanitize_duplicate_error(exc, email=user.email), status_code=409)

    _notify_organizers(ctx, name=user.display_name, email=user.email)

    if approval_status == "pending":
        try:
            emails.send_registration_request_email(
                ctx.mailer,
                event=ctx.event,
                community=ctx.community,
                recipient_name=user.full_name or "there",
                recipient_email=user.email,
                event_link=ctx.event_link,
            )
        except EMAIL_ERRORS as exc:
            _log_email_failure("registration request", user.email, exc)
        return ok("Registration request sent! Waiting for approval.")

    try:
        emails.send_registration_confirmation_email(
            ctx.mailer,
            event=ctx.event,
            community=ctx.community,
            recipient_name=user.full_name or "there",
            recipient_email=user.email,
            event_link=ctx.event_link,
        )
    except EMAIL_ERRORS as exc:
        _log_email_failure("registration confirmation", user.email, exc)
    return ok("Successfully registered for the event!")


def handle_subscribe(ctx: RegistrationContext, request: SubscribeRequest) -> ActionResult:
    if not ctx.event.is_external:
        return fail(SUBSCRIBE_EXTERNAL_ONLY)
    user = ctx.user
    if crud.find_registration(ctx.session, event_id=ctx.event.id, user_id=user.id):
        return fail("You are already subscribed to this event", status_code=409)
    if _user_conflict(ctx, user):
        return fail(ALREADY_SUBSCRIBED, status_code=409)

    try:
        crud.create_registration(
            ctx.session,
            event=ctx.event,
            user=user,
            is_verified=True,
            approval_status="approved",
        )
    except crud.DuplicateRegistrationError as exc:
        return fail(crud.sanitize_duplicate_error(exc, email=user.email), status_code=409)

    _send_subscription_confirmation(
        ctx, name=user.full_name or "there", email=user.email
    )
    return ok("Successfully subscribed for event updates!")


def handle_unregister(ctx: RegistrationContext, request: UnregisterRequest) -> ActionResult:
    crud.delete_user_registration(ctx.session, event_id=ctx.event.id, user_id=ctx.user.id)
    if ctx.event.is_external:
        return ok("Unsubscribed from event updates")
    return ok("Registration cancelled")


INTENT_HANDLERS: dict[str, Callable[[RegistrationContext, Any], ActionResult]] = {
    "anonymous-register": handle_anonymous_register,
    "anonymous-custom-questions": handle_anonymous_custom_questions,
    "anonymous-subscribe": handle_anonymous_subscribe,
    "register": handle_register,
    "subscribe": handle_subscribe,
    "unregister": handle_unregister,
    "unsubscribe": handle_unregister,
}

ANONYMOUS_INTENTS = frozenset(
    {"anonymous-register", "anonymous-custom-questions", "anonymous-subscribe"}
)


def handle_registration_action(
    ctx: RegistrationContext, form: dict[str, Any]
) -> ActionResult:
    """Parse a posted form and run the handler for its intent."""
    request = parse_registration_request(form)
    if request is None:
        return fail("Invalid action")
    if request.intent not in ANONYMOUS_INTENTS and ctx.user is None:
        return unauthorized(LOGIN_REQUIRED)
    return INTENT_HANDLERS[request.intent](ctx, request)


def verify_registration(
    ctx: RegistrationContext, token: str | None
) -> ActionResult:
    """Confirm an anonymous registration from the emailed link."""
    if not token:
        return fail("Verification token is required")
    registration = crud.get_registration_by_token(ctx.session, token)
    if registration is None:
        return fail("Invalid or expired verification link")
    if registration.event_id != ctx.event.id:
        return fail("Invalid verification link for this event")
    if registration.token_expires_at and utcnow() > registration.token_expires_at:
        return fail("Verification link has expired")
    if registration.is_verified:
        return redirect(f"{ctx.event_path}?verified=already")

    crud.mark_registration_verified(ctx.session, registration)
    name = registration.anonymous_name or "there"
    email = registration.anonymous_email
    _notify_organizers(ctx, name=name, email=email)

    if registration.approval_status == "pending":
        return redirect(f"{ctx.event_path}?verified=pending_approval")

    if ctx.event.is_external:
        _send_subscription_confirmation(ctx, name=name, email=email)
    else:
        try:
            emails.send_registration_confirmation_email(
                ctx.mailer,
                event=ctx.event,
                community=ctx.community,
                recipient_name=name,
                recipient_email=email,
                event_link=ctx.event_link,
                register_account_link=ctx.register_account_link,
            )
        except EMAIL_ERRORS as exc:
            _log_email_failure("registration confirmation", email, exc)
    return redirect(f"{ctx.event_path}?verified=success")


def load_event_context(
    session: Session,
    mailer: Mailer,
    *,
    slug: str,
    event_id: str,
    user: User | None = None,
    notify: Callable[[NotificationPayload], None] | None = None,
) -> RegistrationContext | ActionResult:
    event = session.get(Event, event_id)
    if event is None:
        return not_found("Event not found")
    community = event.community
    if community is None:
        return not_found("Community not found")
    return RegistrationContext(
        session=session,
        mailer=mailer,
        event=event,
        community=community,
        slug=slug,
        user=user,
        notify=notify,
    )
