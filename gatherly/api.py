"""FastAPI application for Gatherly."""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any
import tomllib

from fastapi import (
    BackgroundTasks,
    Body,
    Depends,
    FastAPI,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import approvals, collaborations, crud, registrations
from .config import settings
from .database import SessionLocal
from .ics import event_ics
from .mailer import Mailer
from .models import Event, EventCollaboration, User
from .notifications import (
    NotificationPayload,
    dispatch_notification,
    notification_adapter,
    run_notification,
)
from .reminders import REMINDER_OFFSETS, send_reminders
from .results import ActionResult
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .utils import format_event_date, format_event_time, is_valid_email

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("gatherly")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    mailer = Mailer.from_settings(settings)
    app.state.mailer = mailer
    start_scheduler(mailer)
    try:
        yield
    finally:
        stop_scheduler()
        mailer.close()


app = FastAPI(title="Gatherly", version=APP_VERSION, lifespan=lifespan)
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User | None:
    return crud.get_user_by_token(db, _get_bearer_token(request))


def require_user(user: User | None = Depends(get_current_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return user


def _wants_json(request: Request) -> bool:
    accept = (request.headers.get("accept") or "").lower()
    return request.url.path.startswith("/api/") or (
        "application/json" in accept and "text/html" not in accept
    )


def _render_error(request: Request, status_code: int, message: str | None):
    context = {
        "status_code": status_code,
        "error_message": message or "Something went wrong.",
    }
    return templates.TemplateResponse(
        request, "error.html", context, status_code=status_code
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render HTTP errors as friendly pages unless JSON was requested."""
    if _wants_json(request):
        return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)
    detail = exc.detail if isinstance(exc.detail, str) else "Something went wrong."
    return _render_error(request, exc.status_code, detail)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    if _wants_json(request):
        return JSONResponse({"detail": detail}, status_code=status)
    return _render_error(request, status, detail)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    if _wants_json(request):
        return JSONResponse({"detail": exc.errors()}, status_code=422)
    return _render_error(
        request,
        422,
        "Some of the fields were invalid. Please double-check and try again.",
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    if _wants_json(request):
        return JSONResponse({"detail": "Internal server error"}, status_code=500)
    return _render_error(
        request,
        500,
        "We hit a snag while processing that request. Please try again.",
    )


def _action_response(result: ActionResult) -> Response:
    if result.redirect_to:
        return RedirectResponse(result.redirect_to, status_code=303)
    return JSONResponse(result.to_dict(), status_code=result.status_code)


def _commit_and_respond(db: Session, result: ActionResult) -> Response:
    # Background notifications open their own session and must see these writes.
    db.commit()
    return _action_response(result)


def _notifier(background_tasks: BackgroundTasks, mailer: Mailer):
    def schedule(payload: NotificationPayload) -> None:
        background_tasks.add_task(run_notification, mailer, payload)

    return schedule


def _secret_matches(candidate: str | None) -> bool:
    return bool(candidate) and secrets.compare_digest(
        candidate.encode("utf-8"), settings.cron_secret.encode("utf-8")
    )


def _ensure_event(db: Session, event_id: str) -> Event:
    event = db.get(Event, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _serialize_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "created_at": user.created_at.isoformat(),
    }


def _serialize_event(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "community_id": event.community_id,
        "community_slug": event.community.slug,
        "title": event.title,
        "description": event.description,
        "start_time": event.start_time.isoformat(),
        "end_time": event.end_time.isoformat() if event.end_time else None,
        "timezone": event.timezone,
        "capacity": event.capacity,
        "status": event.status,
        "event_type": event.event_type,
        "registration_type": event.registration_type,
        "external_registration_url": event.external_registration_url,
        "external_platform": event.external_platform,
        "location_address": event.location_address,
        "online_meeting_link": event.online_meeting_link,
        "is_approve_required": event.is_approve_required,
        "custom_questions": event.custom_questions,
        "reminder_times": event.reminder_times or [],
        "collaborations": [
            collaborations.serialize_collaboration(collaboration)
            for collaboration in event.collaborations
        ],
    }


# --- Event pages and form actions -------------------------------------------------


@app.post("/c/{slug}/events/{event_id}/actions")
def event_action(
    slug: str,
    event_id: str,
    background_tasks: BackgroundTasks,
    intent: str = Form(""),
    name: str | None = Form(None),
    email: str | None = Form(None),
    custom_answers: str | None = Form(None),
    source: str | None = Form(None, alias="_source"),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    user: User | None = Depends(get_current_user),
):
    ctx = registrations.load_event_context(
        db,
        mailer,
        slug=slug,
        event_id=event_id,
        user=user,
        notify=_notifier(background_tasks, mailer),
    )
    if isinstance(ctx, ActionResult):
        return _action_response(ctx)
    form = {
        "intent": intent,
        "name": name or "",
        "email": email or "",
        "custom_answers": custom_answers,
        "_source": source,
    }
    return _commit_and_respond(db, registrations.handle_registration_action(ctx, form))


@app.get("/c/{slug}/events/{event_id}/verify")
def verify_event_registration(
    slug: str,
    event_id: str,
    background_tasks: BackgroundTasks,
    token: str | None = Query(None),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    ctx = registrations.load_event_context(
        db,
        mailer,
        slug=slug,
        event_id=event_id,
        notify=_notifier(background_tasks, mailer),
    )
    if isinstance(ctx, ActionResult):
        raise HTTPException(status_code=ctx.status_code, detail=ctx.error)
    result = registrations.verify_registration(ctx, token)
    if not result.success:
        raise HTTPException(status_code=result.status_code, detail=result.error)
    return _commit_and_respond(db, result)


@app.get("/c/{slug}/events/{event_id}/verification-sent", response_class=HTMLResponse)
def verification_sent(
    slug: str,
    event_id: str,
    request: Request,
    email: str | None = Query(None),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    context = {
        "event": event,
        "email": email,
        "event_path": f"/c/{slug}/events/{event.id}",
    }
    return templates.TemplateResponse(request, "verification_sent.html", context)


@app.get("/c/{slug}/events/{event_id}", response_class=HTMLResponse)
def event_page(
    slug: str,
    event_id: str,
    request: Request,
    verified: str | None = Query(None),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    if event.community.slug != slug:
        raise HTTPException(status_code=404, detail="Event not found")
    context = {
        "event": event,
        "community": event.community,
        "verified": verified,
        "event_date": format_event_date(event.start_time, event.timezone),
        "event_time": format_event_time(event.start_time, event.timezone),
        "attendees": approvals.list_attendees(db, event),
        "ics_path": f"/api/v1/events/{event.id}/event.ics",
    }
    return templates.TemplateResponse(request, "event.html", context)


@app.get("/c/{slug}/collaboration-invite/{collaboration_id}", response_class=HTMLResponse)
def collaboration_invite_page(
    slug: str,
    collaboration_id: str,
    request: Request,
    db: Session = Depends(get_db),
):
    collaboration = db.get(EventCollaboration, collaboration_id)
    if (
        collaboration is None
        or collaboration.role == "host"
        or collaboration.community.slug != slug
    ):
        raise HTTPException(status_code=404, detail="Invitation not found")
    event = collaboration.event
    host_path = f"/c/{event.community.slug}/events/{event.id}"
    context = {
        "collaboration": collaboration,
        "community": collaboration.community,
        "host_community": event.community,
        "event": event,
        "event_date": format_event_date(event.start_time, event.timezone),
        "event_time": format_event_time(event.start_time, event.timezone),
        "event_path": host_path,
        "action_path": f"{host_path}/collaborations",
    }
    return templates.TemplateResponse(request, "collaboration_invite.html", context)


@app.post("/c/{slug}/events/{event_id}/collaborations")
def collaboration_action(
    slug: str,
    event_id: str,
    background_tasks: BackgroundTasks,
    intent: str = Form(""),
    co_host_community_id: str | None = Form(None, alias="coHostCommunityId"),
    collaboration_id: str | None = Form(None, alias="collaborationId"),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    user: User | None = Depends(get_current_user),
):
    form = {
        "intent": intent,
        "coHostCommunityId": co_host_community_id or "",
        "collaborationId": collaboration_id or "",
    }
    result = collaborations.handle_collaboration_action(
        db,
        mailer,
        event_id=event_id,
        user=user,
        form=form,
        notify=_notifier(background_tasks, mailer),
    )
    return _commit_and_respond(db, result)


# --- Organizer endpoints ------------------------------------------------------------


@app.post("/api/update-registration-status")
def update_registration_status(
    registration_id: str | None = Form(None, alias="registrationId"),
    event_id: str | None = Form(None, alias="eventId"),
    status: str | None = Form(None),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    user: User | None = Depends(get_current_user),
):
    result = approvals.update_registration_status(
        db,
        mailer,
        user=user,
        event_id=event_id,
        registration_id=registration_id,
        status=status,
    )
    return _action_response(result)


@app.post("/api/delete-registration")
def delete_registration(
    registration_id: str | None = Form(None, alias="registrationId"),
    event_id: str | None = Form(None, alias="eventId"),
    db: Session = Depends(get_db),
    user: User | None = Depends(get_current_user),
):
    result = approvals.delete_registration(
        db, user=user, event_id=event_id, registration_id=registration_id
    )
    return _action_response(result)


@app.get("/api/events/{event_id}/registrations")
def list_event_registrations(
    event_id: str,
    db: Session = Depends(get_db),
    user: User | None = Depends(get_current_user),
):
    return _action_response(
        approvals.list_registrations(db, user=user, event_id=event_id)
    )


@app.get("/api/events/{event_id}/attendees")
def list_event_attendees(event_id: str, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_id)
    return {"attendees": approvals.list_attendees(db, event)}


class ScheduleUpdatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId")
    start_time: datetime | None = Field(
        None, alias="startTime", description="New ISO datetime start"
    )
    end_time: datetime | None = Field(None, alias="endTime")
    timezone: str | None = None


@app.post("/api/events/schedule-update")
def schedule_update(
    payload: ScheduleUpdatePayload,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    user: User | None = Depends(get_current_user),
):
    result = approvals.send_schedule_update(
        db,
        mailer,
        user=user,
        event_id=payload.event_id,
        start_time=payload.start_time,
        end_time=payload.end_time,
        timezone=payload.timezone,
    )
    return _action_response(result)


class ReminderTriggerPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reminder_time: str | None = Field(None, alias="reminderTime")
    secret: str | None = None


@app.post("/api/send-reminders")
def trigger_reminders(
    payload: ReminderTriggerPayload,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    if not _secret_matches(payload.secret):
        logger.warning("Invalid cron secret provided")
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    if payload.reminder_time not in REMINDER_OFFSETS:
        return JSONResponse({"error": "Invalid reminderTime parameter"}, status_code=400)
    return send_reminders(db, mailer, payload.reminder_time)


@app.post("/api/events/collaboration-notification")
def collaboration_notification(
    body: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    if not _secret_matches(body.get("secret")):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    try:
        payload = notification_adapter.validate_python(body)
    except ValidationError:
        return JSONResponse({"error": "Invalid notification type"}, status_code=400)
    return _action_response(dispatch_notification(db, mailer, payload))


# --- Supporting JSON API ------------------------------------------------------------


class UserCreatePayload(BaseModel):
    email: str
    full_name: str | None = None


class CommunityCreatePayload(BaseModel):
    name: str
    slug: str | None = None
    description: str | None = None


class EventCreatePayload(BaseModel):
    title: str
    description: str | None = None
    start_time: datetime = Field(..., description="ISO datetime string")
    end_time: datetime | None = Field(
        None, description="Optional ISO datetime string after start_time"
    )
    timezone: str = "UTC"
    capacity: int | None = Field(None, ge=1)
    status: str = "published"
    event_type: str = "in-person"
    registration_type: str = "internal"
    external_registration_url: str | None = None
    external_platform: str | None = None
    location_address: str | None = None
    online_meeting_link: str | None = None
    is_approve_required: bool = False
    custom_questions: dict[str, Any] | None = None
    reminder_times: list[str] = Field(default_factory=list)
    reminder_message: str | None = None


@app.post("/api/v1/users", status_code=201)
def api_create_user(payload: UserCreatePayload, db: Session = Depends(get_db)):
    if not is_valid_email(payload.email):
        raise HTTPException(status_code=400, detail="Invalid email address")
    if crud.get_user_by_email(db, payload.email):
        raise HTTPException(status_code=409, detail="A user with this email already exists")
    user = crud.create_user(db, email=payload.email, full_name=payload.full_name)
    return {"user": _serialize_user(user), "api_token": user.api_token}


@app.post("/api/v1/communities", status_code=201)
def api_create_community(
    payload: CommunityCreatePayload,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    try:
        community = crud.create_community(
            db,
            name=payload.name,
            slug=payload.slug,
            description=payload.description,
            creator=user,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "community": {
            "id": community.id,
            "name": community.name,
            "slug": community.slug,
            "description": community.description,
            "created_by": community.created_by,
        }
    }


@app.post("/api/v1/communities/{slug}/join")
def api_join_community(
    slug: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    community = crud.get_community_by_slug(db, slug)
    if not community:
        raise HTTPException(status_code=404, detail="Community not found")
    role = crud.get_membership_role(db, community.id, user.id)
    if role is None:
        role = crud.add_community_member(db, community=community, user=user).role
    return {"community_id": community.id, "user_id": user.id, "role": role}


@app.post("/api/v1/communities/{slug}/events", status_code=201)
def api_create_event(
    slug: str,
    payload: EventCreatePayload,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    community = crud.get_community_by_slug(db, slug)
    if not community:
        raise HTTPException(status_code=404, detail="Community not found")
    if not crud.is_community_owner_or_admin(db, community.id, user.id):
        raise HTTPException(
            status_code=403, detail="Only community owners and admins can create events"
        )
    try:
        event = crud.create_event(
            db, community=community, creator=user, **payload.model_dump()
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"event": _serialize_event(event)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_id)
    return {"event": _serialize_event(event)}


@app.get("/api/v1/events/{event_id}/event.ics")
def api_get_event_ics(event_id: str, db: Session = Depends(get_db)):
    """Serve an event as a downloadable ICS file."""
    event = _ensure_event(db, event_id)
    event_link = settings.absolute_url(f"/c/{event.community.slug}/events/{event.id}")
    ics_text = event_ics(event, organizer_name=event.community.name, url=event_link)
    filename = f"event_{event_id}.ics"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=ics_text, media_type="text/calendar", headers=headers)
