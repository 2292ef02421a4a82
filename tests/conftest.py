"""Shared pytest fixtures for Gatherly."""

from __future__ import annotations

import base64
import json
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Settings are read at import time.
os.environ.setdefault("GATHERLY_DATA_DIR", tempfile.mkdtemp(prefix="gatherly-tests-"))
os.environ.setdefault("GATHERLY_EMAIL_API_KEY", "re_test_key")
os.environ.setdefault("GATHERLY_EMAIL_SENDER", "Gatherly <events@gatherly.test>")
os.environ.setdefault("GATHERLY_EMAIL_FANOUT_DELAY_SECONDS", "0")
os.environ.setdefault("GATHERLY_APP_BASE_URL", "https://gatherly.test")
os.environ.setdefault("GATHERLY_CRON_SECRET", "test-cron-secret")

from fastapi.testclient import TestClient

from gatherly import api, crud, database, storage
from gatherly.mailer import Mailer
from gatherly.models import Base
from gatherly.utils import utcnow


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


class Outbox:
    """Records messages posted to the fake email provider."""

    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.fail_for: set[str] = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if self.fail_for.intersection(payload["to"]):
            return httpx.Response(500, json={"message": "provider unavailable"})
        self.messages.append(payload)
        return httpx.Response(200, json={"id": f"email_{len(self.messages)}"})

    def to(self, email: str) -> list[dict]:
        return [message for message in self.messages if email in message["to"]]

    def subjects(self, email: str) -> list[str]:
        return [message["subject"] for message in self.to(email)]


def attachment_text(message: dict, filename: str = "invite.ics") -> str | None:
    for attachment in message.get("attachments") or []:
        if attachment["filename"] == filename:
            return base64.b64decode(attachment["content"]).decode("utf-8")
    return None


@pytest.fixture()
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture()
def mailer(outbox):
    client = Mailer(
        api_key="re_test_key",
        sender="Gatherly <events@gatherly.test>",
        api_url="https://email.test/emails",
        transport=httpx.MockTransport(outbox.handler),
    )
    yield client
    client.close()


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(monkeypatch, mailer):
    """FastAPI test client with the scheduler disabled and a recording mailer."""

    monkeypatch.setattr(api, "start_scheduler", lambda _mailer: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    api.app.dependency_overrides[api.get_mailer] = lambda: mailer
    with TestClient(api.app) as test_client:
        yield test_client
    api.app.dependency_overrides.clear()


class Factory:
    def __init__(self, session) -> None:
        self.session = session

    def user(self, email: str, full_name: str | None = None):
        user = crud.create_user(self.session, email=email, full_name=full_name)
        self.session.commit()
        return user

    def community(self, name: str, owner, *, admins=(), members=()):
        community = crud.create_community(self.session, name=name, creator=owner)
        for admin in admins:
            crud.add_community_member(self.session, community=community, user=admin, role="admin")
        for member in members:
            crud.add_community_member(self.session, community=community, user=member)
        self.session.commit()
        return community

    def event(self, community, creator, **overrides):
        values = {
            "title": "Python Meetup",
            "description": "Talks and pizza",
            "start_time": utcnow().replace(microsecond=0) + timedelta(days=3),
            "end_time": utcnow().replace(microsecond=0) + timedelta(days=3, hours=2),
            "timezone": "Asia/Baku",
            "location_address": "28 Mall, Baku",
        }
        values.update(overrides)
        event = crud.create_event(self.session, community=community, creator=creator, **values)
        self.session.commit()
        return event


@pytest.fixture()
def factory(session) -> Factory:
    return Factory(session)


def auth(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {user.api_token}"}
