from __future__ import annotations

import types

import pytest
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

from gatherly import storage, database
from gatherly.models import Base


def _patch_db(monkeypatch: pytest.MonkeyPatch, engine: Engine, db_path) -> None:
    monkeypatch.setattr(storage, "engine", engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "DATABASE_URL", str(engine.url))
    fake_settings = types.SimpleNamespace(database_path=db_path)
    monkeypatch.setattr(storage, "settings", fake_settings)


def _get_version(engine: Engine) -> str | None:
    with engine.connect() as conn:
        try:
            return conn.execute(
                text("select version_num from alembic_version")
            ).scalar()
        except Exception:
            return None


def test_upgrade_database_stamps_existing_db(monkeypatch, tmp_path):
    db_path = tmp_path / "existing.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)  # existing schema without Alembic tracking
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Stamped existing database to Alembic head" in actions
    assert _get_version(engine) == "0001_initial"


def test_upgrade_database_creates_fresh_schema(monkeypatch, tmp_path):
    db_path = tmp_path / "fresh.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Ran Alembic upgrade to head (fresh database)" in actions
    assert _get_version(engine) == "0001_initial"
    inspector = inspect(engine)
    for table in (
        "users",
        "communities",
        "community_members",
        "events",
        "event_registrations",
        "event_collaborations",
        "sent_reminders",
    ):
        assert inspector.has_table(table)
    index_names = {index["name"] for index in inspector.get_indexes("event_collaborations")}
    assert "uq_collaboration_single_host" in index_names


def test_upgrade_database_backs_up_and_is_repeatable(monkeypatch, tmp_path):
    db_path = tmp_path / "gatherly.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)
    storage.upgrade_database(make_backup=False)

    actions = storage.upgrade_database(make_backup=True)

    assert actions[0] == f"Backup created at {db_path}.bak"
    assert "Applied Alembic migrations to head" in actions
    assert (tmp_path / "gatherly.sqlite.bak").exists()
    assert _get_version(engine) == "0001_initial"


def test_migrated_schema_enforces_single_host(monkeypatch, tmp_path):
    db_path = tmp_path / "hosts.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)
    storage.upgrade_database(make_backup=False)

    with engine.begin() as conn:
        conn.execute(
            text(
                "insert into users (id, email, api_token, created_at) "
                "values ('u1', 'a@example.com', 'tok', '2030-01-01 00:00:00')"
            )
        )
        conn.execute(
            text(
                "insert into communities (id, name, slug, created_by, created_at) values "
                "('c1', 'One', 'one', 'u1', '2030-01-01 00:00:00'), "
                "('c2', 'Two', 'two', 'u1', '2030-01-01 00:00:00')"
            )
        )
        conn.execute(
            text(
                "insert into events (id, community_id, created_by, title, start_time, "
                "timezone, status, event_type, registration_type, is_approve_required, "
                "created_at, updated_at) values ('e1', 'c1', 'u1', 'Meetup', "
                "'2030-02-01 18:00:00', 'UTC', 'published', 'in-person', 'internal', 0, "
                "'2030-01-01 00:00:00', '2030-01-01 00:00:00')"
            )
        )
        conn.execute(
            text(
                "insert into event_collaborations (id, event_id, community_id, role, "
                "status, invited_at, created_at, updated_at) values ('h1', 'e1', 'c1', "
                "'host', 'accepted', '2030-01-01 00:00:00', '2030-01-01 00:00:00', "
                "'2030-01-01 00:00:00')"
            )
        )

    with pytest.raises(Exception, match="UNIQUE"):
        with engine.begin() as conn:
            conn.execute(
                text(
                    "insert into event_collaborations (id, event_id, community_id, role, "
                    "status, invited_at, created_at, updated_at) values ('h2', 'e1', "
                    "'c2', 'host', 'accepted', '2030-01-01 00:00:00', "
                    "'2030-01-01 00:00:00', '2030-01-01 00:00:00')"
                )
            )
