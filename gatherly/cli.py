"""Typer CLI for Gatherly."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .database import get_session
from .mailer import Mailer
from .models import REMINDER_BUCKETS
from .reminders import run_reminder_cycle
from .storage import init_db, upgrade_database
from . import crud

app = typer.Typer(help="Gatherly command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _exit_if_readonly(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure write access to {settings.database_path}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.command("init-db")
def init_database() -> None:
    """Create or migrate the database schema."""
    try:
        init_db()
    except OperationalError as exc:
        _exit_if_readonly(exc, "initialize the database")
        raise
    typer.echo(f"Database ready at {settings.database_path}")


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _exit_if_readonly(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("serve")
def serve(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI application."""
    init_db()
    config = uvicorn.Config(
        "gatherly.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting Gatherly on {host}:{port}")
    server.run()


@app.command("create-user")
def create_user(
    email: str = typer.Argument(..., help="Email address of the new user"),
    full_name: str | None = typer.Option(None, "--name", help="Display name"),
) -> None:
    """Create a user and print their API token."""
    init_db()
    with get_session() as session:
        if crud.get_user_by_email(session, email):
            typer.secho(f"A user with email {email} already exists.", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        user = crud.create_user(session, email=email, full_name=full_name)
        token = user.api_token
    typer.echo(token)


@app.command("send-reminders")
def send_reminders(
    bucket: str = typer.Option(
        ..., "--bucket", help=f"Reminder bucket ({', '.join(REMINDER_BUCKETS)})"
    ),
) -> None:
    """Send reminders for one bucket now, like the cron endpoint does."""
    if bucket not in REMINDER_BUCKETS:
        typer.secho(f"Unknown bucket {bucket!r}.", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=2)
    init_db()
    mailer = Mailer.from_settings(settings)
    try:
        result = run_reminder_cycle(mailer, bucket)
    finally:
        mailer.close()
    typer.echo(json.dumps(result, indent=2))


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    email_api_key: str | None = typer.Option(
        None, "--email-api-key", help="API key for the email provider"
    ),
    email_sender: str | None = typer.Option(
        None, "--email-sender", help='From address, e.g. "Gatherly <events@example.com>"'
    ),
    app_base_url: str | None = typer.Option(
        None, "--app-base-url", help="Public base URL used in email links"
    ),
    cron_secret: str | None = typer.Option(
        None, "--cron-secret", help="Shared secret for the reminder endpoint"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Run reminder buckets in-process",
    ),
    reminder_interval_minutes: int | None = typer.Option(
        None, "--reminder-interval-minutes", min=1, help="Minutes between scheduled runs"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for serve"),
    port: int | None = typer.Option(None, "--port", help="Default port for serve"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to gatherly.toml (default: ./gatherly.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "email_api_key": email_api_key,
        "email_sender": email_sender,
        "app_base_url": app_base_url,
        "cron_secret": cron_secret,
        "enable_scheduler": enable_scheduler,
        "reminder_interval_minutes": reminder_interval_minutes,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))
