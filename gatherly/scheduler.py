"""APScheduler integration for reminder runs."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .mailer import Mailer
from .models import REMINDER_BUCKETS
from .reminders import run_reminder_cycle

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


def _run_bucket(mailer: Mailer, bucket: str) -> None:
    try:
        run_reminder_cycle(mailer, bucket)
    except Exception:
        logger.exception("Scheduled %s reminder run failed", bucket)


def start_scheduler(mailer: Mailer) -> BackgroundScheduler | None:
    """Start one interval job per reminder bucket when enabled in settings."""
    global _scheduler
    if not settings.enable_scheduler:
        return None
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    for bucket in REMINDER_BUCKETS:
        scheduler.add_job(
            _run_bucket,
            "interval",
            minutes=settings.reminder_interval_minutes,
            args=(mailer, bucket),
            id=f"reminders-{bucket}",
            max_instances=1,
            replace_existing=True,
        )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
