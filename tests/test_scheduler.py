from __future__ import annotations

import dataclasses

from gatherly import config, scheduler


def test_scheduler_disabled_by_default(mailer):
    assert scheduler.start_scheduler(mailer) is None


def test_scheduler_registers_one_job_per_bucket(monkeypatch, mailer):
    enabled = dataclasses.replace(
        config.settings, enable_scheduler=True, reminder_interval_minutes=7
    )
    monkeypatch.setattr(scheduler, "settings", enabled)

    started = scheduler.start_scheduler(mailer)
    try:
        assert started is not None
        jobs = {job.id: job for job in started.get_jobs()}
        assert set(jobs) == {"reminders-1-hour", "reminders-3-hours", "reminders-1-day"}
        assert jobs["reminders-1-day"].args == (mailer, "1-day")
        assert jobs["reminders-1-hour"].trigger.interval.total_seconds() == 7 * 60
        assert scheduler.start_scheduler(mailer) is started
    finally:
        scheduler.stop_scheduler()
    assert not started.running


def test_failed_run_is_logged(monkeypatch, mailer, caplog):
    def boom(_mailer, _bucket):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(scheduler, "run_reminder_cycle", boom)

    scheduler._run_bucket(mailer, "1-hour")

    assert "Scheduled 1-hour reminder run failed" in caplog.text
