"""
Project Pipeline CRM
Scheduler Service.

A lightweight interval scheduler on a single daemon thread. Jobs are plain
functions registered with ``@register_job``; each has a ``ScheduledJob`` row
that stores its interval, enabled flag and run history.

Architecture:
    - register_job():   decorator adding a function to the in-process registry
    - SchedulerService: record sync, on-demand execution, the background loop
    - Every run happens inside the Flask app context and is recorded, manual
      or scheduled alike. A failing job is logged and recorded; the loop
      keeps going.

The background thread is started by the app factory only when
``SCHEDULER_ENABLED`` is true.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from flask import Flask
from sqlalchemy import select

from crm.models import db
from crm.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RegisteredJob:
    name: str
    fn: Callable
    interval_seconds: int
    interval_config_key: str | None = None


_job_registry: dict[str, RegisteredJob] = {}


def register_job(name: str, *, interval_seconds: int = 3600, config_key: str | None = None):
    """Decorator to register a job function.

    ``config_key`` names an app config value that overrides the interval.

    Usage:
        @register_job("delay_alert_scan", interval_seconds=3600,
                      config_key="ALERT_SCAN_INTERVAL_SECONDS")
        def run_delay_alert_scan(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = RegisteredJob(name, fn, interval_seconds, config_key)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, RegisteredJob]:
    return dict(_job_registry)


class SchedulerService:
    """
    Interval scheduler bound to one Flask app.

    Jobs are executed within the app context; each run opens its own
    context so it never shares a session with a request.
    """

    _app: Flask | None = None
    _running: bool = False
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def interval_for(cls, job: RegisteredJob) -> int:
        if cls._app is not None and job.interval_config_key:
            configured = cls._app.config.get(job.interval_config_key)
            if configured:
                return int(configured)
        return job.interval_seconds

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create missing ScheduledJob rows and sync intervals from config."""
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, job in _job_registry.items():
                interval = cls.interval_for(job)
                record = _find_record(name)
                if record is None:
                    record = ScheduledJob(
                        job_name=name,
                        description=(job.fn.__doc__ or f"Scheduled job: {name}").strip(),
                        interval_seconds=interval,
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(record)
                    created.append(record)
                elif record.interval_seconds != interval:
                    record.interval_seconds = interval
            db.session.commit()
            if created:
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name and record the run.

        A job exception never escapes: it becomes a "failed" run with the
        error message stored on the job record.

        Returns:
            Dict with job_name, status, duration_ms, result and error.
        """
        job = _job_registry.get(job_name)
        if job is None:
            return {"status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"status": "error", "error": "Scheduler not initialized"}

        outcome = cls._execute(job)
        cls._save_outcome(job, outcome)

        logger.info("Job %s finished: %s in %dms", job_name, outcome["status"],
                    outcome["duration_ms"],
                    extra={"job_name": job_name, "duration_ms": outcome["duration_ms"]})
        return outcome

    @classmethod
    def _execute(cls, job: RegisteredJob) -> dict:
        outcome = {"job_name": job.name, "status": "success", "result": None, "error": None}
        started = time.monotonic()
        try:
            with cls._app.app_context():
                outcome["result"] = job.fn(cls._app)
        except Exception as exc:
            outcome["status"] = "failed"
            outcome["error"] = str(exc)
            logger.exception("Job %s failed", job.name, extra={"job_name": job.name})
        outcome["duration_ms"] = int((time.monotonic() - started) * 1000)
        return outcome

    @classmethod
    def _save_outcome(cls, job: RegisteredJob, outcome: dict) -> None:
        result = outcome["result"]
        if not isinstance(result, dict):
            result = {"output": str(result)}
        with cls._app.app_context():
            try:
                record = _find_record(job.name)
                if record is None:
                    record = ScheduledJob(job_name=job.name, interval_seconds=cls.interval_for(job))
                    db.session.add(record)
                record.record_run(status=outcome["status"], duration_ms=outcome["duration_ms"],
                                  result=result, error=outcome["error"])
                db.session.commit()
            except Exception:
                db.session.rollback()
                logger.exception("Could not record run of %s", job.name,
                                 extra={"job_name": job.name})

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[str]:
        """Run every enabled job whose ``next_run_at`` has passed."""
        if not cls._app:
            return []
        now = now or datetime.now(timezone.utc)
        with cls._app.app_context():
            due = [
                record.job_name
                for record in db.session.execute(
                    select(ScheduledJob).order_by(ScheduledJob.job_name)
                ).scalars()
                if record.job_name in _job_registry and record.is_due(now)
            ]
        for name in due:
            cls.run_job(name)
        return due

    # ── Background loop ──────────────────────────────────────────────────

    @classmethod
    def start(cls, tick_seconds: float = 30.0) -> bool:
        """Start the daemon thread. Returns False if it is already running."""
        if cls._running:
            return False
        if not cls._app:
            raise RuntimeError("SchedulerService.init_app() must be called before start()")

        cls.ensure_jobs_registered()
        cls._stop_event = threading.Event()
        cls._thread = threading.Thread(
            target=cls._loop, args=(tick_seconds,), name="crm-scheduler", daemon=True,
        )
        cls._running = True
        cls._thread.start()
        logger.info("Scheduler thread started (tick=%ss)", tick_seconds)
        return True

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        if not cls._running:
            return
        cls._stop_event.set()
        if cls._thread is not None:
            cls._thread.join(timeout)
        cls._running = False
        cls._thread = None
        logger.info("Scheduler thread stopped")

    @classmethod
    def is_running(cls) -> bool:
        return cls._running

    @classmethod
    def _loop(cls, tick_seconds: float) -> None:
        while not cls._stop_event.wait(tick_seconds):
            try:
                cls.run_due_jobs()
            except Exception:
                logger.exception("Scheduler tick failed")


    # ── Read / admin ─────────────────────────────────────────────────────

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """Registered jobs, each with its effective interval and stored record."""
        return [
            {
                "job_name": name,
                "registered": True,
                "interval_seconds": cls.interval_for(job),
                "db_record": _record_dict(_find_record(name)),
            }
            for name, job in _job_registry.items()
        ]

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        return _record_dict(_find_record(job_name))

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Pause or resume a job. Returns None when no record exists."""
        record = _find_record(job_name)
        if record is None:
            return None
        record.is_enabled = enabled
        record.status = "active" if enabled else "paused"
        db.session.commit()
        logger.info("Job %s %s", job_name, record.status, extra={"job_name": job_name})
        return record.to_dict()


def _find_record(job_name: str) -> ScheduledJob | None:
    return db.session.execute(
        select(ScheduledJob).where(ScheduledJob.job_name == job_name)
    ).scalar_one_or_none()


def _record_dict(record: ScheduledJob | None) -> dict | None:
    return record.to_dict() if record is not None else None
