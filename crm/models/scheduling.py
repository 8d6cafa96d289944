"""
Project Pipeline CRM
Scheduled job registry model.

Models:
    - ScheduledJob: persisted interval schedule plus run history for one job
"""

from datetime import datetime, timedelta, timezone

from crm.core.clock import as_utc
from crm.models import db


JOB_STATUSES = {"active", "paused"}
RUN_STATUSES = {"success", "failed", "skipped"}


def _wall_now():
    return datetime.now(timezone.utc)


class ScheduledJob(db.Model):
    """
    One row per registered background job.

    The scheduler thread runs a job when it is enabled and ``next_run_at``
    has passed; every run (manual or scheduled) pushes ``next_run_at`` one
    interval forward.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False,
                         comment="Registry key, e.g. delay_alert_scan")
    description = db.Column(db.String(500), default="")
    interval_seconds = db.Column(db.Integer, nullable=False, default=3600)
    status = db.Column(db.String(20), default="active", comment="active, paused")
    is_enabled = db.Column(db.Boolean, default=True)

    # Execution tracking
    next_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True,
                                comment="success, failed, skipped")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_wall_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_wall_now, onupdate=_wall_now)

    def is_due(self, now: datetime) -> bool:
        if not self.is_enabled:
            return False
        return self.next_run_at is None or as_utc(self.next_run_at) <= now

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        now = _wall_now()
        self.last_run_at = now
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.next_run_at = now + timedelta(seconds=self.interval_seconds or 0)
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        def _ts(value):
            return as_utc(value).isoformat() if value else None

        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "interval_seconds": self.interval_seconds,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "next_run_at": _ts(self.next_run_at),
            "last_run_at": _ts(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
