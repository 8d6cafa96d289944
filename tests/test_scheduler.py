"""
Scheduler tests.

Covers:
    1. ScheduledJob model (is_due, record_run)
    2. Registry: delay_alert_scan registered with its configured interval
    3. SchedulerService.run_job records the run; failures are recorded, not raised
    4. run_due_jobs honours enabled flag and next_run_at
    5. toggle / status lookups
"""

from datetime import datetime, timedelta, timezone

import pytest

from crm.models import db
from crm.models.alert import ProjectAlert
from crm.models.scheduling import ScheduledJob
from crm.models.workflow import Stage
from crm.services import scheduler_service
from crm.services.scheduler_service import SchedulerService, get_registered_jobs, register_job


def _record(name="delay_alert_scan"):
    db.session.expire_all()
    return ScheduledJob.query.filter_by(job_name=name).first()


@pytest.fixture()
def registered():
    SchedulerService.ensure_jobs_registered()
    return _record()


# ═══════════════════════════════════════════════════════════════════════════
#  Model
# ═══════════════════════════════════════════════════════════════════════════


class TestScheduledJobModel:
    def test_is_due(self):
        now = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)
        job = ScheduledJob(job_name="x", interval_seconds=60, is_enabled=True)
        assert job.is_due(now) is True
        job.next_run_at = now + timedelta(minutes=1)
        assert job.is_due(now) is False
        job.next_run_at = now - timedelta(minutes=1)
        assert job.is_due(now) is True
        job.is_enabled = False
        assert job.is_due(now) is False

    def test_record_run(self):
        job = ScheduledJob(job_name="x", interval_seconds=60, run_count=0, error_count=0)
        job.record_run(status="failed", duration_ms=12, error="boom")
        assert job.run_count == 1
        assert job.error_count == 1
        assert job.last_error == "boom"
        assert job.next_run_at == job.last_run_at + timedelta(seconds=60)


# ═══════════════════════════════════════════════════════════════════════════
#  Registry & execution
# ═══════════════════════════════════════════════════════════════════════════


class TestSchedulerService:
    def test_delay_scan_registered(self, app):
        jobs = get_registered_jobs()
        assert "delay_alert_scan" in jobs
        job = jobs["delay_alert_scan"]
        assert job.interval_config_key == "ALERT_SCAN_INTERVAL_SECONDS"
        assert SchedulerService.interval_for(job) == app.config["ALERT_SCAN_INTERVAL_SECONDS"]

    def test_ensure_jobs_registered(self, registered):
        assert registered is not None
        assert registered.is_enabled is True
        assert registered.interval_seconds == 3600
        assert "delay alerts" in registered.description

    def test_run_job_scans(self, registered, project_in, frozen_clock):
        project = project_in(Stage.IN_REVIEW)
        frozen_clock.advance(days=9)

        result = SchedulerService.run_job("delay_alert_scan")

        assert result["status"] == "success"
        assert result["result"]["stage_inactivity"] == 1
        assert result["error"] is None
        db.session.expire_all()
        assert ProjectAlert.query.filter_by(project_id=project.id, is_active=True).count() == 1
        record = _record()
        assert record.run_count == 1
        assert record.last_run_status == "success"
        assert record.next_run_at is not None

    def test_unknown_job(self):
        result = SchedulerService.run_job("does_not_exist")
        assert result["status"] == "error"
        assert "Unknown job" in result["error"]

    def test_failure_is_recorded(self, monkeypatch):
        monkeypatch.setattr(scheduler_service, "_job_registry",
                            dict(scheduler_service._job_registry))

        @register_job("always_fails", interval_seconds=60)
        def _always_fails(app):
            raise RuntimeError("downstream unavailable")

        result = SchedulerService.run_job("always_fails")

        assert result["status"] == "failed"
        assert "downstream unavailable" in result["error"]
        record = _record("always_fails")
        assert record.error_count == 1
        assert record.last_error == "downstream unavailable"

    def test_run_due_jobs(self, registered):
        assert SchedulerService.run_due_jobs() == ["delay_alert_scan"]
        # next_run_at moved one interval ahead
        assert SchedulerService.run_due_jobs() == []

    def test_disabled_job_not_due(self, registered):
        SchedulerService.toggle_job("delay_alert_scan", False)
        assert SchedulerService.run_due_jobs() == []
        assert _record().status == "paused"

    def test_toggle_unknown(self):
        assert SchedulerService.toggle_job("nope", True) is None

    def test_list_jobs(self, registered):
        jobs = SchedulerService.list_jobs()
        names = [j["job_name"] for j in jobs]
        assert "delay_alert_scan" in names
        scan = next(j for j in jobs if j["job_name"] == "delay_alert_scan")
        assert scan["db_record"]["job_name"] == "delay_alert_scan"

    def test_not_started_in_testing(self):
        assert SchedulerService.is_running() is False
