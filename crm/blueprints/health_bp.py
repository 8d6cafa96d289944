"""
Health check blueprint. Exempt from identity headers.

Endpoints:
    GET /api/v1/health/ready  — process is up
    GET /api/v1/health/live   — database round-trip, scheduler and alert scan state
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from crm.models import db
from crm.services import alert_service
from crm.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

ALERT_SCAN_JOB = "delay_alert_scan"


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


def _database_check() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Health check: database unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


def _scheduler_check() -> dict:
    scan = SchedulerService.get_job_status(ALERT_SCAN_JOB) or {}
    return {
        "enabled": bool(current_app.config.get("SCHEDULER_ENABLED")),
        "running": SchedulerService.is_running(),
        "alert_scan": {
            "last_run_at": scan.get("last_run_at"),
            "last_run_status": scan.get("last_run_status"),
            "next_run_at": scan.get("next_run_at"),
        },
    }


@health_bp.route("/live", methods=["GET"])
def live():
    """Dependency status; 503 when the database cannot be reached."""
    checks = {"database": _database_check()}
    healthy = checks["database"]["status"] == "ok"

    if healthy:
        checks["scheduler"] = _scheduler_check()
        checks["alerts"] = alert_service.alert_summary()
    else:
        checks["scheduler"] = {"running": SchedulerService.is_running()}

    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
