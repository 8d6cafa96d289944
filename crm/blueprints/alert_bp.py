"""
Project Pipeline CRM
Alert & Scheduler Blueprint.

Provides:
    - Delay alert listing, summary, manual scan and dismissal
    - Scheduled job listing and manual trigger
"""

import logging

from flask import Blueprint, jsonify, request

from crm.auth import ADMIN_TIER, current_actor, require_roles
from crm.models.workflow import Role
from crm.services import alert_service
from crm.services.scheduler_service import SchedulerService
from crm.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

alert_bp = Blueprint("alerts", __name__, url_prefix="/api/v1")
register_error_handlers(alert_bp)


# ═══════════════════════════════════════════════════════════════════════════
#  DELAY ALERTS
# ═══════════════════════════════════════════════════════════════════════════


@alert_bp.route("/alerts", methods=["GET"])
@require_roles(*ADMIN_TIER)
def list_alerts():
    """Active alerts, newest first."""
    alerts = alert_service.list_active_alerts()
    return jsonify({"alerts": [a.to_dict() for a in alerts], "total": len(alerts)})


@alert_bp.route("/alerts/summary", methods=["GET"])
@require_roles(*ADMIN_TIER)
def alert_summary():
    return jsonify(alert_service.alert_summary())


@alert_bp.route("/alerts/project/<int:project_id>", methods=["GET"])
@require_roles(*(r for r in Role if r != Role.SYSTEM))
def project_alerts(project_id):
    alerts = alert_service.list_project_alerts(project_id)
    return jsonify({"alerts": [a.to_dict() for a in alerts], "total": len(alerts)})


@alert_bp.route("/alerts/generate", methods=["POST"])
@require_roles(*ADMIN_TIER)
def generate_alerts():
    """Run the delay scan now."""
    actor, _ = current_actor()
    logger.info("Manual delay scan requested by %s", actor)
    return jsonify(alert_service.scan())


@alert_bp.route("/alerts/<int:alert_id>/dismiss", methods=["POST"])
@require_roles(*ADMIN_TIER)
def dismiss_alert(alert_id):
    actor, _ = current_actor()
    alert = alert_service.dismiss(alert_id, actor)
    return jsonify(alert.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS
# ═══════════════════════════════════════════════════════════════════════════


@alert_bp.route("/scheduler/jobs", methods=["GET"])
@require_roles(*ADMIN_TIER)
def list_scheduled_jobs():
    """List registered jobs with their run records."""
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs), "running": SchedulerService.is_running()})


@alert_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
@require_roles(*ADMIN_TIER)
def get_job_status(job_name):
    status = SchedulerService.get_job_status(job_name)
    if status is None:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(status)


@alert_bp.route("/scheduler/jobs/<job_name>/trigger", methods=["POST"])
@require_roles(*ADMIN_TIER)
def trigger_job(job_name):
    """Run a scheduled job now."""
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error" and "Unknown job" in result.get("error", ""):
        return api_error(E.NOT_FOUND, result["error"])
    return jsonify(result)


@alert_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
@require_roles(*ADMIN_TIER)
def toggle_job(job_name):
    """Enable or disable a scheduled job."""
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")
    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)
