"""
Project Pipeline CRM
Project Blueprint.

Thin HTTP adapter over the project, lifecycle, payment and installation
services. Identity comes from crm.auth (g.actor_id / g.actor_role); the
services enforce stage and ownership rules, the route guards below mirror
the department each endpoint belongs to.

Endpoints (all under /api/v1):
    POST   /projects                         create
    GET    /projects                         list (?stage=&owner_role=)
    GET    /projects/queues/<queue>          department queue
    GET    /projects/<id>                    detail
    PUT    /projects/<id>                    edit intake fields
    DELETE /projects/<id>                    delete
    POST   /projects/<id>/transition         change stage
    PUT    /projects/<id>/sales              sales data
    POST   /projects/<id>/ready-for-accounts hand over to accounts
    GET    /projects/<id>/payments           payment ledger
    POST   /projects/<id>/payments           record payment
    PUT    /projects/<id>/installation       installation data
    GET    /projects/<id>/history            stage history
    GET    /projects/<id>/activity           activity log
"""

import logging

from flask import Blueprint, jsonify, request

from crm.auth import ADMIN_TIER, current_actor, require_roles
from crm.blueprints import paginate_select
from crm.models.workflow import Role
from crm.services import installation_service, payment_ledger, project_service
from crm.services.project_lifecycle import transition_stage
from crm.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

project_bp = Blueprint("projects", __name__, url_prefix="/api/v1")
register_error_handlers(project_bp)

ALL_ROLES = tuple(r for r in Role if r != Role.SYSTEM)

QUEUE_ROLES = {
    "executive": (Role.EXECUTIVE, *ADMIN_TIER),
    "sales": (Role.SALES_COORDINATOR, *ADMIN_TIER),
    "accounts": (Role.ACCOUNTS, *ADMIN_TIER),
    "installation": (Role.INSTALLATION, *ADMIN_TIER),
    "completed": (Role.EXECUTIVE, *ADMIN_TIER),
}


# ═════════════════════════════════════════════════════════════════════════════
#  Intake & read model
# ═════════════════════════════════════════════════════════════════════════════


@project_bp.route("/projects", methods=["POST"])
@require_roles(Role.EXECUTIVE, *ADMIN_TIER)
def create_project():
    data = request.get_json(silent=True) or {}
    if not data.get("school"):
        return api_error(E.VALIDATION_REQUIRED, "school is required")
    actor, role = current_actor()
    project = project_service.create_project(data, actor=actor, actor_role=role)
    return jsonify(project.to_dict()), 201


@project_bp.route("/projects", methods=["GET"])
@require_roles(*ADMIN_TIER)
def list_projects():
    stmt = project_service.list_projects(
        stage=request.args.get("stage"),
        owner_role=request.args.get("owner_role"),
    )
    items, total = paginate_select(stmt)
    return jsonify({"projects": [p.to_dict() for p in items], "total": total})


@project_bp.route("/projects/queues/<queue>", methods=["GET"])
def list_queue(queue):
    _, role = current_actor()
    allowed = QUEUE_ROLES.get(queue.lower())
    if allowed is not None and role not in allowed:
        return api_error(E.FORBIDDEN, f"Role {role.value} cannot view the {queue} queue")
    stmt = project_service.list_projects_for_queue(queue)
    items, total = paginate_select(stmt)
    return jsonify({"queue": queue.lower(), "projects": [p.to_dict() for p in items],
                    "total": total})


@project_bp.route("/projects/<int:project_id>", methods=["GET"])
@require_roles(*ALL_ROLES)
def get_project(project_id):
    return jsonify(project_service.get_project(project_id).to_dict())


@project_bp.route("/projects/<int:project_id>", methods=["PUT"])
@require_roles(*ALL_ROLES)
def update_project(project_id):
    data = request.get_json(silent=True) or {}
    actor, role = current_actor()
    project = project_service.update_project(project_id, data, actor=actor, actor_role=role)
    return jsonify(project.to_dict())


@project_bp.route("/projects/<int:project_id>", methods=["DELETE"])
@require_roles(*ALL_ROLES)
def delete_project(project_id):
    actor, role = current_actor()
    project_service.delete_project(project_id, actor=actor, actor_role=role)
    return jsonify({"deleted": True, "id": project_id})


# ═════════════════════════════════════════════════════════════════════════════
#  Stage changes
# ═════════════════════════════════════════════════════════════════════════════


@project_bp.route("/projects/<int:project_id>/transition", methods=["POST"])
@require_roles(*ALL_ROLES)
def transition(project_id):
    data = request.get_json(silent=True) or {}
    to_stage = data.get("to_stage")
    if not to_stage:
        return api_error(E.VALIDATION_REQUIRED, "to_stage is required")
    actor, role = current_actor()
    project = transition_stage(
        project_id, to_stage,
        actor=actor, actor_role=role, remarks=data.get("remarks"),
    )
    return jsonify(project.to_dict())


@project_bp.route("/projects/<int:project_id>/sales", methods=["PUT"])
@require_roles(Role.SALES_COORDINATOR, *ADMIN_TIER)
def update_sales(project_id):
    data = request.get_json(silent=True) or {}
    actor, role = current_actor()
    project = project_service.update_sales_data(project_id, data, actor=actor, actor_role=role)
    return jsonify(project.to_dict())


@project_bp.route("/projects/<int:project_id>/ready-for-accounts", methods=["POST"])
@require_roles(Role.SALES_COORDINATOR, *ADMIN_TIER)
def ready_for_accounts(project_id):
    data = request.get_json(silent=True) or {}
    actor, role = current_actor()
    project = payment_ledger.mark_ready_for_accounts(
        project_id, actor=actor, actor_role=role, remarks=data.get("remarks"),
    )
    return jsonify(project.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
#  Accounts & installation
# ═════════════════════════════════════════════════════════════════════════════


@project_bp.route("/projects/<int:project_id>/payments", methods=["GET"])
@require_roles(*ALL_ROLES)
def list_payments(project_id):
    payments = payment_ledger.get_payment_history(project_id)
    return jsonify({"payments": [p.to_dict() for p in payments], "total": len(payments)})


@project_bp.route("/projects/<int:project_id>/payments", methods=["POST"])
@require_roles(Role.ACCOUNTS, *ADMIN_TIER)
def record_payment(project_id):
    data = request.get_json(silent=True) or {}
    if data.get("amount") is None:
        return api_error(E.VALIDATION_REQUIRED, "amount is required")
    actor, role = current_actor()
    project = payment_ledger.record_payment(
        project_id,
        amount=data["amount"],
        payment_date=data.get("payment_date"),
        proof_url=data.get("payment_proof_url"),
        remarks=data.get("remarks"),
        actor=actor,
        actor_role=role,
    )
    return jsonify(project.to_dict()), 201


@project_bp.route("/projects/<int:project_id>/installation", methods=["PUT"])
@require_roles(Role.INSTALLATION, *ADMIN_TIER)
def update_installation(project_id):
    data = request.get_json(silent=True) or {}
    actor, role = current_actor()
    project = installation_service.record_installation(
        project_id,
        status=data.get("installation_status"),
        remarks=data.get("installation_remarks"),
        completion_date=data.get("completion_date"),
        actor=actor,
        actor_role=role,
    )
    return jsonify(project.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
#  Audit trail
# ═════════════════════════════════════════════════════════════════════════════


@project_bp.route("/projects/<int:project_id>/history", methods=["GET"])
@require_roles(*ALL_ROLES)
def stage_history(project_id):
    entries = project_service.get_stage_history(project_id)
    return jsonify({"history": [e.to_dict() for e in entries], "total": len(entries)})


@project_bp.route("/projects/<int:project_id>/activity", methods=["GET"])
@require_roles(*ALL_ROLES)
def activity_log(project_id):
    entries = project_service.get_activity_log(project_id)
    return jsonify({"activity": [e.to_dict() for e in entries], "total": len(entries)})
