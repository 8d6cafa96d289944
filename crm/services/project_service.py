"""
Project Pipeline CRM
Project Service: intake, editing, deletion and the read model.

Edit rules:
    - COMPLETED projects are never editable.
    - ADMIN / SUPER_ADMIN may edit any other project.
    - Otherwise the caller must be an EXECUTIVE, and once a project is
      ONBOARDED or later only its creator may edit it.

Delete rules:
    - Only the creator, ADMIN or SUPER_ADMIN.
    - Blocked once the project is ONBOARDED or later.

Sales data may only be written while the project is in SALES or ACCOUNTS.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from crm.core import clock
from crm.core.exceptions import (
    ConflictError,
    InvalidFieldError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
)
from crm.models import db
from crm.models.project import (
    ZERO,
    Project,
    ProjectActivityLog,
    ProjectStageHistory,
    write_activity,
    write_stage_history,
)
from crm.models.workflow import (
    ADMIN_ROLES,
    ONBOARDED_STAGES,
    OwnerRole,
    PaymentStatus,
    Role,
    Stage,
    owner_role_for,
    parse_stage,
)
from crm.services import payment_ledger
from crm.services.project_lifecycle import apply_system_transition, load_project_for_update
from crm.utils.helpers import parse_date_input, parse_decimal

logger = logging.getLogger(__name__)

INTAKE_FIELDS = (
    "school",
    "contact_person",
    "contact_number",
    "place",
    "district",
    "region",
    "project_name",
    "parent_company",
    "executive_remarks",
)

SALES_TEXT_FIELDS = ("pending_delivery", "quotation_remarks", "sales_remarks")
SALES_MONEY_FIELDS = ("project_value", "invoice_amount")
SALES_STAGES = frozenset({Stage.SALES, Stage.ACCOUNTS})

# Department queue name → stages shown in it (None = every stage).
PROJECT_QUEUES: dict[str, tuple[Stage, ...] | None] = {
    "executive": None,
    "sales": (Stage.SALES, Stage.ACCOUNTS),
    "accounts": (Stage.ACCOUNTS,),
    "installation": (Stage.INSTALLATION,),
    "completed": (Stage.COMPLETED,),
}


def _clean(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _ensure_contact_available(contact_number: str | None, exclude_id: int | None = None) -> None:
    if not contact_number:
        return
    stmt = select(Project.id).where(Project.contact_number == contact_number)
    if exclude_id is not None:
        stmt = stmt.where(Project.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise ConflictError("Project", "contact_number", contact_number)


# ═════════════════════════════════════════════════════════════════════════════
#  Intake
# ═════════════════════════════════════════════════════════════════════════════


def create_project(data: dict, *, actor: str, actor_role) -> Project:
    """Create a project in LEAD, owned by the executive team."""
    try:
        role = Role.parse(actor_role)
        values = {f: _clean(data.get(f)) for f in INTAKE_FIELDS}
        if not values["school"]:
            raise InvalidFieldError("School name is required", details={"school": "required"})
        _ensure_contact_available(values["contact_number"])

        now = clock.utcnow()
        project = Project(
            **values,
            created_by=actor,
            created_date=now,
            current_stage=Stage.LEAD,
            previous_stage=None,
            stage_change_timestamp=now,
            stage_changed_by=actor,
            current_owner_role=owner_role_for(Stage.LEAD, OwnerRole.EXECUTIVE),
            is_locked=False,
            last_updated_by=actor,
            last_updated_at=now,
        )
        db.session.add(project)
        db.session.flush()

        write_activity(
            project_id=project.id, action="CREATED", actor=actor, role=role,
            remarks="Project created",
        )
        write_stage_history(
            project_id=project.id, from_stage=None, to_stage=Stage.LEAD,
            actor=actor, role=role, remarks="Initial stage",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Project %s created by %s", project.id, actor, extra={"project_id": project.id})
    return project


def update_project(project_id: int, data: dict, *, actor: str, actor_role) -> Project:
    """Edit intake fields; only keys present in ``data`` are touched."""
    try:
        role = Role.parse(actor_role)
        project = load_project_for_update(project_id)

        if project.current_stage == Stage.COMPLETED:
            raise InvalidStateError("Completed projects cannot be edited")
        if role not in ADMIN_ROLES:
            if role != Role.EXECUTIVE:
                raise PermissionDeniedError("Only executives and admins can edit projects")
            if project.current_stage in ONBOARDED_STAGES and project.created_by != actor:
                raise PermissionDeniedError(
                    "Only the project creator can edit an onboarded project"
                )

        changed = []
        for field in INTAKE_FIELDS:
            if field not in data:
                continue
            new_value = _clean(data[field])
            if field == "school" and not new_value:
                raise InvalidFieldError("School name cannot be empty", details={"school": "required"})
            if field == "contact_number" and new_value != project.contact_number:
                _ensure_contact_available(new_value, exclude_id=project.id)
            if getattr(project, field) != new_value:
                setattr(project, field, new_value)
                changed.append(field)

        now = clock.utcnow()
        project.last_updated_by = actor
        project.last_updated_at = now

        remarks = ("Project executive fields updated" if project.current_stage in ONBOARDED_STAGES
                   else "Project details updated")
        write_activity(
            project_id=project.id,
            action="FIELD_UPDATED",
            actor=actor,
            role=role,
            field_name=",".join(changed) or None,
            remarks=remarks,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Project %s updated by %s (%s)", project_id, actor, ", ".join(changed) or "no changes",
                extra={"project_id": project_id})
    return project


def update_sales_data(project_id: int, data: dict, *, actor: str, actor_role) -> Project:
    """Write quotation / invoice details while the project is with sales or accounts.

    In ACCOUNTS the money fields can be changed but not cleared, and an
    invoice change re-derives the balance from the ledger (completing the
    stage when the new invoice is already covered).
    """
    try:
        role = Role.parse(actor_role)
        project = load_project_for_update(project_id)
        if project.current_stage not in SALES_STAGES:
            raise InvalidStateError(
                f"Sales data can only be updated in SALES or ACCOUNTS stage "
                f"(project {project_id} is in {project.current_stage.value})"
            )
        in_accounts = project.current_stage == Stage.ACCOUNTS
        previous_invoice = project.invoice_amount

        errors = {}
        for field in SALES_MONEY_FIELDS:
            if field not in data:
                continue
            try:
                amount = parse_decimal(data[field])
            except ValueError:
                errors[field] = "must be a number"
                continue
            if amount is None and in_accounts:
                errors[field] = "required once the project is with accounts"
                continue
            if amount is not None and amount < ZERO:
                errors[field] = "must not be negative"
                continue
            setattr(project, field, amount)

        if "expected_delivery_date" in data:
            try:
                project.expected_delivery_date = parse_date_input(data["expected_delivery_date"])
            except ValueError:
                errors["expected_delivery_date"] = "invalid date"

        if errors:
            raise InvalidFieldError("Invalid sales data", details=errors)

        for field in SALES_TEXT_FIELDS:
            if field in data:
                setattr(project, field, _clean(data[field]))

        now = clock.utcnow()
        project.sales_updated_at = now
        project.last_updated_by = actor
        project.last_updated_at = now

        write_activity(
            project_id=project.id, action="FIELD_UPDATED", actor=actor, role=role,
            field_name="sales_data", remarks="Sales data updated",
        )

        if in_accounts and project.invoice_amount != previous_invoice:
            _, _, status = payment_ledger.refresh_balance(project)
            project.accounts_updated_at = now
            if status == PaymentStatus.COMPLETED:
                apply_system_transition(
                    project, Stage.INSTALLATION, payment_ledger.PAYMENT_COMPLETED_REMARKS,
                )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Sales data updated on project %s by %s", project_id, actor,
                extra={"project_id": project_id})
    return project


def delete_project(project_id: int, *, actor: str, actor_role) -> None:
    """Remove a pre-onboarding project together with its history, payments and alerts."""
    try:
        role = Role.parse(actor_role)
        project = load_project_for_update(project_id)

        if role not in ADMIN_ROLES and project.created_by != actor:
            raise PermissionDeniedError("Only the creator or an admin can delete this project")
        if project.current_stage in ONBOARDED_STAGES:
            raise PermissionDeniedError("Onboarded projects cannot be deleted")

        write_activity(
            project_id=project.id, action="DELETED", actor=actor, role=role,
            remarks=f"Project deleted from {project.current_stage.value} stage",
        )
        db.session.delete(project)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Project %s deleted by %s", project_id, actor, extra={"project_id": project_id})


# ═════════════════════════════════════════════════════════════════════════════
#  Read model
# ═════════════════════════════════════════════════════════════════════════════


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def list_projects(stage=None, owner_role=None):
    """Return a Select over projects, newest first, optionally filtered.

    Raises InvalidFieldError for an unknown stage or owner role.
    """
    stmt = select(Project).order_by(Project.created_date.desc(), Project.id.desc())
    if stage:
        try:
            stmt = stmt.where(Project.current_stage == parse_stage(stage))
        except ValueError:
            raise InvalidFieldError(f"Unknown stage: {stage}", details={"stage": "invalid"}) from None
    if owner_role:
        try:
            owner = OwnerRole(str(owner_role).strip().upper())
        except ValueError:
            raise InvalidFieldError(f"Unknown owner role: {owner_role}",
                                    details={"owner_role": "invalid"}) from None
        stmt = stmt.where(Project.current_owner_role == owner)
    return stmt


def list_projects_for_queue(queue: str):
    """Return a Select over the projects in a department queue."""
    key = (queue or "").strip().lower()
    if key not in PROJECT_QUEUES:
        raise NotFoundError(resource="Queue", resource_id=queue)
    stmt = select(Project).order_by(Project.stage_change_timestamp.desc(), Project.id.desc())
    stages = PROJECT_QUEUES[key]
    if stages is not None:
        stmt = stmt.where(Project.current_stage.in_(stages))
    return stmt


def get_stage_history(project_id: int) -> list[ProjectStageHistory]:
    get_project(project_id)
    return db.session.execute(
        select(ProjectStageHistory)
        .where(ProjectStageHistory.project_id == project_id)
        .order_by(ProjectStageHistory.changed_at, ProjectStageHistory.id)
    ).scalars().all()


def get_activity_log(project_id: int) -> list[ProjectActivityLog]:
    """Activity entries, newest first. Works for deleted projects too."""
    return db.session.execute(
        select(ProjectActivityLog)
        .where(ProjectActivityLog.project_id == project_id)
        .order_by(ProjectActivityLog.performed_at.desc(), ProjectActivityLog.id.desc())
    ).scalars().all()
