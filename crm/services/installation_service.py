"""
Project Pipeline CRM
Installation Service.

Installation teams record progress on projects in INSTALLATION. Marking the
work WORK_DONE completes the project: the system moves it
INSTALLATION → COMPLETED in the same unit of work.
"""

from __future__ import annotations

import logging

from crm.core import clock
from crm.core.exceptions import InvalidFieldError, InvalidStateError
from crm.models import db
from crm.models.project import Project, write_activity
from crm.models.workflow import InstallationStatus, Role, Stage
from crm.services.project_lifecycle import apply_system_transition, load_project_for_update
from crm.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

WORK_COMPLETED_REMARKS = "Work completed"


def _parse_status(value) -> InstallationStatus | None:
    if value is None or value == "":
        return None
    try:
        return InstallationStatus(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(s.value for s in InstallationStatus)
        raise InvalidFieldError(
            f"Unknown installation status {value!r}; expected one of {allowed}",
            details={"status": "invalid"},
        ) from None


def record_installation(
    project_id: int,
    *,
    actor: str,
    actor_role,
    status=None,
    remarks: str | None = None,
    completion_date=None,
) -> Project:
    """Update installation fields; WORK_DONE completes the project."""
    try:
        role = Role.parse(actor_role)
        project = load_project_for_update(project_id)
        if project.current_stage != Stage.INSTALLATION:
            raise InvalidStateError(
                f"Installation data can only be updated in INSTALLATION stage "
                f"(project {project_id} is in {project.current_stage.value})"
            )

        new_status = _parse_status(status)
        try:
            completed_on = parse_date_input(completion_date)
        except ValueError as exc:
            raise InvalidFieldError(str(exc), details={"completion_date": "invalid"}) from exc

        if new_status is not None:
            project.installation_status = new_status
        if remarks is not None:
            project.installation_remarks = remarks
        if completed_on is not None:
            project.completion_date = completed_on
        if new_status == InstallationStatus.WORK_DONE and completed_on is None:
            project.completion_date = clock.today()

        now = clock.utcnow()
        project.installation_updated_at = now
        project.last_updated_by = actor
        project.last_updated_at = now

        write_activity(
            project_id=project.id,
            action="FIELD_UPDATED",
            actor=actor,
            role=role,
            field_name="installation_status",
            new_value=project.installation_status.value if project.installation_status else None,
            remarks="Installation data updated",
        )

        if new_status == InstallationStatus.WORK_DONE:
            apply_system_transition(project, Stage.COMPLETED, WORK_COMPLETED_REMARKS)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Installation updated on project %s by %s (status=%s)",
                project_id, actor,
                project.installation_status.value if project.installation_status else None,
                extra={"project_id": project_id})
    return project
