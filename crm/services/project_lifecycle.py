"""
Project Pipeline CRM
Project Lifecycle Service: transition engine and automation cascade.

A stage change is applied in two explicit steps inside one unit of work:

    1. apply_transition()  validate (unless system), move the stage, recompute
                           owner and lock, write history + activity, retire
                           alerts bound to the stage being left
    2. apply_cascade()     look the new stage up in CASCADE_RULES and apply at
                           most one system follow-on via apply_transition()

Step 2 runs only after a user-driven move, and the follow-on it applies is
never cascaded again. Payment and installation completion feed the same
engine through ``apply_system_transition()``.

Usage:
    from crm.services.project_lifecycle import transition_stage

    project = transition_stage(
        project_id=7,
        to_stage="ONBOARDED",
        actor="exec-1",
        actor_role="EXECUTIVE",
        remarks="Signed",
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select

from crm.core import clock
from crm.core.exceptions import (
    CascadeIntegrityError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from crm.models import db
from crm.models.project import Project, ProjectStageHistory, write_activity, write_stage_history
from crm.models.workflow import (
    CASCADE_RULES,
    LOCKING_STAGES,
    STAGE_BOUND_ALERTS,
    SYSTEM_ACTOR,
    Role,
    Stage,
    is_transition_allowed,
    owner_role_for,
    parse_stage,
)
from crm.services import alert_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CascadeRule:
    source: Stage
    target: Stage
    remarks: str


def cascade_rule_for(stage: Stage) -> CascadeRule | None:
    rule = CASCADE_RULES.get(stage)
    if rule is None:
        return None
    target, remarks = rule
    return CascadeRule(source=stage, target=target, remarks=remarks)


def load_project_for_update(project_id: int) -> Project:
    """Load a project with a row lock held until the unit of work ends."""
    project = db.session.execute(
        select(Project)
        .where(Project.id == project_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def apply_transition(
    project: Project,
    to_stage,
    *,
    actor: str,
    actor_role: Role,
    remarks: str | None = None,
    is_system_triggered: bool = False,
) -> ProjectStageHistory:
    """Move ``project`` to ``to_stage`` and record it. Flushes, never commits.

    Raises:
        InvalidTransitionError: the move is not in the stage graph for
            ``actor_role`` (user-driven moves only), or ``to_stage`` is not a stage.
    """
    from_stage = project.current_stage
    try:
        target = parse_stage(to_stage)
    except ValueError:
        raise InvalidTransitionError(from_stage, to_stage, actor_role) from None

    if not is_system_triggered and not is_transition_allowed(from_stage, target, actor_role):
        raise InvalidTransitionError(from_stage, target, actor_role)

    now = clock.utcnow()
    project.previous_stage = from_stage
    project.current_stage = target
    project.stage_change_timestamp = now
    project.stage_changed_by = actor
    project.current_owner_role = owner_role_for(target, project.current_owner_role)
    if target in LOCKING_STAGES:
        project.is_locked = True
    project.last_updated_by = actor
    project.last_updated_at = now
    db.session.flush()

    entry = write_stage_history(
        project_id=project.id,
        from_stage=from_stage,
        to_stage=target,
        actor=actor,
        role=actor_role,
        remarks=remarks,
        is_system_triggered=is_system_triggered,
    )
    write_activity(
        project_id=project.id,
        action="STAGE_CHANGED",
        actor=actor,
        role=actor_role,
        field_name="current_stage",
        old_value=from_stage.value,
        new_value=target.value,
        remarks=f"Stage changed from {from_stage.value} to {target.value}",
    )

    bound_alert = STAGE_BOUND_ALERTS.get(from_stage)
    if bound_alert is not None and from_stage != target:
        alert_service.auto_dismiss(project.id, bound_alert)

    logger.info(
        "Project %s moved %s → %s by %s (%s)%s",
        project.id, from_stage.value, target.value, actor, actor_role.value,
        " [system]" if is_system_triggered else "",
        extra={"project_id": project.id},
    )
    return entry


def apply_system_transition(project: Project, to_stage: Stage, remarks: str) -> ProjectStageHistory:
    """Apply an automatic follow-on move as SYSTEM.

    A failure here means the rule tables are inconsistent, so it is raised as
    CascadeIntegrityError rather than a user-facing validation error.
    """
    try:
        return apply_transition(
            project,
            to_stage,
            actor=SYSTEM_ACTOR,
            actor_role=Role.SYSTEM,
            remarks=remarks,
            is_system_triggered=True,
        )
    except ValidationError as exc:
        raise CascadeIntegrityError(
            f"System transition of project {project.id} to {getattr(to_stage, 'value', to_stage)} "
            f"failed: {exc}"
        ) from exc


def apply_cascade(project: Project) -> ProjectStageHistory | None:
    """Apply at most one follow-on move for the project's new stage."""
    rule = cascade_rule_for(project.current_stage)
    if rule is None:
        return None
    return apply_system_transition(project, rule.target, rule.remarks)


def apply_user_transition(
    project: Project,
    to_stage,
    *,
    actor: str,
    actor_role: Role,
    remarks: str | None = None,
) -> list[ProjectStageHistory]:
    """User-driven move followed by cascade evaluation. Flushes, never commits."""
    entries = [
        apply_transition(project, to_stage, actor=actor, actor_role=actor_role, remarks=remarks)
    ]
    follow_on = apply_cascade(project)
    if follow_on is not None:
        entries.append(follow_on)
    return entries


def transition_stage(
    project_id: int,
    to_stage,
    *,
    actor: str,
    actor_role,
    remarks: str | None = None,
    is_system_triggered: bool = False,
) -> Project:
    """Change a project's stage as one atomic unit of work.

    User-driven moves are validated against the stage graph and then
    cascaded; system moves skip both. Any failure rolls the whole unit back,
    so a rejected move leaves no history or activity rows behind.
    """
    try:
        project = load_project_for_update(project_id)
        if is_system_triggered:
            apply_system_transition(project, to_stage, remarks)
        else:
            apply_user_transition(
                project, to_stage,
                actor=actor, actor_role=Role.parse(actor_role), remarks=remarks,
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return project
