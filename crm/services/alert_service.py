"""
Project Pipeline CRM
Delay Alert Service.

Scanner:
    ``scan()`` sweeps every project sitting in a watched stage and raises an
    alert once it has stayed longer than the stage threshold:

        STAGE_INACTIVITY    IN_REVIEW      > 7 days   WARNING
        PAYMENT_DELAY       ACCOUNTS       > 10 days  CRITICAL
        INSTALLATION_DELAY  INSTALLATION   > 5 days   CRITICAL

    Each project is evaluated and committed on its own; one failing project
    is logged and the sweep continues.

Lifecycle:
    ``dismiss()`` retires an alert on user request. ``auto_dismiss()`` is
    called by the transition engine, inside its unit of work, when a project
    leaves the stage an alert type is bound to.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from flask import current_app, has_app_context
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from crm.core import clock
from crm.core.exceptions import InvalidStateError, NotFoundError
from crm.models import db
from crm.models.alert import ProjectAlert
from crm.models.project import Project
from crm.models.workflow import SYSTEM_ACTOR, AlertSeverity, AlertType, Stage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelayRule:
    alert_type: AlertType
    stage: Stage
    threshold_days: int
    severity: AlertSeverity
    summary_key: str


DELAY_RULES: tuple[DelayRule, ...] = (
    DelayRule(AlertType.STAGE_INACTIVITY, Stage.IN_REVIEW, 7,
              AlertSeverity.WARNING, "stage_inactivity"),
    DelayRule(AlertType.PAYMENT_DELAY, Stage.ACCOUNTS, 10,
              AlertSeverity.CRITICAL, "payment_delay"),
    DelayRule(AlertType.INSTALLATION_DELAY, Stage.INSTALLATION, 5,
              AlertSeverity.CRITICAL, "installation_delay"),
)


def threshold_for(rule: DelayRule) -> int:
    """Rule threshold, overridable per alert type via ``ALERT_THRESHOLDS``."""
    if has_app_context():
        overrides = current_app.config.get("ALERT_THRESHOLDS") or {}
        if rule.alert_type.value in overrides:
            return int(overrides[rule.alert_type.value])
    return rule.threshold_days


def days_in_stage(project: Project, now: datetime) -> int | None:
    """Whole days since the project entered its current stage."""
    entered = clock.as_utc(project.stage_change_timestamp)
    if entered is None:
        return None
    return (now - entered).days


def _format_amount(value) -> str:
    if value is None:
        return "0"
    return f"{value:,.2f}"


def build_message(rule: DelayRule, project: Project, days: int, threshold: int) -> str:
    if rule.alert_type == AlertType.STAGE_INACTIVITY:
        return (
            f"Project '{project.school}' has been in Review stage for {days} days "
            f"(threshold: {threshold} days)"
        )
    if rule.alert_type == AlertType.PAYMENT_DELAY:
        pending = project.pending_amount
        if project.invoice_amount is not None:
            pending = max(project.invoice_amount - project.ledger_total, 0)
        return (
            f"Payment pending for project '{project.school}' for {days} days "
            f"(threshold: {threshold} days). "
            f"Invoice Amount: ₹{_format_amount(project.invoice_amount)}, "
            f"Pending: ₹{_format_amount(pending)}"
        )
    expected = (project.expected_delivery_date.isoformat()
                if project.expected_delivery_date else "Not set")
    return (
        f"Installation pending for project '{project.school}' for {days} days "
        f"(threshold: {threshold} days). Expected Delivery: {expected}"
    )


def _lock_project(project_id: int) -> Project | None:
    """Fresh read of the project with its row locked until the per-project commit."""
    return db.session.execute(
        select(Project)
        .where(Project.id == project_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def has_active_alert(project_id: int, alert_type: AlertType) -> bool:
    stmt = select(ProjectAlert.id).where(
        ProjectAlert.project_id == project_id,
        ProjectAlert.alert_type == alert_type,
        ProjectAlert.is_active.is_(True),
    )
    return db.session.execute(stmt).first() is not None


def evaluate_project(rule: DelayRule, project: Project, now: datetime) -> ProjectAlert | None:
    """Create the rule's alert for ``project`` if it is overdue and not yet alerted.

    Flushes but does not commit.
    """
    days = days_in_stage(project, now)
    threshold = threshold_for(rule)
    if days is None or days <= threshold:
        return None
    if has_active_alert(project.id, rule.alert_type):
        return None

    alert = ProjectAlert(
        project_id=project.id,
        alert_type=rule.alert_type,
        severity=rule.severity,
        message=build_message(rule, project, days, threshold),
        stage=rule.stage,
        days_overdue=days - threshold,
        is_active=True,
        created_at=now,
    )
    db.session.add(alert)
    db.session.flush()
    logger.info(
        "Alert %s raised for project %s (%d days in %s, %d overdue)",
        rule.alert_type.value, project.id, days, rule.stage.value, alert.days_overdue,
        extra={"project_id": project.id},
    )
    return alert


def scan(now: datetime | None = None) -> dict[str, int]:
    """Run every delay rule over the projects in its stage.

    Returns:
        {"stage_inactivity": n, "payment_delay": n, "installation_delay": n, "errors": n}
        counting alerts created in this run.
    """
    now = now or clock.utcnow()
    results = {rule.summary_key: 0 for rule in DELAY_RULES}
    results["errors"] = 0

    for rule in DELAY_RULES:
        project_ids = db.session.execute(
            select(Project.id)
            .where(
                Project.current_stage == rule.stage,
                Project.stage_change_timestamp.isnot(None),
            )
            .order_by(Project.id)
        ).scalars().all()

        for project_id in project_ids:
            try:
                project = _lock_project(project_id)
                # Moved on since the id query: its stage alerts are already retired.
                if project is not None and project.current_stage == rule.stage:
                    if evaluate_project(rule, project, now) is not None:
                        results[rule.summary_key] += 1
                db.session.commit()
            except IntegrityError:
                # Another scan inserted the same active alert first.
                db.session.rollback()
                logger.info("Duplicate %s alert suppressed for project %s",
                            rule.alert_type.value, project_id)
            except Exception:
                db.session.rollback()
                results["errors"] += 1
                logger.exception("Delay evaluation failed for project %s (%s)",
                                 project_id, rule.alert_type.value,
                                 extra={"project_id": project_id})

    logger.info("Delay alert scan finished: %s", results)
    return results


# ═════════════════════════════════════════════════════════════════════════════
#  Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


def dismiss(alert_id: int, dismissed_by: str) -> ProjectAlert:
    """Dismiss a single active alert."""
    alert = db.session.get(ProjectAlert, alert_id)
    if alert is None:
        raise NotFoundError(resource="Alert", resource_id=alert_id)
    if not alert.is_active:
        raise InvalidStateError(f"Alert {alert_id} is already dismissed")

    try:
        alert.dismiss(dismissed_by)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Alert %s dismissed by %s", alert_id, dismissed_by,
                extra={"project_id": alert.project_id})
    return alert


def auto_dismiss(project_id: int, alert_type: AlertType) -> int:
    """Dismiss every active alert of ``alert_type`` on the project as SYSTEM.

    Runs inside the caller's unit of work (flush only). Returns the number of
    alerts dismissed; zero is not an error.
    """
    alerts = db.session.execute(
        select(ProjectAlert).where(
            ProjectAlert.project_id == project_id,
            ProjectAlert.alert_type == alert_type,
            ProjectAlert.is_active.is_(True),
        )
    ).scalars().all()
    for alert in alerts:
        alert.dismiss(SYSTEM_ACTOR)
    if alerts:
        db.session.flush()
        logger.info("Auto-dismissed %d %s alert(s) for project %s",
                    len(alerts), alert_type.value, project_id,
                    extra={"project_id": project_id})
    return len(alerts)


# ═════════════════════════════════════════════════════════════════════════════
#  Read side
# ═════════════════════════════════════════════════════════════════════════════


def list_active_alerts() -> list[ProjectAlert]:
    return db.session.execute(
        select(ProjectAlert)
        .where(ProjectAlert.is_active.is_(True))
        .order_by(ProjectAlert.created_at.desc(), ProjectAlert.id.desc())
    ).scalars().all()


def list_project_alerts(project_id: int) -> list[ProjectAlert]:
    if db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return db.session.execute(
        select(ProjectAlert)
        .where(ProjectAlert.project_id == project_id, ProjectAlert.is_active.is_(True))
        .order_by(ProjectAlert.created_at.desc(), ProjectAlert.id.desc())
    ).scalars().all()


def alert_summary() -> dict[str, int]:
    rows = db.session.execute(
        select(ProjectAlert.severity, func.count(ProjectAlert.id))
        .where(ProjectAlert.is_active.is_(True))
        .group_by(ProjectAlert.severity)
    ).all()
    counts = {severity: count for severity, count in rows}
    return {
        "total": sum(counts.values()),
        "critical": counts.get(AlertSeverity.CRITICAL, 0),
        "warning": counts.get(AlertSeverity.WARNING, 0),
        "info": counts.get(AlertSeverity.INFO, 0),
    }
