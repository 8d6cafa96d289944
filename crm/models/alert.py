"""
Project Pipeline CRM
Delay alert model.

Models:
    - ProjectAlert: a warning that a project has stalled in a stage

Lifecycle:
    active → dismissed   (by a user, or by the system when the project
                          leaves the stage the alert is bound to)

At most one *active* alert exists per (project_id, alert_type). The partial
unique index enforces this at the database level so two concurrent scans
cannot both insert.
"""

from __future__ import annotations

from crm.core.clock import as_utc, utcnow
from crm.models import db
from crm.models.workflow import AlertSeverity, AlertType, Stage


class ProjectAlert(db.Model):
    __tablename__ = "project_alerts"
    __table_args__ = (
        db.Index(
            "uq_project_alerts_active_type",
            "project_id", "alert_type",
            unique=True,
            sqlite_where=db.text("is_active = 1"),
            postgresql_where=db.text("is_active"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    alert_type = db.Column(db.Enum(AlertType, native_enum=False, length=50), nullable=False)
    severity = db.Column(db.Enum(AlertSeverity, native_enum=False, length=50), nullable=False)
    message = db.Column(db.Text, nullable=False)
    stage = db.Column(db.Enum(Stage, native_enum=False, length=50), nullable=False,
                      comment="Stage the project was in when the alert fired")
    days_overdue = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    dismissed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    dismissed_by = db.Column(db.String(150), nullable=True)

    project = db.relationship("Project", back_populates="alerts")

    def dismiss(self, by: str) -> None:
        self.is_active = False
        self.dismissed_at = utcnow()
        self.dismissed_by = by

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "project_name": self.project.school if self.project else None,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "stage": self.stage.value,
            "days_overdue": self.days_overdue,
            "is_active": self.is_active,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
            "dismissed_at": as_utc(self.dismissed_at).isoformat() if self.dismissed_at else None,
            "dismissed_by": self.dismissed_by,
        }

    def __repr__(self):
        state = "active" if self.is_active else "dismissed"
        return f"<ProjectAlert {self.id}: {self.alert_type.value} project={self.project_id} [{state}]>"
