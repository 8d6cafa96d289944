"""
Project Pipeline CRM
Project domain models.

Models:
    - Project:              a customer installation tracked through the department pipeline
    - PaymentTransaction:   one received payment; the ledger is the source of truth for balances
    - ProjectStageHistory:  append-only record of every stage change (user or system)
    - ProjectActivityLog:   append-only audit trail of every mutation, kept after deletion

Architecture:
    Project ──1:N──▶ PaymentTransaction
    Project ──1:N──▶ ProjectStageHistory
    Project ──1:N──▶ ProjectAlert            (crm.models.alert)
    ProjectActivityLog.project_id            (soft reference, survives project deletion)

Concurrency:
    ``Project.version_id`` is a SQLAlchemy version counter. Writers load the
    row with SELECT ... FOR UPDATE; a writer holding a stale copy fails with
    StaleDataError instead of overwriting a concurrent change.
"""

from __future__ import annotations

from decimal import Decimal

from crm.core.clock import as_utc, utcnow
from crm.models import db
from crm.models.workflow import (
    ExecutiveViewStatus,
    InstallationStatus,
    OwnerRole,
    PaymentStatus,
    Stage,
)

ZERO = Decimal("0.00")


def _enum_col(enum_cls, **kwargs):
    return db.Column(db.Enum(enum_cls, native_enum=False, length=50), **kwargs)


def _iso(value):
    return as_utc(value).isoformat() if value else None


def _money(value):
    return float(value) if value is not None else None


class Project(db.Model):
    """A prospective or active customer installation."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)

    # ── Intake (executive) ───────────────────────────────────────────────
    school = db.Column(db.String(255), nullable=False)
    contact_person = db.Column(db.String(255), nullable=True)
    contact_number = db.Column(db.String(50), nullable=True, unique=True,
                               comment="Unique when present; used for duplicate detection")
    place = db.Column(db.String(255), nullable=True)
    district = db.Column(db.String(255), nullable=True)
    region = db.Column(db.String(255), nullable=True)
    project_name = db.Column(db.String(500), nullable=True)
    parent_company = db.Column(db.String(255), nullable=True)
    executive_remarks = db.Column(db.Text, nullable=True)
    created_date = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    created_by = db.Column(db.String(150), nullable=False)

    # ── Workflow ─────────────────────────────────────────────────────────
    current_stage = _enum_col(Stage, nullable=False, default=Stage.LEAD, index=True)
    previous_stage = _enum_col(Stage, nullable=True)
    stage_change_timestamp = db.Column(db.DateTime(timezone=True), nullable=True,
                                       comment="When the project entered current_stage")
    stage_changed_by = db.Column(db.String(150), nullable=True)
    current_owner_role = _enum_col(OwnerRole, nullable=False, default=OwnerRole.EXECUTIVE,
                                   index=True)
    is_locked = db.Column(db.Boolean, nullable=False, default=False,
                          comment="Set on entering SALES or COMPLETED; never cleared")

    # ── Sales ────────────────────────────────────────────────────────────
    project_value = db.Column(db.Numeric(15, 2), nullable=True)
    invoice_amount = db.Column(db.Numeric(15, 2), nullable=True)
    pending_delivery = db.Column(db.Text, nullable=True)
    quotation_remarks = db.Column(db.Text, nullable=True)
    expected_delivery_date = db.Column(db.Date, nullable=True)
    sales_remarks = db.Column(db.Text, nullable=True)
    sales_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Accounts (derived from the payment ledger) ───────────────────────
    payment_status = _enum_col(PaymentStatus, nullable=True)
    amount_received = db.Column(db.Numeric(15, 2), nullable=True)
    pending_amount = db.Column(db.Numeric(15, 2), nullable=True)
    accounts_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Installation ─────────────────────────────────────────────────────
    installation_status = _enum_col(InstallationStatus, nullable=True)
    installation_remarks = db.Column(db.Text, nullable=True)
    completion_date = db.Column(db.Date, nullable=True)
    installation_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Audit ────────────────────────────────────────────────────────────
    last_updated_by = db.Column(db.String(150), nullable=True)
    last_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    payments = db.relationship(
        "PaymentTransaction",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PaymentTransaction.id",
    )
    stage_history = db.relationship(
        "ProjectStageHistory",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProjectStageHistory.id",
    )
    alerts = db.relationship(
        "ProjectAlert",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def ledger_total(self) -> Decimal:
        """Sum of every recorded payment, re-derived from the ledger rows."""
        return sum((p.amount_paid for p in self.payments), ZERO)

    @property
    def executive_view_status(self) -> ExecutiveViewStatus:
        return ExecutiveViewStatus.from_stage(self.current_stage)

    def to_dict(self):
        received = self.ledger_total
        pending = None
        if self.invoice_amount is not None:
            pending = max(ZERO, self.invoice_amount - received)
        result = {
            "id": self.id,
            "school": self.school,
            "contact_person": self.contact_person,
            "contact_number": self.contact_number,
            "place": self.place,
            "district": self.district,
            "region": self.region,
            "project_name": self.project_name,
            "parent_company": self.parent_company,
            "executive_remarks": self.executive_remarks,
            "created_date": _iso(self.created_date),
            "created_by": self.created_by,
            "current_stage": self.current_stage.value,
            "previous_stage": self.previous_stage.value if self.previous_stage else None,
            "stage_change_timestamp": _iso(self.stage_change_timestamp),
            "stage_changed_by": self.stage_changed_by,
            "current_owner_role": self.current_owner_role.value,
            "is_locked": self.is_locked,
            "executive_view_status": self.executive_view_status.value,
            "project_value": _money(self.project_value),
            "invoice_amount": _money(self.invoice_amount),
            "pending_delivery": self.pending_delivery,
            "quotation_remarks": self.quotation_remarks,
            "expected_delivery_date": (self.expected_delivery_date.isoformat()
                                       if self.expected_delivery_date else None),
            "sales_remarks": self.sales_remarks,
            "sales_updated_at": _iso(self.sales_updated_at),
            "payment_status": self.payment_status.value if self.payment_status else None,
            "total_received": float(received),
            "pending_amount": _money(pending),
            "accounts_updated_at": _iso(self.accounts_updated_at),
            "installation_status": (self.installation_status.value
                                    if self.installation_status else None),
            "installation_remarks": self.installation_remarks,
            "completion_date": self.completion_date.isoformat() if self.completion_date else None,
            "installation_updated_at": _iso(self.installation_updated_at),
            "last_updated_by": self.last_updated_by,
            "last_updated_at": _iso(self.last_updated_at),
        }
        result["payment_history"] = [p.to_dict() for p in self.payments]
        return result

    def __repr__(self):
        return f"<Project {self.id}: {self.school} [{self.current_stage.value}]>"


class PaymentTransaction(db.Model):
    """One received payment. Rows are never updated or deleted individually."""

    __tablename__ = "payment_transactions"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    amount_paid = db.Column(db.Numeric(15, 2), nullable=False)
    payment_date = db.Column(db.Date, nullable=False)
    payment_proof_url = db.Column(db.String(1000), nullable=True)
    remarks = db.Column(db.Text, nullable=True)
    recorded_by = db.Column(db.String(150), nullable=False)
    recorded_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    project = db.relationship("Project", back_populates="payments")

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "amount_paid": float(self.amount_paid),
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "payment_proof_url": self.payment_proof_url,
            "remarks": self.remarks,
            "recorded_by": self.recorded_by,
            "recorded_at": _iso(self.recorded_at),
        }

    def __repr__(self):
        return f"<PaymentTransaction {self.id}: project={self.project_id} {self.amount_paid}>"


class ProjectStageHistory(db.Model):
    """Immutable stage-change record. ``from_stage`` is NULL only for creation."""

    __tablename__ = "project_stage_history"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    from_stage = _enum_col(Stage, nullable=True)
    to_stage = _enum_col(Stage, nullable=False)
    changed_by = db.Column(db.String(150), nullable=False)
    changed_by_role = db.Column(db.String(30), nullable=False)
    changed_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    remarks = db.Column(db.Text, nullable=True)
    is_system_triggered = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "from_stage": self.from_stage.value if self.from_stage else None,
            "to_stage": self.to_stage.value,
            "changed_by": self.changed_by,
            "changed_by_role": self.changed_by_role,
            "changed_at": _iso(self.changed_at),
            "remarks": self.remarks,
            "is_system_triggered": self.is_system_triggered,
        }

    def __repr__(self):
        src = self.from_stage.value if self.from_stage else "∅"
        return f"<ProjectStageHistory {self.id}: {src} → {self.to_stage.value}>"


class ProjectActivityLog(db.Model):
    """
    Append-only activity trail.

    ``project_id`` is not a foreign key so DELETED entries outlive the project.
    """

    __tablename__ = "project_activity_logs"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    action = db.Column(db.String(30), nullable=False,
                       comment="CREATED | FIELD_UPDATED | STAGE_CHANGED | PAYMENT_ADDED | DELETED")
    field_name = db.Column(db.String(100), nullable=True)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    performed_by = db.Column(db.String(150), nullable=False)
    performed_by_role = db.Column(db.String(30), nullable=False)
    performed_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    remarks = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "action": self.action,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "performed_by": self.performed_by,
            "performed_by_role": self.performed_by_role,
            "performed_at": _iso(self.performed_at),
            "remarks": self.remarks,
        }

    def __repr__(self):
        return f"<ProjectActivityLog {self.id}: {self.action} project={self.project_id}>"


# ── Convenience writers ──────────────────────────────────────────────────────


def write_activity(
    *,
    project_id: int,
    action: str,
    actor: str,
    role,
    remarks: str | None = None,
    field_name: str | None = None,
    old_value=None,
    new_value=None,
) -> ProjectActivityLog:
    """Add an activity row to the current session (flush, no commit)."""
    entry = ProjectActivityLog(
        project_id=project_id,
        action=action,
        field_name=field_name,
        old_value=None if old_value is None else str(old_value),
        new_value=None if new_value is None else str(new_value),
        performed_by=actor,
        performed_by_role=getattr(role, "value", role),
        performed_at=utcnow(),
        remarks=remarks,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def write_stage_history(
    *,
    project_id: int,
    from_stage: Stage | None,
    to_stage: Stage,
    actor: str,
    role,
    remarks: str | None = None,
    is_system_triggered: bool = False,
) -> ProjectStageHistory:
    """Add a stage history row to the current session (flush, no commit)."""
    entry = ProjectStageHistory(
        project_id=project_id,
        from_stage=from_stage,
        to_stage=to_stage,
        changed_by=actor,
        changed_by_role=getattr(role, "value", role),
        changed_at=utcnow(),
        remarks=remarks,
        is_system_triggered=is_system_triggered,
    )
    db.session.add(entry)
    db.session.flush()
    return entry
