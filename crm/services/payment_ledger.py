"""
Project Pipeline CRM
Payment Ledger Service.

Payments are immutable ledger rows. After every write the project's balance
is re-derived from the full ledger:

    total    = Σ amount_paid
    pending  = max(0, invoice_amount − total)
    status   = COMPLETED if pending == 0
               PARTIAL   if total > 0
               PENDING   otherwise

The ``amount_received`` / ``pending_amount`` / ``payment_status`` columns on
Project are a cache of that derivation. When the balance reaches zero the
project is moved ACCOUNTS → INSTALLATION by the system in the same unit of
work.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import func, select

from crm.core import clock
from crm.core.exceptions import (
    InvalidAmountError,
    InvalidFieldError,
    InvalidStateError,
    NotFoundError,
)
from crm.models import db
from crm.models.project import ZERO, PaymentTransaction, Project, write_activity
from crm.models.workflow import PaymentStatus, Role, Stage
from crm.services.project_lifecycle import (
    apply_system_transition,
    apply_user_transition,
    load_project_for_update,
)
from crm.utils.helpers import parse_date_input, parse_decimal

logger = logging.getLogger(__name__)

PAYMENT_COMPLETED_REMARKS = "Payment completed, moving to installation"
READY_FOR_ACCOUNTS_REMARKS = "Ready for accounts processing"


def ledger_total(project_id: int) -> Decimal:
    """Sum of all recorded payments for the project, straight from the store."""
    total = db.session.execute(
        select(func.coalesce(func.sum(PaymentTransaction.amount_paid), 0))
        .where(PaymentTransaction.project_id == project_id)
    ).scalar_one()
    return parse_decimal(total) or ZERO


def derive_balance(invoice_amount: Decimal, total_received: Decimal) -> tuple[Decimal, PaymentStatus]:
    """Return ``(pending, status)`` for an invoice and the ledger total."""
    pending = max(ZERO, invoice_amount - total_received)
    if pending == ZERO:
        return pending, PaymentStatus.COMPLETED
    if total_received > ZERO:
        return pending, PaymentStatus.PARTIAL
    return pending, PaymentStatus.PENDING


def refresh_balance(project: Project) -> tuple[Decimal, Decimal, PaymentStatus]:
    """Re-derive and cache ``amount_received`` / ``pending_amount`` / ``payment_status``.

    The caller holds the project row lock and owns the commit.
    """
    total = ledger_total(project.id)
    pending, status = derive_balance(project.invoice_amount, total)
    project.amount_received = total
    project.pending_amount = pending
    project.payment_status = status
    return total, pending, status


def record_payment(
    project_id: int,
    *,
    amount,
    actor: str,
    actor_role,
    payment_date=None,
    proof_url: str | None = None,
    remarks: str | None = None,
) -> Project:
    """Append a payment, re-derive the balance, and complete ACCOUNTS when paid.

    Raises:
        NotFoundError: unknown project.
        InvalidStateError: project is not in ACCOUNTS.
        InvalidAmountError: amount missing, malformed or not > 0.
        InvalidFieldError: no invoice amount, or a malformed payment date.
    """
    try:
        role = Role.parse(actor_role)
        project = load_project_for_update(project_id)
        if project.current_stage != Stage.ACCOUNTS:
            raise InvalidStateError(
                f"Payments can only be recorded in ACCOUNTS stage "
                f"(project {project_id} is in {project.current_stage.value})"
            )

        try:
            paid = parse_decimal(amount)
        except ValueError as exc:
            raise InvalidAmountError(str(exc), details={"amount": "must be a number"}) from exc
        if paid is None or paid <= ZERO:
            raise InvalidAmountError("Payment amount must be greater than zero",
                                     details={"amount": "must be > 0"})
        if project.invoice_amount is None:
            raise InvalidFieldError("Invoice amount must be set before recording payments",
                                    details={"invoice_amount": "required"})
        try:
            paid_on = parse_date_input(payment_date) or clock.today()
        except ValueError as exc:
            raise InvalidFieldError(str(exc), details={"payment_date": "invalid"}) from exc

        now = clock.utcnow()
        db.session.add(PaymentTransaction(
            project=project,
            amount_paid=paid,
            payment_date=paid_on,
            payment_proof_url=proof_url,
            remarks=remarks,
            recorded_by=actor,
            recorded_at=now,
        ))
        db.session.flush()

        previous_total = project.amount_received
        total, pending, status = refresh_balance(project)
        project.accounts_updated_at = now
        project.last_updated_by = actor
        project.last_updated_at = now

        write_activity(
            project_id=project.id,
            action="PAYMENT_ADDED",
            actor=actor,
            role=role,
            field_name="amount_received",
            old_value=previous_total,
            new_value=total,
            remarks=f"Payment added: ₹{paid} | Total: ₹{total} | Pending: ₹{pending}",
        )

        if status == PaymentStatus.COMPLETED:
            apply_system_transition(project, Stage.INSTALLATION, PAYMENT_COMPLETED_REMARKS)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Payment of %s recorded on project %s by %s (total=%s pending=%s status=%s)",
                paid, project_id, actor, total, pending, status.value,
                extra={"project_id": project_id})
    return project


def mark_ready_for_accounts(
    project_id: int,
    *,
    actor: str,
    actor_role,
    remarks: str | None = None,
) -> Project:
    """Hand a SALES project over to accounts.

    Requires ``project_value`` and ``invoice_amount``; seeds the balance from
    the ledger, then applies the user-driven SALES → ACCOUNTS move.
    """
    try:
        role = Role.parse(actor_role)
        project = load_project_for_update(project_id)

        missing = {f: "required" for f in ("project_value", "invoice_amount")
                   if getattr(project, f) is None}
        if missing:
            raise InvalidFieldError(
                "Project value and invoice amount must be set before moving to accounts",
                details=missing,
            )

        total = ledger_total(project.id)
        pending, _ = derive_balance(project.invoice_amount, total)
        project.amount_received = total
        project.pending_amount = pending
        if project.payment_status is None:
            project.payment_status = PaymentStatus.PENDING

        apply_user_transition(
            project, Stage.ACCOUNTS,
            actor=actor, actor_role=role,
            remarks=remarks or READY_FOR_ACCOUNTS_REMARKS,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return project


def get_payment_history(project_id: int) -> list[PaymentTransaction]:
    if db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return db.session.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.project_id == project_id)
        .order_by(PaymentTransaction.payment_date, PaymentTransaction.id)
    ).scalars().all()
