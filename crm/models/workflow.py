"""
Project Pipeline CRM
Workflow vocabulary and the stage graph.

Everything here is plain data plus pure lookups: no database access, no
Flask. The transition engine and the alert scanner read these tables.

Stage flow (⇒ = may be applied by the system, → = user-driven):

    LEAD → ON_PROGRESS → QUOTATION_SENT → IN_REVIEW → ONBOARDED
         ⇒ SALES → ACCOUNTS ⇒ INSTALLATION ⇒ COMPLETED

Ownership:
    LEAD..IN_REVIEW   → EXECUTIVE
    ONBOARDED, SALES  → SALES
    ACCOUNTS          → ACCOUNTS
    INSTALLATION      → INSTALLATION
    COMPLETED         → (owner carried over from the previous stage)
"""

from __future__ import annotations

from enum import Enum

from crm.core.exceptions import PermissionDeniedError


# ── Enumerations ─────────────────────────────────────────────────────────────


class Stage(str, Enum):
    LEAD = "LEAD"
    ON_PROGRESS = "ON_PROGRESS"
    QUOTATION_SENT = "QUOTATION_SENT"
    IN_REVIEW = "IN_REVIEW"
    ONBOARDED = "ONBOARDED"
    SALES = "SALES"
    ACCOUNTS = "ACCOUNTS"
    INSTALLATION = "INSTALLATION"
    COMPLETED = "COMPLETED"


class Role(str, Enum):
    """Caller roles. ``SYSTEM`` is reserved for engine-applied moves."""

    EXECUTIVE = "EXECUTIVE"
    SALES_COORDINATOR = "SALES_COORDINATOR"
    ACCOUNTS = "ACCOUNTS"
    INSTALLATION = "INSTALLATION"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"
    SYSTEM = "SYSTEM"

    @classmethod
    def parse(cls, value) -> Role:
        """Resolve a role token such as ``"ROLE_ADMIN"`` or ``"admin"``.

        Unknown tokens are an authorization failure, not a validation one.
        """
        if isinstance(value, cls):
            return value
        token = str(value or "").strip().upper()
        if token.startswith("ROLE_"):
            token = token[len("ROLE_"):]
        try:
            return cls(token)
        except ValueError:
            raise PermissionDeniedError(f"Unknown role: {value!r}") from None


class OwnerRole(str, Enum):
    EXECUTIVE = "EXECUTIVE"
    SALES = "SALES"
    ACCOUNTS = "ACCOUNTS"
    INSTALLATION = "INSTALLATION"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    COMPLETED = "COMPLETED"


class InstallationStatus(str, Enum):
    PENDING = "PENDING"
    NOT_DONE = "NOT_DONE"
    WORK_DONE = "WORK_DONE"


class AlertType(str, Enum):
    STAGE_INACTIVITY = "STAGE_INACTIVITY"
    PAYMENT_DELAY = "PAYMENT_DELAY"
    INSTALLATION_DELAY = "INSTALLATION_DELAY"
    # Reserved: no rule raises these yet.
    DUPLICATE_LEAD = "DUPLICATE_LEAD"
    UNAUTHORIZED_EDIT = "UNAUTHORIZED_EDIT"


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class ExecutiveViewStatus(str, Enum):
    """Coarse status shown to executives instead of the raw stage."""

    NON_ONBOARDED = "NON_ONBOARDED"
    ONBOARDED_ACTIVE = "ONBOARDED_ACTIVE"
    COMPLETED = "COMPLETED"

    @classmethod
    def from_stage(cls, stage: Stage) -> ExecutiveViewStatus:
        if stage == Stage.COMPLETED:
            return cls.COMPLETED
        if stage in ONBOARDED_STAGES:
            return cls.ONBOARDED_ACTIVE
        return cls.NON_ONBOARDED


ACTIVITY_ACTIONS = {
    "CREATED",
    "FIELD_UPDATED",
    "STAGE_CHANGED",
    "PAYMENT_ADDED",
    "DELETED",
}

SYSTEM_ACTOR = "SYSTEM"

ADMIN_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})

PRE_ONBOARDING_STAGES = frozenset({
    Stage.LEAD, Stage.ON_PROGRESS, Stage.QUOTATION_SENT, Stage.IN_REVIEW,
})

ONBOARDED_STAGES = frozenset({
    Stage.ONBOARDED, Stage.SALES, Stage.ACCOUNTS, Stage.INSTALLATION, Stage.COMPLETED,
})


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

_EXECUTIVE_TIER = frozenset({Role.EXECUTIVE, Role.ADMIN, Role.SUPER_ADMIN})
_SALES_TIER = frozenset({Role.SALES_COORDINATOR, Role.ADMIN, Role.SUPER_ADMIN})
_ACCOUNTS_TIER = frozenset({Role.ACCOUNTS, Role.ADMIN, Role.SUPER_ADMIN})
_INSTALLATION_TIER = frozenset({Role.INSTALLATION, Role.ADMIN, Role.SUPER_ADMIN})

# (from, to) → roles allowed to request the move.
STAGE_EDGES: dict[tuple[Stage, Stage], frozenset[Role]] = {
    (Stage.LEAD, Stage.ON_PROGRESS):             _EXECUTIVE_TIER,
    (Stage.ON_PROGRESS, Stage.QUOTATION_SENT):   _EXECUTIVE_TIER,
    (Stage.QUOTATION_SENT, Stage.IN_REVIEW):     _EXECUTIVE_TIER,
    (Stage.IN_REVIEW, Stage.ONBOARDED):          _EXECUTIVE_TIER,
    (Stage.SALES, Stage.ACCOUNTS):               _SALES_TIER,
    (Stage.ACCOUNTS, Stage.INSTALLATION):        _ACCOUNTS_TIER,
    (Stage.INSTALLATION, Stage.COMPLETED):       _INSTALLATION_TIER,
}

PERMITTED_TRANSITIONS: frozenset[tuple[Role, Stage, Stage]] = frozenset(
    (role, from_stage, to_stage)
    for (from_stage, to_stage), roles in STAGE_EDGES.items()
    for role in roles
)

# COMPLETED has no entry; the previous owner role carries over.
OWNER_ROLE_BY_STAGE: dict[Stage, OwnerRole] = {
    Stage.LEAD:           OwnerRole.EXECUTIVE,
    Stage.ON_PROGRESS:    OwnerRole.EXECUTIVE,
    Stage.QUOTATION_SENT: OwnerRole.EXECUTIVE,
    Stage.IN_REVIEW:      OwnerRole.EXECUTIVE,
    Stage.ONBOARDED:      OwnerRole.SALES,
    Stage.SALES:          OwnerRole.SALES,
    Stage.ACCOUNTS:       OwnerRole.ACCOUNTS,
    Stage.INSTALLATION:   OwnerRole.INSTALLATION,
}

LOCKING_STAGES = frozenset({Stage.SALES, Stage.COMPLETED})

# Entering the key stage immediately triggers one system move.
CASCADE_RULES: dict[Stage, tuple[Stage, str]] = {
    Stage.ONBOARDED: (Stage.SALES, "Auto-assigned to Sales Coordinator"),
}

# Leaving the key stage dismisses the active alert of that type.
STAGE_BOUND_ALERTS: dict[Stage, AlertType] = {
    Stage.IN_REVIEW:    AlertType.STAGE_INACTIVITY,
    Stage.ACCOUNTS:     AlertType.PAYMENT_DELAY,
    Stage.INSTALLATION: AlertType.INSTALLATION_DELAY,
}


def is_transition_allowed(from_stage: Stage, to_stage: Stage, role: Role) -> bool:
    """Return True if ``role`` may move a project from ``from_stage`` to ``to_stage``.

    SUPER_ADMIN bypasses the table entirely, including backward moves.
    """
    if role == Role.SUPER_ADMIN:
        return True
    return (role, from_stage, to_stage) in PERMITTED_TRANSITIONS


def allowed_targets(from_stage: Stage, role: Role) -> list[Stage]:
    """Stages ``role`` may request from ``from_stage``, in pipeline order."""
    if role == Role.SUPER_ADMIN:
        return [s for s in Stage if s != from_stage]
    return [s for s in Stage if (role, from_stage, s) in PERMITTED_TRANSITIONS]


def owner_role_for(stage: Stage, current: OwnerRole | None) -> OwnerRole | None:
    return OWNER_ROLE_BY_STAGE.get(stage, current)


def parse_stage(value) -> Stage:
    """Resolve a stage token; raises ValueError for unknown names."""
    if isinstance(value, Stage):
        return value
    return Stage(str(value or "").strip().upper())
