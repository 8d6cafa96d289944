"""
Pipeline-wide exception hierarchy.

Services raise these types; blueprints register one handler per type and
map them to HTTP status codes:

    NotFoundError          → 404
    ValidationError        → 422  (and every subclass below)
    PermissionDeniedError  → 403
    ConflictError          → 409
    CascadeIntegrityError  → 500  (a system follow-on move failed)

Usage:
    from crm.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="Project", resource_id=42)
    raise InvalidTransitionError("LEAD", "SALES", "EXECUTIVE")
"""

from __future__ import annotations


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Project", "Alert").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = "ERR_VALIDATION"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(ValidationError):
    """The (role, from, to) triple is not in the permission table."""

    code = "ERR_INVALID_TRANSITION"

    def __init__(self, from_stage, to_stage, role) -> None:
        self.from_stage = getattr(from_stage, "value", from_stage)
        self.to_stage = getattr(to_stage, "value", to_stage)
        self.role = getattr(role, "value", role)
        super().__init__(
            f"Role {self.role} cannot move a project from {self.from_stage} to {self.to_stage}",
            details={"from_stage": self.from_stage, "to_stage": self.to_stage, "role": self.role},
        )


class InvalidStateError(ValidationError):
    """The project is not in a stage that allows the requested operation."""

    code = "ERR_INVALID_STATE"


class InvalidAmountError(ValidationError):
    """A monetary amount is missing, malformed or not strictly positive."""

    code = "ERR_INVALID_AMOUNT"


class InvalidFieldError(ValidationError):
    """A field value is missing or malformed."""

    code = "ERR_INVALID_FIELD"


class PermissionDeniedError(Exception):
    """The caller's role is unknown or may not perform the operation."""

    code = "ERR_FORBIDDEN"


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    code = "ERR_CONFLICT_DUPLICATE"

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class CascadeIntegrityError(RuntimeError):
    """A system-triggered follow-on transition could not be applied.

    The enclosing unit of work is rolled back, so neither the user-driven
    move nor the follow-on is persisted.
    """

    code = "ERR_CASCADE_INTEGRITY"
