"""Standardised API error responses.

Every error body has the same shape::

    {"error": "<message>", "code": "ERR_...", "details": {...}}   # details optional

Usage
-----
    from crm.utils.errors import api_error, register_error_handlers, E

    return api_error(E.NOT_FOUND, "Project not found")
    register_error_handlers(project_bp)   # map service exceptions once per blueprint
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from crm.core.exceptions import (
    CascadeIntegrityError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class E:
    """Error codes raised directly by views. Service errors carry their own ``code``."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"   # 400, missing body field
    FORBIDDEN = PermissionDeniedError.code            # 403
    NOT_FOUND = "ERR_NOT_FOUND"                       # 404
    INTERNAL = "ERR_INTERNAL"                         # 500


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.INTERNAL: 500,
}

# Checked in order; subclasses of ValidationError all map to 422.
_STATUS_BY_EXCEPTION: tuple[tuple[type[Exception], int], ...] = (
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (ConflictError, 409),
    (ValidationError, 422),
    (CascadeIntegrityError, 500),
)


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(jsonify(body), status)`` for a view to return; status defaults from ``code``."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)


def _error_payload(error: Exception) -> tuple[str, str, dict | None]:
    if isinstance(error, NotFoundError):
        return E.NOT_FOUND, str(error), None
    if isinstance(error, ConflictError):
        return error.code, str(error), {"field": error.field}
    if isinstance(error, ValidationError):
        return error.code, str(error), error.details
    if isinstance(error, CascadeIntegrityError):
        return error.code, "Automatic stage follow-on failed", None
    return error.code, str(error), None


def register_error_handlers(bp) -> None:
    """Translate the service exception hierarchy into JSON responses on ``bp``."""

    def _handle_domain_error(error: Exception):
        status = next(code for exc_type, code in _STATUS_BY_EXCEPTION if isinstance(error, exc_type))
        if status == 403:
            logger.warning("Permission denied on %s %s: %s", request.method, request.path, error)
        elif status >= 500:
            logger.error("Cascade integrity failure on %s: %s", request.path, error, exc_info=error)
        code, message, details = _error_payload(error)
        return api_error(code, message, status=status, details=details)

    for exc_type, _status in _STATUS_BY_EXCEPTION:
        bp.register_error_handler(exc_type, _handle_domain_error)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
