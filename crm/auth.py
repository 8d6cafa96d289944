"""
Project Pipeline CRM
Caller identity & role guards.

The CRM never authenticates. An upstream gateway authenticates the user and
forwards two headers on every API call:

    X-User-Id    — stable identity string (recorded as actor on every change)
    X-User-Role  — one role token, e.g. EXECUTIVE or ROLE_ACCOUNTS

Provides:
    - init_auth(app):       before_request hook resolving g.actor_id / g.actor_role
    - require_roles(*r):    route decorator, 403 unless the caller holds one of r
    - Content-Type check:   state-changing requests with a body must send JSON

Health routes are exempt. SYSTEM is reserved for engine-applied moves and is
never accepted from a caller.
"""

import functools
import logging

from flask import g, jsonify, request

from crm.core.exceptions import PermissionDeniedError
from crm.models.workflow import ADMIN_ROLES, Role

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"
ROLE_HEADER = "X-User-Role"

ADMIN_TIER = tuple(ADMIN_ROLES)


def current_actor() -> tuple[str, Role]:
    """Return ``(actor_id, role)`` resolved for the current request."""
    return g.actor_id, g.actor_role


def require_roles(*roles: Role):
    """
    Decorator: only callers holding one of ``roles`` may reach the view.

    Usage:
        @project_bp.route("/projects", methods=["POST"])
        @require_roles(Role.EXECUTIVE, *ADMIN_TIER)
        def create_project(): ...
    """
    allowed = frozenset(roles)

    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            role = getattr(g, "actor_role", None)
            if role is None:
                return jsonify({"error": "Authentication required", "code": "ERR_UNAUTHENTICATED"}), 401
            if role not in allowed:
                logger.warning(
                    "Access denied: role '%s' tried to access %s %s",
                    role.value, request.method, request.path,
                )
                return jsonify({"error": "Insufficient permissions", "code": "ERR_FORBIDDEN"}), 403
            return f(*args, **kwargs)
        return decorated
    return decorator


def _check_content_type():
    """State-changing requests with a body must be JSON."""
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return jsonify({
                "error": "Content-Type must be application/json for state-changing requests",
                "code": "ERR_UNSUPPORTED_MEDIA_TYPE",
            }), 415
    return None


def init_auth(app):
    """Install the identity hook for /api/v1/* (health excluded)."""

    @app.before_request
    def _resolve_identity():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith("/api/v1/health"):
            return None
        if request.method == "OPTIONS":
            return None

        ct_error = _check_content_type()
        if ct_error:
            return ct_error

        actor_id = request.headers.get(USER_HEADER, "").strip()
        raw_role = request.headers.get(ROLE_HEADER, "").strip()
        if not actor_id or not raw_role:
            return jsonify({
                "error": f"Authentication required. Provide {USER_HEADER} and {ROLE_HEADER} headers.",
                "code": "ERR_UNAUTHENTICATED",
            }), 401

        try:
            role = Role.parse(raw_role)
        except PermissionDeniedError as exc:
            logger.warning("Rejected unknown role %r from %s", raw_role, actor_id)
            return jsonify({"error": str(exc), "code": "ERR_FORBIDDEN"}), 403
        if role == Role.SYSTEM:
            logger.warning("Rejected reserved SYSTEM role from %s", actor_id)
            return jsonify({"error": "Role SYSTEM is reserved", "code": "ERR_FORBIDDEN"}), 403

        g.actor_id = actor_id
        g.actor_role = role
        return None

    logger.info("Identity middleware installed (headers: %s, %s)", USER_HEADER, ROLE_HEADER)
