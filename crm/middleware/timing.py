"""
Request timing middleware.

Every response gets ``X-Request-ID`` (echoed from the caller or generated)
and ``X-Request-Duration-Ms``. API calls are logged once on the way out;
caller identity is added to the record by the logging filter.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
SLOW_THRESHOLD_MS = 1000

_PROBE_PREFIX = "/api/v1/health"


def _project_scope() -> int | None:
    raw = (request.view_args or {}).get("project_id")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _level_for(status_code: int, duration_ms: float) -> int:
    if status_code >= 500:
        return logging.ERROR
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    """Install the request id / duration hooks on ``app``."""

    @app.before_request
    def _start_timer():
        g.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        g.request_start = time.perf_counter()

    @app.after_request
    def _finish_timer(response):
        started = g.get("request_start")
        if started is None:
            return response

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers[REQUEST_ID_HEADER] = g.get("request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        path = request.path
        if path.startswith("/api/") and not path.startswith(_PROBE_PREFIX):
            logger.log(
                _level_for(response.status_code, elapsed_ms),
                "%s %s → %d in %.0fms",
                request.method, path, response.status_code, elapsed_ms,
                extra={
                    "method": request.method,
                    "path": path,
                    "status": response.status_code,
                    "duration_ms": elapsed_ms,
                    "remote_addr": request.remote_addr,
                    "project_id": _project_scope(),
                },
            )
        return response
