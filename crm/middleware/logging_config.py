"""
Structured logging configuration.

Every record emitted while a request is being handled is stamped with the
request id and the caller (``X-User-Id`` / ``X-User-Role``), so a project's
stage changes, payments and alert activity can be traced back to who did it.

    Development  → ReadableFormatter (colored, one line per record)
    Production   → JSONFormatter (one JSON object per line)
    LOG_LEVEL    → level override; LOG_FORMAT=json|readable forces a format
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_app_context, has_request_context

# Context attributes copied onto JSON records when present.
EXTRA_KEYS = (
    "request_id",
    "actor",
    "actor_role",
    "project_id",
    "job_name",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"


class RequestContextFilter(logging.Filter):
    """Attach request id and caller identity to records logged inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not (has_app_context() and has_request_context()):
            return True
        if getattr(record, "request_id", None) is None:
            record.request_id = g.get("request_id")
        if getattr(record, "actor", None) is None:
            record.actor = g.get("actor_id")
        if getattr(record, "actor_role", None) is None:
            role = g.get("actor_role")
            record.actor_role = role.value if role is not None else None
        return True


class JSONFormatter(logging.Formatter):
    """One JSON document per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update({
            key: getattr(record, key)
            for key in EXTRA_KEYS
            if getattr(record, key, None) is not None
        })
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line output for a developer terminal."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        color = _LEVEL_COLORS.get(record.levelno, "")

        tags = []
        actor = getattr(record, "actor", None)
        if actor:
            tags.append(f"{actor}/{getattr(record, 'actor_role', None) or '?'}")
        project_id = getattr(record, "project_id", None)
        if project_id is not None:
            tags.append(f"project={project_id}")
        job_name = getattr(record, "job_name", None)
        if job_name:
            tags.append(f"job={job_name}")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            tags.append(f"{duration:.0f}ms")

        line = f"{color}{stamp} {record.levelname:<8}{_RESET} {record.name}: {record.getMessage()}"
        if tags:
            line += f" [{' '.join(tags)}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _pick_formatter(is_prod: bool) -> logging.Formatter:
    forced = os.getenv("LOG_FORMAT", "").strip().lower()
    if forced == "json":
        return JSONFormatter()
    if forced == "readable":
        return ReadableFormatter()
    return JSONFormatter() if is_prod else ReadableFormatter()


def configure_logging(app):
    """
    Install one stderr handler on the root logger.

    Level defaults to INFO in production and DEBUG elsewhere. Calling this
    again (tests build the app more than once) replaces the handler.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(_pick_formatter(is_prod))
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, type(handler.formatter).__name__)
