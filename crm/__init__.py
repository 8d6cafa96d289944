"""
Project Pipeline CRM.

    from crm import create_app
    app = create_app()            # APP_ENV, falling back to "development"
    app = create_app("testing")

Setup order matters: logging first, then extensions, request hooks
(timing before identity), tables, blueprints, rate limits, scheduler.
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from crm.auth import init_auth
from crm.config import config
from crm.middleware.logging_config import configure_logging
from crm.middleware.rate_limiter import init_rate_limits
from crm.middleware.timing import init_request_timing
from crm.models import db

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection."""
    if "sqlite" not in type(dbapi_conn).__module__:
        return
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def _cors_origins(raw: str):
    if not raw or raw == "*":
        return "*"
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _init_extensions(app: Flask) -> None:
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    CORS(app, origins=_cors_origins(app.config.get("CORS_ORIGINS", "*")))


def _init_database(app: Flask) -> None:
    from crm.models import alert, project, scheduling  # noqa: F401  (table registration)

    uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if uri.startswith("sqlite:///") and ":memory:" not in uri:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        db.create_all()
    logger.debug("Tables ensured on %s", uri.split("@")[-1])


def _register_blueprints(app: Flask) -> None:
    from crm.blueprints.alert_bp import alert_bp
    from crm.blueprints.health_bp import health_bp
    from crm.blueprints.project_bp import project_bp

    for bp in (project_bp, alert_bp, health_bp):
        app.register_blueprint(bp)


def _register_app_errors(app: Flask) -> None:
    """JSON bodies for errors raised outside any blueprint handler."""

    @app.errorhandler(404)
    def _not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": f"{request.method} not allowed here", "code": "ERR_METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(429)
    def _too_many_requests(e):
        return {"error": "Too many requests", "code": "ERR_RATE_LIMITED",
                "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _internal(e):
        logger.error("Unhandled error on %s: %s", request.path, e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500


def _init_scheduler(app: Flask) -> None:
    from crm.services import scheduled_jobs  # noqa: F401  (registers the jobs)
    from crm.services.scheduler_service import SchedulerService

    SchedulerService.init_app(app)
    SchedulerService.ensure_jobs_registered()
    if app.config.get("SCHEDULER_ENABLED") and not app.testing:
        SchedulerService.start()

    @app.cli.command("scan-alerts")
    def scan_alerts_cmd():
        """Run the delay alert scan once and log the summary."""
        outcome = SchedulerService.run_job("delay_alert_scan")
        logger.info("delay_alert_scan %s: %s", outcome["status"],
                    outcome.get("result") or outcome.get("error"))


def create_app(config_name=None):
    """
    Build the Flask application.

    Args:
        config_name: "development", "testing" or "production";
                     defaults to APP_ENV, then "development".
    """
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    configure_logging(app)
    _init_extensions(app)
    init_request_timing(app)
    init_auth(app)
    _init_database(app)
    _register_blueprints(app)
    _register_app_errors(app)
    init_rate_limits(app, limiter)
    _init_scheduler(app)

    logger.info("Project Pipeline CRM ready (config=%s)", config_name)
    return app
