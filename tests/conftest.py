"""
Shared pytest fixtures for the Project Pipeline CRM test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - frozen_clock: FrozenClock installed as the time source
    - headers: identity header builder for API calls
    - project_in: factory creating a project and walking it to a stage
"""

from datetime import datetime, timezone

import pytest

from crm import create_app
from crm.core.clock import FrozenClock, reset_clock, set_clock
from crm.models import db as _db
from crm.models.project import Project
from crm.models.workflow import InstallationStatus, Role, Stage
from crm.services import installation_service, payment_ledger, project_service
from crm.services.project_lifecycle import transition_stage

EXECUTIVE_ID = "exec-1"
SALES_ID = "sales-1"
ACCOUNTS_ID = "acct-1"
INSTALLER_ID = "inst-1"

FROZEN_START = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

_EXECUTIVE_PATH = (Stage.ON_PROGRESS, Stage.QUOTATION_SENT, Stage.IN_REVIEW, Stage.ONBOARDED)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        reset_clock()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def frozen_clock():
    """Replace the time source; tests move it with ``frozen_clock.advance(days=n)``."""
    clock = FrozenClock(FROZEN_START)
    set_clock(clock)
    yield clock
    reset_clock()


@pytest.fixture()
def headers():
    """Build identity headers: ``headers("EXECUTIVE", "exec-1")``."""

    def _build(role="EXECUTIVE", user=EXECUTIVE_ID):
        return {"X-User-Id": user, "X-User-Role": role}

    return _build


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def project_in():
    """Create a project and drive it through the pipeline to ``stage``.

    ONBOARDED is never a resting stage: asking for it returns the project
    after the cascade, in SALES.
    """

    def _make(stage=Stage.LEAD, *, school="Green Valley School", invoice="1000",
              created_by=EXECUTIVE_ID, **fields):
        stage = Stage(stage)
        project = project_service.create_project(
            {"school": school, **fields}, actor=created_by, actor_role=Role.EXECUTIVE,
        )
        pid = project.id

        for target in _EXECUTIVE_PATH:
            if project.current_stage == stage:
                break
            transition_stage(pid, target, actor=created_by, actor_role=Role.EXECUTIVE)
            project = _db.session.get(Project, pid)

        if stage in (Stage.ACCOUNTS, Stage.INSTALLATION, Stage.COMPLETED):
            project_service.update_sales_data(
                pid, {"project_value": "1200", "invoice_amount": invoice},
                actor=SALES_ID, actor_role=Role.SALES_COORDINATOR,
            )
            payment_ledger.mark_ready_for_accounts(
                pid, actor=SALES_ID, actor_role=Role.SALES_COORDINATOR,
            )
        if stage in (Stage.INSTALLATION, Stage.COMPLETED):
            payment_ledger.record_payment(
                pid, amount=invoice, actor=ACCOUNTS_ID, actor_role=Role.ACCOUNTS,
            )
        if stage == Stage.COMPLETED:
            installation_service.record_installation(
                pid, status=InstallationStatus.WORK_DONE.value,
                actor=INSTALLER_ID, actor_role=Role.INSTALLATION,
            )

        project = _db.session.get(Project, pid)
        expected = Stage.SALES if stage == Stage.ONBOARDED else stage
        assert project.current_stage == expected
        return project

    return _make
