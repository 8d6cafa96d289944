"""
Installation service tests.

Covers:
    - NOT_DONE / remarks updates stay in INSTALLATION
    - WORK_DONE completes the project (system move, lock, completion date)
    - Stage and status validation
"""

from datetime import date

import pytest

from crm.core.exceptions import InvalidFieldError, InvalidStateError
from crm.models import db
from crm.models.project import Project, ProjectActivityLog, ProjectStageHistory
from crm.models.workflow import InstallationStatus, OwnerRole, Role, Stage
from crm.services.installation_service import record_installation


def _install(project_id, **kw):
    return record_installation(project_id, actor="inst-1", actor_role=Role.INSTALLATION, **kw)


class TestRecordInstallation:
    def test_progress_update_keeps_stage(self, project_in):
        project = project_in(Stage.INSTALLATION)
        project = _install(project.id, status="not_done", remarks="Waiting for power outlet")

        assert project.current_stage == Stage.INSTALLATION
        assert project.installation_status == InstallationStatus.NOT_DONE
        assert project.installation_remarks == "Waiting for power outlet"
        assert project.completion_date is None
        assert project.installation_updated_at is not None

        entry = (ProjectActivityLog.query
                 .filter_by(project_id=project.id, action="FIELD_UPDATED",
                            remarks="Installation data updated")
                 .one())
        assert entry.new_value == "NOT_DONE"

    def test_work_done_completes(self, project_in, frozen_clock):
        project = project_in(Stage.INSTALLATION)
        frozen_clock.advance(days=3)

        project = _install(project.id, status=InstallationStatus.WORK_DONE.value)

        assert project.current_stage == Stage.COMPLETED
        assert project.previous_stage == Stage.INSTALLATION
        assert project.is_locked is True
        assert project.current_owner_role == OwnerRole.INSTALLATION
        assert project.completion_date == date(2025, 1, 9)

        last = (ProjectStageHistory.query.filter_by(project_id=project.id)
                .order_by(ProjectStageHistory.id.desc()).first())
        assert last.is_system_triggered is True
        assert last.changed_by == "SYSTEM"
        assert last.remarks == "Work completed"

    def test_explicit_completion_date_kept(self, project_in):
        project = project_in(Stage.INSTALLATION)
        project = _install(project.id, status="WORK_DONE", completion_date="2025-03-01")
        assert project.completion_date == date(2025, 3, 1)
        assert project.current_stage == Stage.COMPLETED

    def test_outside_installation_stage(self, project_in):
        project = project_in(Stage.ACCOUNTS)
        with pytest.raises(InvalidStateError):
            _install(project.id, status="WORK_DONE")
        assert db.session.get(Project, project.id).installation_status is None

    def test_completed_project_rejected(self, project_in):
        project = project_in(Stage.COMPLETED)
        with pytest.raises(InvalidStateError):
            _install(project.id, remarks="late note")

    def test_unknown_status(self, project_in):
        project = project_in(Stage.INSTALLATION)
        with pytest.raises(InvalidFieldError):
            _install(project.id, status="HALF_DONE")
        assert db.session.get(Project, project.id).current_stage == Stage.INSTALLATION

    def test_bad_completion_date(self, project_in):
        project = project_in(Stage.INSTALLATION)
        with pytest.raises(InvalidFieldError):
            _install(project.id, status="WORK_DONE", completion_date="someday")
        assert db.session.get(Project, project.id).current_stage == Stage.INSTALLATION
