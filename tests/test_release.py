"""
Tests: Release coordinator — single release, release-all counting and
per-row failure isolation, inline and on the worker pool.
"""

import pytest
from flask import current_app

from appraisal import create_app
from appraisal.auth import Actor
from appraisal.config import TestingConfig, config
from appraisal.core.exceptions import InvalidTransitionError, NotFoundError, UnauthorizedError
from appraisal.models import db
from appraisal.models.assessment import Assessment, AssessmentEvent
from appraisal.services import assessment_workflow as workflow
from appraisal.services import release_service
from appraisal.services import rubric_service


@pytest.fixture()
def park(admin, rubric):
    """Create an assessment for ``subject_id`` and force it into ``status``."""

    def _park(subject_id: str, status: str = "pending_release") -> int:
        created = workflow.create_assessment(admin, "2026-H1", template_id=rubric["id"], subject_id=subject_id)
        row = db.session.get(Assessment, created["id"])
        row.status = status
        row.current_step_index = 3
        db.session.commit()
        return row.id

    return _park


def test_release_all_counts_only_rows_it_moved(admin, park):
    pending = [park(f"staff-{n}") for n in range(1, 6)]
    park("staff-9", status="released")

    assert release_service.release_all(admin) == {"released_count": 5}

    db.session.expire_all()
    statuses = {a.id: a.status for a in db.session.query(Assessment).all()}
    assert all(statuses[i] == "released" for i in pending)
    assert db.session.query(AssessmentEvent).filter_by(action="release").count() == 5

    assert release_service.release_all(admin) == {"released_count": 0}


def test_release_all_with_nothing_pending(admin):
    assert release_service.release_all(admin) == {"released_count": 0}


def test_release_all_skips_failing_row(admin, park, monkeypatch):
    ok_id = park("staff-1")
    bad_id = park("staff-2")
    real = release_service._release_row

    def _flaky(assessment_id, actor_id):
        if assessment_id == bad_id:
            raise InvalidTransitionError("release", "pending_release", reason="assessment was modified concurrently")
        return real(assessment_id, actor_id)

    monkeypatch.setattr(release_service, "_release_row", _flaky)
    assert release_service.release_all(admin) == {"released_count": 1}

    db.session.expire_all()
    assert db.session.get(Assessment, ok_id).status == "released"
    assert db.session.get(Assessment, bad_id).status == "pending_release"


def test_release_requires_admin(manager, park):
    assessment_id = park("staff-1")
    with pytest.raises(UnauthorizedError):
        release_service.release(assessment_id, manager)
    with pytest.raises(UnauthorizedError):
        release_service.release_all(manager)


def test_release_of_non_pending_is_invalid(admin, park):
    assessment_id = park("staff-1", status="step_1_reviewed")
    with pytest.raises(InvalidTransitionError):
        release_service.release(assessment_id, admin)
    assert db.session.get(Assessment, assessment_id).status == "step_1_reviewed"


def test_release_unknown_assessment(admin):
    with pytest.raises(NotFoundError):
        release_service.release(424242, admin)


def test_single_release_sets_timestamp_and_event(admin, park):
    assessment_id = park("staff-1")
    released = release_service.release(assessment_id, admin)
    assert released["status"] == "released"
    assert released["released_at"] is not None

    events = workflow.get_history(assessment_id, admin)
    assert events[-1]["action"] == "release"
    assert events[-1]["actor_id"] == admin.id


# ═════════════════════════════════════════════════════════════════════════════
# Worker pool
# ═════════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def pooled_app(tmp_path, monkeypatch):
    """An app on a file-backed SQLite database with four release workers.

    Worker threads each open their own connection, which in-memory SQLite
    cannot share.
    """

    class PooledReleaseConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'release.db'}"
        RELEASE_MAX_WORKERS = 4

    monkeypatch.setitem(config, "pooled_release", PooledReleaseConfig)
    application = create_app("pooled_release")
    yield application
    with application.app_context():
        db.session.remove()
        db.engine.dispose()


def test_release_all_on_worker_pool(pooled_app, rubric_payload):
    operator = Actor(id="admin-1", roles=frozenset({"admin"}))
    with pooled_app.app_context():
        assert current_app.config["RELEASE_MAX_WORKERS"] == 4
        template = rubric_service.create_template(rubric_payload(), created_by=operator.id)

        ids = []
        for n in range(1, 7):
            created = workflow.create_assessment(
                operator, "2026-H1", template_id=template["id"], subject_id=f"staff-{n}",
            )
            ids.append(created["id"])
        for assessment_id in ids:
            row = db.session.get(Assessment, assessment_id)
            row.status = "released" if assessment_id == ids[-1] else "pending_release"
            row.current_step_index = 3
        db.session.commit()

        assert release_service.release_all(operator) == {"released_count": 5}

        db.session.expire_all()
        assert {a.status for a in db.session.query(Assessment).all()} == {"released"}
        assert db.session.query(AssessmentEvent).filter_by(action="release").count() == 5

        assert release_service.release_all(operator) == {"released_count": 0}
