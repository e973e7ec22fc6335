"""
Shared pytest fixtures for the Staff Appraisal Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - reset_schema: the same cleanup, callable from a test
    - client: Flask test client (function-scoped)
    - admin / staff / manager / director: Actors in one department
    - auth_headers: build a Bearer header for an Actor
    - rubric: two-domain template (3 KPIs) created through the catalog
    - staff_workflow: DepartmentRole(department, staff) with the staff_flow preset
    - rubric_payload / complete_layer: builders for request bodies
"""

import pytest

from appraisal import create_app
from appraisal.auth import Actor
from appraisal.models import db as _db
from appraisal.services import rubric_service
from appraisal.services import workflow_config_service as wcs
from appraisal.services.jwt_service import generate_access_token


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
        _drop_all()


def _drop_all():
    """Drop every table with SQLite FK enforcement suspended.

    ``departments.parent_id`` is a RESTRICT self-reference; with
    ``foreign_keys=ON`` the implicit DELETE behind DROP TABLE fails as soon
    as a parent/child pair exists. The pragma is a no-op inside a
    transaction, so it runs on a fresh connection before any DDL.
    """
    _db.session.remove()
    engine = _db.engine
    if engine.dialect.name != "sqlite":
        _db.drop_all()
        return
    with engine.connect() as conn:
        conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
        _db.metadata.drop_all(bind=conn)
        conn.exec_driver_sql("PRAGMA foreign_keys=ON")
        conn.commit()


def _reset_schema():
    _db.session.rollback()
    _drop_all()
    _db.create_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _reset_schema()


@pytest.fixture()
def reset_schema():
    """The per-test teardown as a callable: rollback, drop, recreate."""
    return _reset_schema


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Actors & tokens ──────────────────────────────────────────────────────


@pytest.fixture()
def admin():
    return Actor(id="admin-1", roles=frozenset({"admin"}))


@pytest.fixture()
def department(admin):
    """A root with one department beneath it; returns the department dict."""
    root = wcs.create_department(admin, {"name": "Head Office", "hierarchy_level": "root"})
    return wcs.create_department(
        admin, {"name": "Engineering", "hierarchy_level": "department", "parent_id": root["id"]},
    )


@pytest.fixture()
def staff(department):
    return Actor(id="staff-1", roles=frozenset({"staff"}), department_id=department["id"])


@pytest.fixture()
def manager(department):
    return Actor(id="mgr-1", roles=frozenset({"manager"}), department_id=department["id"])


@pytest.fixture()
def director(department):
    return Actor(id="dir-1", roles=frozenset({"director"}), department_id=department["id"])


@pytest.fixture()
def auth_headers():
    """Return a function building an Authorization header for an Actor."""

    def _headers(actor: Actor) -> dict:
        token = generate_access_token(actor.id, sorted(actor.roles), actor.department_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ── Catalog & workflow fixtures ──────────────────────────────────────────


def _kpi(name: str) -> dict:
    return {
        "name": name,
        "rubric_levels": ["Beginning", "Developing", "Proficient", "Exemplary"],
        "evidence_guidance": "Link to a work artefact.",
    }


def _rubric_payload(**overrides) -> dict:
    """Delivery (60%, 2 KPIs) and Collaboration (40%, 1 KPI)."""
    payload = {
        "name": "Engineering Rubric",
        "is_global": True,
        "domains": [
            {
                "name": "Delivery",
                "weight": 60,
                "standards": [{"name": "Quality", "kpis": [_kpi("Code review"), _kpi("Test coverage")]}],
            },
            {
                "name": "Collaboration",
                "weight": 40,
                "standards": [{"name": "Teamwork", "kpis": [_kpi("Mentoring")]}],
            },
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def rubric(admin):
    """Created template dict plus a flat ``kpi_ids`` list (strings, tree order)."""
    template = rubric_service.create_template(_rubric_payload(), created_by=admin.id)
    template["kpi_ids"] = [
        str(k["id"])
        for d in template["domains"]
        for s in d["standards"]
        for k in s["kpis"]
    ]
    return template


@pytest.fixture()
def staff_workflow(admin, department, rubric):
    """staff role in the department: manager review → director approval → staff acknowledge."""
    role = wcs.create_department_role(admin, {
        "department_id": department["id"],
        "role": "staff",
        "default_template_id": rubric["id"],
    })
    wcs.apply_preset(admin, role["id"], "staff_flow")
    return wcs.get_department_role(role["id"])


def _complete_layer(kpi_ids, score=3) -> tuple[dict, dict]:
    """Scores and evidence that make every KPI complete."""
    scores = {k: score for k in kpi_ids}
    evidence = {k: [{"reference": f"https://docs.example/{k}", "title": "Artefact", "notes": ""}] for k in kpi_ids}
    return scores, evidence


@pytest.fixture()
def rubric_payload():
    return _rubric_payload


@pytest.fixture()
def complete_layer():
    return _complete_layer
