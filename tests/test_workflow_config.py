"""
Tests: Workflow configuration store — department tree validation, department
roles, ordered step editing, presets and workflow resolution.
"""

import pytest
from sqlalchemy import text

from appraisal.auth import Actor
from appraisal.core.exceptions import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from appraisal.models import db
from appraisal.models.organization import WorkflowStep
from appraisal.services import workflow_config_service as wcs


def _orders(role_id):
    return [(s["step_order"], s["approver_role"], s["step_type"]) for s in wcs.get_workflow(role_id)]


@pytest.fixture()
def staff_role(admin, department):
    return wcs.create_department_role(admin, {"department_id": department["id"], "role": "staff"})


# ═════════════════════════════════════════════════════════════════════════════
# Departments
# ═════════════════════════════════════════════════════════════════════════════


class TestDepartments:
    def test_three_level_tree(self, admin, department):
        sub = wcs.create_department(admin, {
            "name": "Platform", "hierarchy_level": "subdepartment", "parent_id": department["id"],
        })
        assert sub["parent_name"] == "Engineering"
        assert department["parent_name"] == "Head Office"

    def test_schema_reset_with_populated_tree(self, admin, department, staff_workflow, reset_schema):
        wcs.create_department(admin, {
            "name": "Platform", "hierarchy_level": "subdepartment", "parent_id": department["id"],
        })

        reset_schema()

        assert wcs.list_departments() == []
        assert db.session.execute(text("PRAGMA foreign_keys")).scalar() == 1
        root = wcs.create_department(admin, {"name": "Head Office", "hierarchy_level": "root"})
        assert root["parent_id"] is None

    def test_level_mismatch_rejected(self, admin, department):
        with pytest.raises(ValidationError):
            wcs.create_department(admin, {
                "name": "Bad", "hierarchy_level": "department", "parent_id": department["id"],
            })

    def test_root_cannot_have_parent(self, admin, department):
        with pytest.raises(ValidationError):
            wcs.create_department(admin, {"name": "R2", "hierarchy_level": "root", "parent_id": department["id"]})

    def test_self_parent_rejected(self, admin, department):
        with pytest.raises(ValidationError) as exc:
            wcs.update_department(admin, department["id"], {"parent_id": department["id"]})
        assert "own parent" in str(exc.value)

    def test_failed_update_leaves_row_untouched(self, admin, department):
        with pytest.raises(ValidationError):
            wcs.update_department(admin, department["id"], {"name": "Renamed", "parent_id": department["id"]})
        db.session.rollback()
        assert [d["name"] for d in wcs.list_departments()] == ["Engineering", "Head Office"]

    def test_delete_with_children_refused(self, admin, department):
        with pytest.raises(ConflictError):
            wcs.delete_department(admin, department["parent_id"])

    def test_delete_with_roles_refused(self, admin, department, staff_role):
        with pytest.raises(ConflictError):
            wcs.delete_department(admin, department["id"])

    def test_writes_require_admin(self, staff):
        with pytest.raises(UnauthorizedError):
            wcs.create_department(staff, {"name": "X", "hierarchy_level": "root"})


# ═════════════════════════════════════════════════════════════════════════════
# Department roles
# ═════════════════════════════════════════════════════════════════════════════


class TestDepartmentRoles:
    def test_create_starts_with_empty_workflow(self, staff_role):
        assert staff_role["steps"] == []
        assert wcs.get_workflow(staff_role["id"]) == []

    def test_duplicate_pair_conflicts(self, admin, department, staff_role):
        with pytest.raises(ConflictError):
            wcs.create_department_role(admin, {"department_id": department["id"], "role": "staff"})

    def test_duplicate_global_role_conflicts(self, admin):
        wcs.create_department_role(admin, {"department_id": None, "role": "manager"})
        with pytest.raises(ConflictError):
            wcs.create_department_role(admin, {"department_id": "none", "role": "manager"})

    def test_unknown_role_rejected(self, admin, department):
        with pytest.raises(ValidationError):
            wcs.create_department_role(admin, {"department_id": department["id"], "role": "intern"})

    def test_update_default_template(self, admin, staff_role, rubric):
        updated = wcs.update_department_role(admin, staff_role["id"], {"default_template_id": rubric["id"]})
        assert updated["template_name"] == "Engineering Rubric"
        with pytest.raises(NotFoundError):
            wcs.update_department_role(admin, staff_role["id"], {"default_template_id": 9999})

    def test_delete_cascades_steps(self, admin, staff_role):
        wcs.apply_preset(admin, staff_role["id"], "staff_flow")
        wcs.delete_department_role(admin, staff_role["id"])
        assert db.session.query(WorkflowStep).count() == 0

    def test_non_admin_cannot_create(self, manager, department):
        with pytest.raises(UnauthorizedError):
            wcs.create_department_role(manager, {"department_id": department["id"], "role": "staff"})


# ═════════════════════════════════════════════════════════════════════════════
# Steps
# ═════════════════════════════════════════════════════════════════════════════


class TestWorkflowSteps:
    def test_append_assigns_next_order(self, admin, staff_role):
        wcs.create_step(admin, staff_role["id"], {"approver_role": "manager", "step_type": "review"})
        wcs.create_step(admin, staff_role["id"], {"approver_role": "director", "step_type": "approval"})
        assert _orders(staff_role["id"]) == [(1, "manager", "review"), (2, "director", "approval")]

    def test_insert_shifts_later_steps(self, admin, staff_role):
        wcs.apply_preset(admin, staff_role["id"], "staff_flow")
        wcs.create_step(admin, staff_role["id"], {
            "approver_role": "supervisor", "step_type": "review", "step_order": 1,
        })
        assert _orders(staff_role["id"]) == [
            (1, "supervisor", "review"),
            (2, "manager", "review"),
            (3, "director", "approval"),
            (4, "staff", "acknowledge"),
        ]

    def test_delete_renumbers_contiguously(self, admin, staff_role):
        steps = wcs.apply_preset(admin, staff_role["id"], "staff_flow")
        wcs.delete_step(admin, steps[1]["id"])
        assert _orders(staff_role["id"]) == [(1, "manager", "review"), (2, "staff", "acknowledge")]

    def test_move_step(self, admin, staff_role):
        steps = wcs.apply_preset(admin, staff_role["id"], "staff_flow")
        wcs.update_step(admin, steps[0]["id"], {"step_order": 2, "step_type": "review_and_approval"})
        assert _orders(staff_role["id"]) == [
            (1, "director", "approval"),
            (2, "manager", "review_and_approval"),
            (3, "staff", "acknowledge"),
        ]

    def test_out_of_range_order_rejected(self, admin, staff_role):
        with pytest.raises(ValidationError):
            wcs.create_step(admin, staff_role["id"], {
                "approver_role": "manager", "step_type": "review", "step_order": 5,
            })

    def test_invalid_step_type_rejected(self, admin, staff_role):
        with pytest.raises(ValidationError):
            wcs.create_step(admin, staff_role["id"], {"approver_role": "manager", "step_type": "admin_review"})


class TestPresets:
    def test_staff_flow(self, admin, staff_role):
        wcs.apply_preset(admin, staff_role["id"], "staff_flow")
        assert _orders(staff_role["id"]) == [
            (1, "manager", "review"),
            (2, "director", "approval"),
            (3, "staff", "acknowledge"),
        ]

    def test_manager_flow(self, admin, department):
        role = wcs.create_department_role(admin, {"department_id": department["id"], "role": "manager"})
        wcs.apply_preset(admin, role["id"], "manager_flow")
        assert _orders(role["id"]) == [(1, "director", "review_and_approval"), (2, "manager", "acknowledge")]

    def test_preset_requires_empty_workflow(self, admin, staff_role):
        wcs.apply_preset(admin, staff_role["id"], "staff_flow")
        with pytest.raises(ConflictError):
            wcs.apply_preset(admin, staff_role["id"], "manager_flow")

    def test_unknown_preset(self, admin, staff_role):
        with pytest.raises(ValidationError):
            wcs.apply_preset(admin, staff_role["id"], "executive_flow")

    def test_clear_then_reapply(self, admin, staff_role):
        wcs.apply_preset(admin, staff_role["id"], "staff_flow")
        assert wcs.delete_all_steps(admin, staff_role["id"]) == 3
        wcs.apply_preset(admin, staff_role["id"], "manager_flow")
        assert [s[0] for s in _orders(staff_role["id"])] == [1, 2]


class TestResolution:
    def test_department_role_preferred_over_global(self, admin, department, staff_role):
        wcs.create_department_role(admin, {"department_id": None, "role": "staff"})
        resolved = wcs.resolve_department_role(department["id"], {"staff"})
        assert resolved.id == staff_role["id"]

    def test_falls_back_to_global(self, admin, department):
        global_role = wcs.create_department_role(admin, {"department_id": None, "role": "staff"})
        resolved = wcs.resolve_department_role(department["parent_id"], {"staff"})
        assert resolved.id == global_role["id"]

    def test_most_senior_role_wins(self, admin, department, staff_role):
        mgr_role = wcs.create_department_role(admin, {"department_id": department["id"], "role": "manager"})
        resolved = wcs.resolve_department_role(department["id"], {"staff", "manager"})
        assert resolved.id == mgr_role["id"]

    def test_none_when_unconfigured(self, department):
        assert wcs.resolve_department_role(department["id"], {"director"}) is None


# ── API ───────────────────────────────────────────────────────────────────────


def test_api_workflow_round_trip(client, admin, staff, department, auth_headers):
    res = client.post(
        "/api/v1/department-roles",
        json={"department_id": department["id"], "role": "staff", "name": "Engineers"},
        headers=auth_headers(admin),
    )
    assert res.status_code == 201
    role_id = res.get_json()["id"]

    res = client.post(
        f"/api/v1/department-roles/{role_id}/workflow/preset",
        json={"preset": "staff_flow"},
        headers=auth_headers(admin),
    )
    assert res.status_code == 201
    assert [s["step_order"] for s in res.get_json()] == [1, 2, 3]

    res = client.get(f"/api/v1/department-roles/{role_id}/workflow", headers=auth_headers(staff))
    assert res.status_code == 200
    assert res.get_json()[0]["approver_role"] == "manager"

    res = client.post(
        f"/api/v1/department-roles/{role_id}/workflow",
        json={"approver_role": "manager", "step_type": "review"},
        headers=auth_headers(staff),
    )
    assert res.status_code == 403
    assert res.get_json()["details"]["required_role"] == "admin"


def test_api_unknown_department_role_is_404(client, admin, auth_headers):
    res = client.get("/api/v1/department-roles/424242", headers=auth_headers(admin))
    assert res.status_code == 404
    assert res.get_json()["code"] == "NOT_FOUND"
