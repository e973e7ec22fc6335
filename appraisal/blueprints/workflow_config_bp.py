"""
Workflow configuration blueprint.

Endpoint groups:
  Departments         GET/POST        /api/v1/departments
                      PUT/DELETE      /api/v1/departments/<id>
  Department roles    GET/POST        /api/v1/department-roles
                      GET/PUT/DELETE  /api/v1/department-roles/<id>
  Workflow            GET/POST/DELETE /api/v1/department-roles/<id>/workflow
                      POST            /api/v1/department-roles/<id>/workflow/preset
  Workflow steps      PUT/DELETE      /api/v1/workflow-steps/<id>

Reads require an authenticated actor; writes require the admin role, which
workflow_config_service enforces. Service layer owns all business logic and
commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import appraisal.services.workflow_config_service as wcs
from appraisal.auth import current_actor, require_actor
from appraisal.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

workflow_config_bp = Blueprint("workflow_config", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_config_bp)


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ═════════════════════════════════════════════════════════════════════════
# Departments
# ═════════════════════════════════════════════════════════════════════════


@workflow_config_bp.route("/departments", methods=["GET"])
@require_actor
def list_departments():
    return jsonify(wcs.list_departments()), 200


@workflow_config_bp.route("/departments", methods=["POST"])
def create_department():
    return jsonify(wcs.create_department(current_actor(), _body())), 201


@workflow_config_bp.route("/departments/<int:dept_id>", methods=["PUT"])
def update_department(dept_id: int):
    return jsonify(wcs.update_department(current_actor(), dept_id, _body())), 200


@workflow_config_bp.route("/departments/<int:dept_id>", methods=["DELETE"])
def delete_department(dept_id: int):
    wcs.delete_department(current_actor(), dept_id)
    return jsonify({"deleted": True, "id": dept_id}), 200


# ═════════════════════════════════════════════════════════════════════════
# Department roles
# ═════════════════════════════════════════════════════════════════════════


@workflow_config_bp.route("/department-roles", methods=["GET"])
@require_actor
def list_department_roles():
    department_id = request.args.get("department_id", type=int)
    return jsonify(wcs.list_department_roles(department_id)), 200


@workflow_config_bp.route("/department-roles", methods=["POST"])
def create_department_role():
    """Create a (department, role) pair. The workflow starts empty.

    Body: { "department_id": <int|null>, "role": "staff", "name": "...",
            "default_template_id": <int|null> }
    """
    return jsonify(wcs.create_department_role(current_actor(), _body())), 201


@workflow_config_bp.route("/department-roles/<int:role_id>", methods=["GET"])
@require_actor
def get_department_role(role_id: int):
    return jsonify(wcs.get_department_role(role_id)), 200


@workflow_config_bp.route("/department-roles/<int:role_id>", methods=["PUT"])
def update_department_role(role_id: int):
    return jsonify(wcs.update_department_role(current_actor(), role_id, _body())), 200


@workflow_config_bp.route("/department-roles/<int:role_id>", methods=["DELETE"])
def delete_department_role(role_id: int):
    wcs.delete_department_role(current_actor(), role_id)
    return jsonify({"deleted": True, "id": role_id}), 200


# ═════════════════════════════════════════════════════════════════════════
# Workflow steps
# ═════════════════════════════════════════════════════════════════════════


@workflow_config_bp.route("/department-roles/<int:role_id>/workflow", methods=["GET"])
@require_actor
def get_workflow(role_id: int):
    """Ordered steps of the department role's workflow."""
    return jsonify(wcs.get_workflow(role_id)), 200


@workflow_config_bp.route("/department-roles/<int:role_id>/workflow", methods=["POST"])
def create_workflow_step(role_id: int):
    """Append a step, or insert it when ``step_order`` is given.

    Body: { "approver_role": "manager", "step_type": "review", "step_order": <int optional> }
    """
    return jsonify(wcs.create_step(current_actor(), role_id, _body())), 201


@workflow_config_bp.route("/department-roles/<int:role_id>/workflow", methods=["DELETE"])
def clear_workflow(role_id: int):
    """Remove every step, e.g. before applying a different preset."""
    deleted = wcs.delete_all_steps(current_actor(), role_id)
    return jsonify({"deleted": deleted, "department_role_id": role_id}), 200


@workflow_config_bp.route("/department-roles/<int:role_id>/workflow/preset", methods=["POST"])
def apply_workflow_preset(role_id: int):
    """Body: { "preset": "staff_flow" | "manager_flow" }"""
    preset = _body().get("preset")
    return jsonify(wcs.apply_preset(current_actor(), role_id, preset)), 201


@workflow_config_bp.route("/workflow-steps/<int:step_id>", methods=["PUT"])
def update_workflow_step(step_id: int):
    return jsonify(wcs.update_step(current_actor(), step_id, _body())), 200


@workflow_config_bp.route("/workflow-steps/<int:step_id>", methods=["DELETE"])
def delete_workflow_step(step_id: int):
    wcs.delete_step(current_actor(), step_id)
    return jsonify({"deleted": True, "id": step_id}), 200
