"""
Rubric catalog blueprint.

    GET    /api/v1/rubrics              — list templates (?department_id= includes global ones)
    POST   /api/v1/rubrics              — create a template with its whole tree (admin)
    GET    /api/v1/rubrics/<id>         — template with domains / standards / KPIs
    DELETE /api/v1/rubrics/<id>         — delete (admin, refused while in use)
"""

import logging

from flask import Blueprint, jsonify, request

from appraisal.auth import current_actor, require_actor, require_admin
from appraisal.services import rubric_service
from appraisal.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

rubric_bp = Blueprint("rubric", __name__, url_prefix="/api/v1")
register_error_handlers(rubric_bp)


@rubric_bp.route("/rubrics", methods=["GET"])
@require_actor
def list_rubrics():
    department_id = request.args.get("department_id", type=int)
    return jsonify(rubric_service.list_templates(department_id)), 200


@rubric_bp.route("/rubrics", methods=["POST"])
@require_admin
def create_rubric():
    data = request.get_json(silent=True) or {}
    template = rubric_service.create_template(data, created_by=current_actor().id)
    return jsonify(template), 201


@rubric_bp.route("/rubrics/<int:template_id>", methods=["GET"])
@require_actor
def get_rubric(template_id):
    return jsonify(rubric_service.get_template(template_id)), 200


@rubric_bp.route("/rubrics/<int:template_id>", methods=["DELETE"])
@require_admin
def delete_rubric(template_id):
    rubric_service.delete_template(template_id)
    return jsonify({"deleted": True, "id": template_id}), 200
