"""
Release blueprint (administrator only).

    POST /api/v1/admin/assessments/<id>/release   pending_release → released
    POST /api/v1/admin/assessments/release-all    → { "released_count": n }
"""

import logging

from flask import Blueprint, jsonify

from appraisal.auth import current_actor
from appraisal.services import release_service
from appraisal.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

release_bp = Blueprint("release", __name__, url_prefix="/api/v1/admin")
register_error_handlers(release_bp)


@release_bp.route("/assessments/<int:assessment_id>/release", methods=["POST"])
def release_assessment(assessment_id):
    return jsonify(release_service.release(assessment_id, current_actor())), 200


@release_bp.route("/assessments/release-all", methods=["POST"])
def release_all():
    return jsonify(release_service.release_all(current_actor())), 200
