"""
Assessment blueprint — the workflow state machine over HTTP.

Endpoints:
    GET    /api/v1/assessments                   ?subject_id=&period=&status=
    POST   /api/v1/assessments                   { "period", "template_id"?, "subject_id"? }
    GET    /api/v1/assessments/pending           assessments awaiting the caller
    GET    /api/v1/assessments/<id>
    DELETE /api/v1/assessments/<id>              admin only
    PUT    /api/v1/assessments/<id>/scores       { "scores", "evidence", "expected_version"? }
    GET    /api/v1/assessments/<id>/scoring      per-layer domain scores, overall, tier
    GET    /api/v1/assessments/<id>/history      event trail
    POST   /api/v1/assessments/<id>/submit       { "expected_version"? }
    POST   /api/v1/assessments/<id>/advance      { "scores"?, "evidence"?, "comment"?, "expected_version"? }
    POST   /api/v1/assessments/<id>/reject       { "reason", "expected_version"? }
    POST   /api/v1/assessments/<id>/acknowledge  { "note"? }

Layer contract:
    - Blueprint: parse the body, resolve the actor, call the service.
    - NO db.session calls here — all writes owned by assessment_workflow.
    - NO role checks here — the service re-verifies the actor on every call.
"""

import logging

from flask import Blueprint, jsonify, request

from appraisal.auth import current_actor
from appraisal.services import assessment_workflow as workflow
from appraisal.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

assessment_bp = Blueprint("assessment", __name__, url_prefix="/api/v1")
register_error_handlers(assessment_bp)


def _body() -> dict:
    return request.get_json(silent=True) or {}


@assessment_bp.route("/assessments", methods=["GET"])
def list_assessments():
    return jsonify(workflow.list_assessments(
        current_actor(),
        subject_id=request.args.get("subject_id"),
        period=request.args.get("period"),
        status=request.args.get("status"),
    )), 200


@assessment_bp.route("/assessments", methods=["POST"])
def create_assessment():
    data = _body()
    result = workflow.create_assessment(
        current_actor(),
        period=data.get("period"),
        template_id=data.get("template_id"),
        subject_id=data.get("subject_id"),
    )
    return jsonify(result), 201


@assessment_bp.route("/assessments/pending", methods=["GET"])
def list_pending():
    return jsonify(workflow.list_pending_for(current_actor())), 200


@assessment_bp.route("/assessments/<int:assessment_id>", methods=["GET"])
def get_assessment(assessment_id):
    return jsonify(workflow.get_assessment(assessment_id, current_actor())), 200


@assessment_bp.route("/assessments/<int:assessment_id>", methods=["DELETE"])
def delete_assessment(assessment_id):
    workflow.delete_assessment(current_actor(), assessment_id)
    return jsonify({"deleted": True, "id": assessment_id}), 200


@assessment_bp.route("/assessments/<int:assessment_id>/scores", methods=["PUT"])
def save_scores(assessment_id):
    data = _body()
    result = workflow.save_layer(
        assessment_id,
        current_actor(),
        scores=data.get("scores"),
        evidence=data.get("evidence"),
        expected_version=data.get("expected_version"),
    )
    return jsonify(result), 200


@assessment_bp.route("/assessments/<int:assessment_id>/scoring", methods=["GET"])
def get_scoring(assessment_id):
    return jsonify(workflow.get_scoring(assessment_id, current_actor())), 200


@assessment_bp.route("/assessments/<int:assessment_id>/history", methods=["GET"])
def get_history(assessment_id):
    return jsonify(workflow.get_history(assessment_id, current_actor())), 200


# ── Transitions ────────────────────────────────────────────────────────────────


@assessment_bp.route("/assessments/<int:assessment_id>/submit", methods=["POST"])
def submit(assessment_id):
    data = _body()
    result = workflow.submit(assessment_id, current_actor(), expected_version=data.get("expected_version"))
    return jsonify(result), 200


@assessment_bp.route("/assessments/<int:assessment_id>/advance", methods=["POST"])
def advance(assessment_id):
    data = _body()
    result = workflow.advance(
        assessment_id,
        current_actor(),
        scores=data.get("scores"),
        evidence=data.get("evidence"),
        comment=data.get("comment"),
        expected_version=data.get("expected_version"),
    )
    return jsonify(result), 200


@assessment_bp.route("/assessments/<int:assessment_id>/reject", methods=["POST"])
def reject(assessment_id):
    data = _body()
    result = workflow.reject(
        assessment_id,
        current_actor(),
        reason=data.get("reason"),
        expected_version=data.get("expected_version"),
    )
    return jsonify(result), 200


@assessment_bp.route("/assessments/<int:assessment_id>/acknowledge", methods=["POST"])
def acknowledge(assessment_id):
    data = _body()
    return jsonify(workflow.acknowledge(assessment_id, current_actor(), note=data.get("note"))), 200
