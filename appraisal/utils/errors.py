"""Standardised API error responses.

Usage
-----
    from appraisal.utils.errors import api_error, register_error_handlers

    register_error_handlers(assessment_bp)
    return api_error("VALIDATION_ERROR", "period is required")

Every ``AppraisalError`` raised by a service is rendered as::

    {"error": "<message>", "code": "<CODE>", "details": {...}}

with the exception's ``http_status``.
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from appraisal.core.exceptions import AppraisalError

logger = logging.getLogger(__name__)


def api_error(
    code: str,
    message: str,
    *,
    status: int = 400,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (e.g. ``VALIDATION_ERROR``).
    message : str
        Human-readable explanation for developers / UI.
    status : int
        HTTP status.
    details : dict, optional
        Extra structured payload (KPI ids, step order, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """
    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), status


def register_error_handlers(bp) -> None:
    """Attach the engine's exception → JSON handlers to a blueprint."""

    @bp.errorhandler(AppraisalError)
    def _handle_appraisal_error(error: AppraisalError):
        if error.http_status >= 500:
            logger.error("%s on %s: %s", error.code, request.endpoint, error)
        return jsonify(error.to_dict()), error.http_status

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in endpoint=%s", request.endpoint)
        return api_error("INTERNAL", "Internal server error", status=500)
