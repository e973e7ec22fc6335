"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        — service name and version
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — store connectivity and workflow table counts
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from appraisal.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def health():
    return jsonify({"status": "ok", "service": "staff-appraisal-engine"}), 200


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Workflow tables ──────────────────────────────────────────────
    if overall:
        counts = {}
        for tbl in ("department_roles", "workflow_steps", "rubric_templates", "assessments"):
            try:
                counts[tbl] = db.session.execute(db.text(f"SELECT COUNT(*) FROM {tbl}")).scalar()
            except Exception as exc:
                db.session.rollback()
                counts[tbl] = None
                overall = False
                logger.error("Health check — table %s not queryable: %s", tbl, exc)
        checks["tables"] = counts

    # ── Limiter storage ──────────────────────────────────────────────
    storage = current_app.config.get("REDIS_URL") or "memory://"
    checks["rate_limit_storage"] = {"backend": storage.split("://", 1)[0]}

    checks["app"] = {
        "name": "Staff Appraisal Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
