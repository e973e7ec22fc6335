"""
Staff Appraisal Engine
Flask Application Factory.

Usage:
    from appraisal import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from appraisal.config import config
from appraisal.middleware.jwt_auth import init_jwt_middleware
from appraisal.middleware.logging_config import configure_logging
from appraisal.middleware.rate_limiter import init_rate_limits
from appraisal.middleware.timing import init_request_timing
from appraisal.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit — apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Actor context & request timing ───────────────────────────────────
    init_jwt_middleware(app)
    init_request_timing(app)

    # ── Models & tables ──────────────────────────────────────────────────
    from appraisal.models import assessment as _assessment_models      # noqa: F401
    from appraisal.models import organization as _organization_models  # noqa: F401
    from appraisal.models import rubric as _rubric_models              # noqa: F401

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") \
            and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)

    # ── Auto-create tables (CREATE IF NOT EXISTS; Alembic owns changes) ──
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from appraisal.blueprints.assessment_bp import assessment_bp
    from appraisal.blueprints.health_bp import health_bp
    from appraisal.blueprints.release_bp import release_bp
    from appraisal.blueprints.rubric_bp import rubric_bp
    from appraisal.blueprints.workflow_config_bp import workflow_config_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(workflow_config_bp)
    app.register_blueprint(rubric_bp)
    app.register_blueprint(assessment_bp)
    app.register_blueprint(release_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("release-all")
    @click.option("--operator", default="cli", help="Actor id recorded on the release events.")
    def release_all_cmd(operator):
        """Release every assessment parked at pending_release."""
        from appraisal.auth import ROLE_ADMIN, Actor
        from appraisal.services.release_service import release_all

        result = release_all(Actor(id=operator, roles=frozenset({ROLE_ADMIN})))
        click.echo(f"Released {result['released_count']} assessment(s).")

    @app.cli.command("issue-token")
    @click.argument("subject")
    @click.option("--role", "roles", multiple=True, required=True, help="Role claim; repeatable.")
    @click.option("--department-id", type=int, default=None)
    def issue_token_cmd(subject, roles, department_id):
        """Mint an access token for local testing without the identity provider."""
        from appraisal.services.jwt_service import generate_access_token

        click.echo(generate_access_token(subject, list(roles), department_id))

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
