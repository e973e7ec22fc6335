"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in appraisal/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from appraisal.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

RELEASE_LIMIT = "10/minute"
WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def actor_or_remote_addr():
    """Rate limit key: the authenticated actor if known, else remote IP."""
    actor = getattr(g, "actor", None)
    if actor is not None:
        return f"actor:{actor.id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per actor, falling back to remote IP):
        - Release endpoints:        10/minute  (batch writes across many rows)
        - Assessment / config:      60/minute
        - Rubric catalog:           200/minute
        - Health check:             exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("release")
    if bp:
        limiter.limit(RELEASE_LIMIT, key_func=actor_or_remote_addr)(bp)

    for bp_name in ("assessment", "workflow_config"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT, key_func=actor_or_remote_addr)(bp)

    bp = app.blueprints.get("rubric")
    if bp:
        limiter.limit(READ_LIMIT, key_func=actor_or_remote_addr)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — release: %s, write: %s, read: %s",
        RELEASE_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
