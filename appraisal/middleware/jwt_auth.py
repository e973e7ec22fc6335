"""
JWT Auth Middleware — parses the bearer token from the Authorization header
and sets ``g.actor``.

Requests without a valid token carry no actor; protected routes then fail
with 401 via ``appraisal.auth.current_actor``. An invalid or expired token
is logged and treated the same as no token.
"""

import logging

import jwt as pyjwt
from flask import g, request

from appraisal.auth import Actor
from appraisal.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.actor = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
            g.actor = Actor.from_claims(payload)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired access token on %s", path)
        except (pyjwt.InvalidTokenError, KeyError, ValueError, TypeError) as exc:
            logger.warning("Rejected access token on %s: %s", path, exc)
