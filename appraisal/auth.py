"""
Staff Appraisal Engine
Actor context & role checks.

The identity provider authenticates the user and issues a bearer token;
``appraisal.middleware.jwt_auth`` verifies it and stores an ``Actor`` on
``g.actor``. Nothing else on the request (headers, body fields) is trusted
as a role claim.

Provides:
    - Actor: the authenticated ``{id, roles, department_id}`` triple
    - current_actor(): the request's actor, or AuthenticationRequired
    - require_actor / require_admin: route decorators
"""

import functools
import logging
from dataclasses import dataclass, field

from flask import g

from appraisal.core.exceptions import AuthenticationRequired, UnauthorizedError

logger = logging.getLogger(__name__)

# ── Roles ────────────────────────────────────────────────────────────────────

ROLE_STAFF = "staff"
ROLE_SUPERVISOR = "supervisor"
ROLE_MANAGER = "manager"
ROLE_DIRECTOR = "director"
ROLE_ADMIN = "admin"

ROLES = frozenset({ROLE_STAFF, ROLE_SUPERVISOR, ROLE_MANAGER, ROLE_DIRECTOR, ROLE_ADMIN})

# Most senior first. Used to pick which of a subject's roles their own
# appraisal is filed under when several have a workflow configured.
ROLE_SENIORITY = (ROLE_DIRECTOR, ROLE_MANAGER, ROLE_SUPERVISOR, ROLE_STAFF, ROLE_ADMIN)


@dataclass(frozen=True)
class Actor:
    """An authenticated caller."""

    id: str
    roles: frozenset = field(default_factory=frozenset)
    department_id: int | None = None

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.roles

    @classmethod
    def from_claims(cls, claims: dict) -> "Actor":
        roles = frozenset(r for r in (claims.get("roles") or []) if r in ROLES)
        department_id = claims.get("department_id")
        return cls(
            id=str(claims["sub"]),
            roles=roles,
            department_id=int(department_id) if department_id is not None else None,
        )


def current_actor() -> Actor:
    """Return the authenticated actor for this request."""
    actor = getattr(g, "actor", None)
    if actor is None:
        raise AuthenticationRequired()
    return actor


def ensure_admin(actor: Actor) -> None:
    if not actor.is_admin:
        logger.info("Admin action refused", extra={"actor_id": actor.id})
        raise UnauthorizedError("Administrator role required", required_role=ROLE_ADMIN)


def require_actor(f):
    """Decorator: reject the request with 401 when no actor is present."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        current_actor()
        return f(*args, **kwargs)

    return decorated


def require_admin(f):
    """Decorator: require an authenticated actor holding the admin role."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        ensure_admin(current_actor())
        return f(*args, **kwargs)

    return decorated
