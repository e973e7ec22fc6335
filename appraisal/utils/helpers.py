"""Shared persistence helpers used by the service layer.

get_or_raise:      PK lookup raising NotFoundError
commit_or_raise:   commit, translating driver errors into the engine taxonomy
utcnow:            timezone-aware now()
"""
import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from appraisal.core.exceptions import ConflictError, NotFoundError, StoreUnavailableError
from appraisal.models import db

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    label = label or model.__name__
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None:
        raise NotFoundError(label, pk)
    return obj


def commit_or_raise(resource: str = "Record"):
    """Commit the current session; roll back and re-raise as an engine error.

    IntegrityError   → ConflictError (duplicate / constraint violation)
    OperationalError → StoreUnavailableError (connection / lock issues)
    StaleDataError   → propagated unchanged; callers that hold a versioned
                       row translate it into their own transition error.

    Usage::

        db.session.add(obj)
        commit_or_raise("DepartmentRole")
    """
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit (%s): %s", resource, exc.orig)
        raise ConflictError(resource, message=f"{resource} violates a uniqueness or reference constraint") from exc
    except OperationalError as exc:
        db.session.rollback()
        logger.exception("Database operational error on commit (%s)", resource)
        raise StoreUnavailableError() from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Unexpected database error on commit (%s)", resource)
        raise StoreUnavailableError() from exc
