"""
Release Coordinator.

Moves assessments out of the release gate (``pending_release``) into
``released``, where the subject can acknowledge them.

release_all is best-effort per item: every eligible row is attempted in its
own transaction and a failure on one row is logged and counted as "not
released" instead of aborting the batch. Rows are processed on a bounded
ThreadPoolExecutor (RELEASE_MAX_WORKERS); each worker pushes its own app
context and therefore gets its own scoped session. With one worker the batch
runs inline on the caller's session.

Per-row serialisation comes from the Assessment version column, so a row
released concurrently by another caller fails its update and is not
double-counted.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from flask import current_app
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from appraisal.auth import Actor, ensure_admin
from appraisal.core.exceptions import AppraisalError, InvalidTransitionError, NotFoundError
from appraisal.models import db
from appraisal.models.assessment import STATUS_PENDING_RELEASE, STATUS_RELEASED, Assessment, AssessmentEvent
from appraisal.utils.helpers import commit_or_raise, utcnow

logger = logging.getLogger(__name__)


def _release_row(assessment_id: int, actor_id: str) -> dict:
    assessment = db.session.execute(
        select(Assessment).where(Assessment.id == assessment_id).with_for_update()
    ).scalar_one_or_none()
    if assessment is None:
        raise NotFoundError("Assessment", assessment_id)
    if assessment.status != STATUS_PENDING_RELEASE:
        raise InvalidTransitionError("release", assessment.status)

    from_step = assessment.current_step_index
    assessment.status = STATUS_RELEASED
    assessment.released_at = utcnow()
    assessment.events.append(AssessmentEvent(
        action="release",
        from_status=STATUS_PENDING_RELEASE,
        to_status=STATUS_RELEASED,
        from_step=from_step,
        to_step=from_step,
        actor_id=actor_id,
    ))
    try:
        commit_or_raise("Assessment")
    except StaleDataError:
        raise InvalidTransitionError("release", STATUS_PENDING_RELEASE, reason="assessment was modified concurrently")

    logger.info(
        "Assessment released",
        extra={
            "assessment_id": assessment_id,
            "actor_id": actor_id,
            "action": "release",
            "from_status": STATUS_PENDING_RELEASE,
            "to_status": STATUS_RELEASED,
        },
    )
    return assessment.to_dict()


def release(assessment_id: int, actor: Actor) -> dict:
    """pending_release → released for one assessment. Administrator only."""
    ensure_admin(actor)
    try:
        return _release_row(assessment_id, actor.id)
    except Exception:
        db.session.rollback()
        raise


def _attempt(assessment_id: int, actor_id: str) -> bool:
    try:
        _release_row(assessment_id, actor_id)
        return True
    except AppraisalError as exc:
        db.session.rollback()
        logger.warning(
            "Release skipped: %s", exc,
            extra={"assessment_id": assessment_id, "actor_id": actor_id, "action": "release"},
        )
    except Exception:
        db.session.rollback()
        logger.exception(
            "Release failed",
            extra={"assessment_id": assessment_id, "actor_id": actor_id, "action": "release"},
        )
    return False


def _attempt_in_context(app, assessment_id: int, actor_id: str) -> bool:
    with app.app_context():
        try:
            return _attempt(assessment_id, actor_id)
        finally:
            db.session.remove()


def release_all(actor: Actor) -> dict:
    """Release every assessment parked at pending_release.

    Returns:
        {"released_count": n}: rows this call actually moved. Rows already
        released, or released concurrently by someone else, are not counted.
    """
    ensure_admin(actor)
    ids = list(db.session.execute(
        select(Assessment.id).where(Assessment.status == STATUS_PENDING_RELEASE).order_by(Assessment.id)
    ).scalars().all())
    # End the read transaction before the per-row transactions begin.
    db.session.commit()

    workers = max(1, int(current_app.config.get("RELEASE_MAX_WORKERS", 1)))
    if workers == 1 or len(ids) <= 1:
        results = [_attempt(i, actor.id) for i in ids]
    else:
        app = current_app._get_current_object()
        with ThreadPoolExecutor(max_workers=min(workers, len(ids)), thread_name_prefix="release") as pool:
            results = list(pool.map(lambda i: _attempt_in_context(app, i, actor.id), ids))

    released = sum(1 for ok in results if ok)
    logger.info(
        "Release-all finished: %d of %d released", released, len(ids),
        extra={"actor_id": actor.id, "action": "release_all", "released_count": released},
    )
    return {"released_count": released}
