"""
Assessment Workflow State Machine.

Drives an Assessment through the ordered WorkflowSteps of the DepartmentRole
resolved at submission:

    draft ──submit──▶ self_submitted ──advance──▶ step_1_reviewed ─ … ─▶ pending_release
      ▲                    │                                                  │ release
      └──── returned ◀─reject (approval / review_and_approval steps)          ▼
                                                         acknowledged ◀─ released

Rules:
  - Every operation receives the authenticated Actor and re-verifies it; no
    role claim is read from the request body.
  - Steps are fetched fresh from the store on every call, so an administrator
    editing a workflow mid-flight is seen by the next transition.
  - A failed operation is rolled back, so a rejected advance leaves the
    status and step index exactly as they were.
  - The row is loaded FOR UPDATE and written under the ``version`` column;
    a concurrent transition surfaces as INVALID_TRANSITION.
  - db.session.commit() for assessments happens only in this file and in
    release_service.
"""

from __future__ import annotations

import functools
import logging

from sqlalchemy import and_, or_, select
from sqlalchemy.orm.exc import StaleDataError

from appraisal.auth import Actor, ensure_admin
from appraisal.core.exceptions import (
    ConflictError,
    IncompleteEvidenceError,
    InvalidTransitionError,
    NoWorkflowConfiguredError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from appraisal.models import db
from appraisal.models.assessment import (
    EDITABLE_STATUSES,
    EXCLUDED,
    EXCLUDED_ALIASES,
    SELF_LAYER,
    STATUS_ACKNOWLEDGED,
    STATUS_DRAFT,
    STATUS_PENDING_RELEASE,
    STATUS_RELEASED,
    STATUS_RETURNED,
    STATUS_SELF_SUBMITTED,
    Assessment,
    AssessmentEvent,
    is_in_review,
    reviewed_status,
)
from appraisal.models.organization import WorkflowStep
from appraisal.models.rubric import RubricTemplate
from appraisal.services import rubric_service, scoring
from appraisal.services.workflow_config_service import load_steps, resolve_department_role
from appraisal.utils.helpers import commit_or_raise, get_or_raise, utcnow

logger = logging.getLogger(__name__)

ACKNOWLEDGE_STEP = "acknowledge"


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _rollback_on_error(func):
    """Discard pending changes when an operation raises."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception:
            db.session.rollback()
            raise

    return wrapper


def _load_for_update(assessment_id: int) -> Assessment:
    assessment = db.session.execute(
        select(Assessment).where(Assessment.id == assessment_id).with_for_update()
    ).scalar_one_or_none()
    if assessment is None:
        raise NotFoundError("Assessment", assessment_id)
    return assessment


def _check_version(assessment: Assessment, action: str, expected_version) -> None:
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError("expected_version must be an integer", {"expected_version": expected_version})
    if expected != assessment.version:
        raise InvalidTransitionError(
            action, assessment.status,
            reason=f"assessment was modified (version {assessment.version}, expected {expected})",
        )


def _commit_transition(assessment: Assessment, action: str, from_status: str) -> None:
    """Commit a transition; a lost version race becomes INVALID_TRANSITION."""
    assessment_id = assessment.id
    try:
        commit_or_raise("Assessment")
    except StaleDataError:
        logger.warning(
            "Concurrent modification on %s", action,
            extra={"assessment_id": assessment_id, "action": action},
        )
        raise InvalidTransitionError(action, from_status, reason="assessment was modified concurrently")


def _record(assessment: Assessment, action: str, actor: Actor, from_status: str | None,
            from_step: int | None, comment: str | None = None) -> None:
    assessment.events.append(AssessmentEvent(
        action=action,
        from_status=from_status,
        to_status=assessment.status,
        from_step=from_step,
        to_step=assessment.current_step_index,
        actor_id=actor.id,
        comment=comment,
    ))


def _log_transition(assessment: Assessment, action: str, actor: Actor, from_status: str) -> None:
    logger.info(
        "Assessment %s: %s → %s", action, from_status, assessment.status,
        extra={
            "assessment_id": assessment.id,
            "actor_id": actor.id,
            "action": action,
            "from_status": from_status,
            "to_status": assessment.status,
            "step_index": assessment.current_step_index,
        },
    )


def _steps_for(assessment: Assessment, action: str) -> list[WorkflowStep]:
    if assessment.department_role_id is None:
        raise InvalidTransitionError(action, assessment.status, reason="workflow is no longer configured")
    steps = load_steps(assessment.department_role_id)
    if not steps:
        raise InvalidTransitionError(action, assessment.status, reason="workflow has no steps")
    return steps


def _last_evaluative_order(steps: list[WorkflowStep]) -> int:
    """step_order of the last non-acknowledge step, or 0 when there is none."""
    orders = [s.step_order for s in steps if s.step_type != ACKNOWLEDGE_STEP]
    return max(orders) if orders else 0


def _current_step(assessment: Assessment, steps: list[WorkflowStep], action: str) -> WorkflowStep:
    index = assessment.current_step_index
    if not is_in_review(assessment.status) or index < 1 or index > len(steps):
        raise InvalidTransitionError(action, assessment.status, current_step=index)
    return steps[index - 1]


def _ensure_step_actor(assessment: Assessment, step: WorkflowStep, actor: Actor) -> None:
    if step.approver_role not in actor.roles:
        logger.info(
            "Step %s requires %s", step.step_order, step.approver_role,
            extra={"assessment_id": assessment.id, "actor_id": actor.id},
        )
        raise UnauthorizedError(
            f"Step {step.step_order} must be actioned by a {step.approver_role}",
            required_role=step.approver_role,
            step_order=step.step_order,
        )
    if step.step_type != ACKNOWLEDGE_STEP and actor.id == assessment.subject_id:
        raise UnauthorizedError("Subjects cannot review their own assessment", step_order=step.step_order)


def _reviewed_layer(steps: list[WorkflowStep], before_order: int) -> str:
    """Layer under review at ``before_order``: the last scoring step before it, else self."""
    for step in reversed(steps[: before_order - 1]):
        if step.writes_layer:
            return step.approver_role
    return SELF_LAYER


def _normalise_scores(raw, allowed: set[str]) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError("scores must be an object keyed by KPI id")
    out, errors = {}, {}
    for key, value in raw.items():
        kpi_id = str(key)
        if kpi_id not in allowed:
            errors[kpi_id] = "unknown KPI for this rubric"
            continue
        if value is None:
            out[kpi_id] = None
        elif isinstance(value, str) and value in EXCLUDED_ALIASES:
            out[kpi_id] = EXCLUDED
        elif scoring.is_numeric_score(value):
            out[kpi_id] = value
        else:
            errors[kpi_id] = "score must be 1, 2, 3, 4 or 'excluded'"
    if errors:
        raise ValidationError("Invalid scores", errors)
    return out


def _normalise_evidence(raw, allowed: set[str]) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError("evidence must be an object keyed by KPI id")
    out, errors = {}, {}
    for key, items in raw.items():
        kpi_id = str(key)
        if kpi_id not in allowed:
            errors[kpi_id] = "unknown KPI for this rubric"
            continue
        if items is None:
            out[kpi_id] = None
            continue
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            errors[kpi_id] = "evidence must be a list of {reference, title, notes} objects"
            continue
        out[kpi_id] = [
            {
                "reference": str(i.get("reference") or "").strip(),
                "title": str(i.get("title") or ""),
                "notes": str(i.get("notes") or ""),
            }
            for i in items
        ]
    if errors:
        raise ValidationError("Invalid evidence", errors)
    return out


def _merge_layer(assessment: Assessment, layer: str, scores: dict, evidence: dict) -> None:
    """Apply edits to one layer. A None value clears that KPI."""
    layer_scores = assessment.layer(layer)
    for kpi_id, value in scores.items():
        if value is None:
            layer_scores.pop(kpi_id, None)
        else:
            layer_scores[kpi_id] = value
    layer_evidence = assessment.layer_evidence(layer)
    for kpi_id, items in evidence.items():
        if items is None:
            layer_evidence.pop(kpi_id, None)
        else:
            layer_evidence[kpi_id] = items

    # JSON columns are replaced, not mutated in place, so the change is tracked.
    all_scores = dict(assessment.scores or {})
    all_scores[layer] = layer_scores
    assessment.scores = all_scores
    all_evidence = dict(assessment.evidence or {})
    all_evidence[layer] = layer_evidence
    assessment.evidence = all_evidence


def _recompute_layer_scores(assessment: Assessment, domains) -> None:
    assessment.layer_scores = {
        layer: scoring.overall_score(domains, values or {})
        for layer, values in (assessment.scores or {}).items()
    }


def _apply_edits(assessment: Assessment, layer: str, scores, evidence) -> list:
    domains = rubric_service.load_domains(assessment.template_id)
    allowed = {k for d in domains for k in d.kpi_ids}
    norm_scores = _normalise_scores(scores, allowed)
    norm_evidence = _normalise_evidence(evidence, allowed)
    if norm_scores or norm_evidence:
        _merge_layer(assessment, layer, norm_scores, norm_evidence)
    _recompute_layer_scores(assessment, domains)
    return domains


def _ensure_complete(assessment: Assessment, layer: str, domains) -> None:
    result = scoring.completion(domains, assessment.layer(layer), assessment.layer_evidence(layer))
    if not result.is_complete:
        raise IncompleteEvidenceError(layer, result.incomplete)


def _finalize(assessment: Assessment, layer: str, domains) -> None:
    final = scoring.overall_score(domains, assessment.layer(layer))
    tier = scoring.tier_of(final)
    assessment.final_score = final
    assessment.final_grade = tier.label if tier else None
    assessment.final_bonus_percent = tier.bonus_percent if tier else None


def _can_view(assessment: Assessment, actor: Actor) -> bool:
    """Subject, administrators, and reviewers whose step has been reached.

    Acknowledge steps grant no read access; a reviewer sees the assessment
    once the current step index is at or past their own step.
    """
    if actor.is_admin or actor.id == assessment.subject_id:
        return True
    if assessment.department_role_id is None:
        return False
    return any(
        s.approver_role in actor.roles
        and s.step_type != ACKNOWLEDGE_STEP
        and s.step_order <= assessment.current_step_index
        for s in load_steps(assessment.department_role_id)
    )


def _visible_to(actor: Actor):
    """SQL criterion matching the rows ``_can_view`` admits for a non-admin."""
    reviewable = (
        select(WorkflowStep.id)
        .where(
            WorkflowStep.department_role_id == Assessment.department_role_id,
            WorkflowStep.approver_role.in_(actor.roles),
            WorkflowStep.step_type != ACKNOWLEDGE_STEP,
            WorkflowStep.step_order <= Assessment.current_step_index,
        )
        .exists()
    )
    return or_(Assessment.subject_id == actor.id, reviewable)


# ═════════════════════════════════════════════════════════════════════════════
# Create / edit
# ═════════════════════════════════════════════════════════════════════════════


@_rollback_on_error
def create_assessment(actor: Actor, period: str, template_id: int | None = None,
                      subject_id: str | None = None) -> dict:
    """Start an assessment for a period.

    The subject is the actor; only an administrator may open one on behalf of
    someone else. The template defaults to the DepartmentRole's default.
    """
    period = (period or "").strip() if isinstance(period, str) else ""
    if not period:
        raise ValidationError("period is required", {"period": "required"})
    if subject_id is not None and str(subject_id) != actor.id:
        ensure_admin(actor)
        subject = str(subject_id)
    else:
        subject = actor.id

    if template_id is None:
        if subject != actor.id:
            raise ValidationError(
                "template_id is required when opening an assessment for another subject",
                {"template_id": "required"},
            )
        dept_role = resolve_department_role(actor.department_id, actor.roles)
        template_id = dept_role.default_template_id if dept_role else None
        if template_id is None:
            raise ValidationError(
                "template_id is required: no default template is configured for this role",
                {"template_id": "required"},
            )
    get_or_raise(RubricTemplate, template_id, "RubricTemplate")

    existing = db.session.execute(
        select(Assessment.id).where(Assessment.subject_id == subject, Assessment.period == period)
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("Assessment", "period", period)

    assessment = Assessment(
        subject_id=subject,
        period=period,
        template_id=template_id,
        status=STATUS_DRAFT,
        current_step_index=0,
        scores={},
        evidence={},
        layer_scores={},
    )
    db.session.add(assessment)
    _record(assessment, "create", actor, None, None)
    commit_or_raise("Assessment")
    logger.info(
        "Assessment created for %s/%s", subject, period,
        extra={"assessment_id": assessment.id, "actor_id": actor.id, "template_id": template_id},
    )
    return assessment.to_dict()


@_rollback_on_error
def save_layer(assessment_id: int, actor: Actor, scores=None, evidence=None, expected_version=None) -> dict:
    """Draft-save scores / evidence into the actor's layer without transitioning.

    The subject writes ``self`` while the assessment is editable; the approver
    of the current review-type step writes the layer keyed by their role.
    Completeness is not checked here.
    """
    assessment = _load_for_update(assessment_id)
    _check_version(assessment, "save", expected_version)

    if actor.id == assessment.subject_id:
        if assessment.status not in EDITABLE_STATUSES:
            raise InvalidTransitionError("save", assessment.status, reason="self layer is read-only once submitted")
        layer = SELF_LAYER
    else:
        steps = _steps_for(assessment, "save")
        step = _current_step(assessment, steps, "save")
        _ensure_step_actor(assessment, step, actor)
        if not step.writes_layer:
            raise InvalidTransitionError(
                "save", assessment.status,
                reason=f"step {step.step_order} ({step.step_type}) does not score a layer",
                current_step=step.step_order,
            )
        layer = step.approver_role

    _apply_edits(assessment, layer, scores, evidence)
    commit_or_raise("Assessment")
    logger.debug("Layer %s saved", layer, extra={"assessment_id": assessment.id, "actor_id": actor.id})
    return assessment.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


@_rollback_on_error
def submit(assessment_id: int, actor: Actor, expected_version=None) -> dict:
    """draft | returned → self_submitted (step 1)."""
    assessment = _load_for_update(assessment_id)
    if actor.id != assessment.subject_id:
        raise UnauthorizedError("Only the subject can submit their assessment")
    if assessment.status not in EDITABLE_STATUSES:
        raise InvalidTransitionError("submit", assessment.status)
    _check_version(assessment, "submit", expected_version)

    dept_role = resolve_department_role(actor.department_id, actor.roles)
    steps = load_steps(dept_role.id) if dept_role else []
    if not steps:
        raise NoWorkflowConfiguredError(actor.department_id, actor.roles)

    domains = rubric_service.load_domains(assessment.template_id)
    _ensure_complete(assessment, SELF_LAYER, domains)

    from_status, from_step = assessment.status, assessment.current_step_index
    assessment.department_role_id = dept_role.id
    assessment.current_step_index = 1
    assessment.submitted_at = utcnow()
    assessment.rejection_reason = None
    assessment.final_score = None
    assessment.final_grade = None
    assessment.final_bonus_percent = None
    _recompute_layer_scores(assessment, domains)

    if _last_evaluative_order(steps) == 0:
        # Acknowledge-only workflow: nothing to review, go straight to the release gate.
        _finalize(assessment, SELF_LAYER, domains)
        assessment.status = STATUS_PENDING_RELEASE
    else:
        assessment.status = STATUS_SELF_SUBMITTED

    _record(assessment, "submit", actor, from_status, from_step)
    _commit_transition(assessment, "submit", from_status)
    _log_transition(assessment, "submit", actor, from_status)
    return assessment.to_dict()


@_rollback_on_error
def advance(assessment_id: int, actor: Actor, scores=None, evidence=None, comment: str | None = None,
            expected_version=None) -> dict:
    """Complete the current step and move to the next one.

    Review-type steps merge ``scores`` / ``evidence`` into the approver's layer
    and require it to be complete. The last evaluative step persists the final
    score and grade; advancing past it parks the assessment at pending_release.
    """
    assessment = _load_for_update(assessment_id)
    steps = _steps_for(assessment, "advance")
    step = _current_step(assessment, steps, "advance")
    _ensure_step_actor(assessment, step, actor)
    _check_version(assessment, "advance", expected_version)

    reviewed = _reviewed_layer(steps, step.step_order)
    if not assessment.layer(reviewed):
        raise InvalidTransitionError(
            "advance", assessment.status,
            reason=f"layer '{reviewed}' under review is missing",
            current_step=step.step_order,
        )

    if step.writes_layer:
        layer = step.approver_role
        domains = _apply_edits(assessment, layer, scores, evidence)
        _ensure_complete(assessment, layer, domains)
    else:
        if scores or evidence:
            raise ValidationError(
                f"Step {step.step_order} ({step.step_type}) does not accept score edits",
                {"step_order": step.step_order},
            )
        layer = reviewed
        domains = rubric_service.load_domains(assessment.template_id)

    from_status, from_step = assessment.status, assessment.current_step_index
    last_evaluative = _last_evaluative_order(steps)
    if step.step_order == last_evaluative:
        _finalize(assessment, layer, domains)

    assessment.current_step_index = step.step_order + 1
    if assessment.current_step_index > last_evaluative:
        assessment.status = STATUS_PENDING_RELEASE
    else:
        assessment.status = reviewed_status(step.step_order)

    _record(assessment, "advance", actor, from_status, from_step, comment)
    _commit_transition(assessment, "advance", from_status)
    _log_transition(assessment, "advance", actor, from_status)
    return assessment.to_dict()


@_rollback_on_error
def reject(assessment_id: int, actor: Actor, reason: str, expected_version=None) -> dict:
    """Send the assessment back to the subject. Scores are kept."""
    assessment = _load_for_update(assessment_id)
    steps = _steps_for(assessment, "reject")
    step = _current_step(assessment, steps, "reject")
    _ensure_step_actor(assessment, step, actor)
    if not step.can_reject:
        raise InvalidTransitionError(
            "reject", assessment.status,
            reason=f"step {step.step_order} ({step.step_type}) cannot reject",
            current_step=step.step_order,
        )
    reason = (reason or "").strip() if isinstance(reason, str) else ""
    if not reason:
        raise ValidationError("A rejection reason is required", {"reason": "required"})
    _check_version(assessment, "reject", expected_version)

    from_status, from_step = assessment.status, assessment.current_step_index
    assessment.status = STATUS_RETURNED
    assessment.current_step_index = 0
    assessment.rejection_reason = reason

    _record(assessment, "reject", actor, from_status, from_step, reason)
    _commit_transition(assessment, "reject", from_status)
    _log_transition(assessment, "reject", actor, from_status)
    return assessment.to_dict()


@_rollback_on_error
def acknowledge(assessment_id: int, actor: Actor, note: str | None = None) -> dict:
    """released → acknowledged. Terminal."""
    assessment = _load_for_update(assessment_id)
    if actor.id != assessment.subject_id:
        raise UnauthorizedError("Only the subject can acknowledge their assessment")
    if assessment.status != STATUS_RELEASED:
        raise InvalidTransitionError("acknowledge", assessment.status)
    steps = _steps_for(assessment, "acknowledge")
    if steps[-1].step_type != ACKNOWLEDGE_STEP:
        raise InvalidTransitionError(
            "acknowledge", assessment.status, reason="workflow does not end with an acknowledge step",
        )

    from_status, from_step = assessment.status, assessment.current_step_index
    assessment.status = STATUS_ACKNOWLEDGED
    assessment.current_step_index = steps[-1].step_order
    assessment.acknowledged_at = utcnow()
    assessment.acknowledgement_note = (note or None)

    _record(assessment, "acknowledge", actor, from_status, from_step, note)
    _commit_transition(assessment, "acknowledge", from_status)
    _log_transition(assessment, "acknowledge", actor, from_status)
    return assessment.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Queries / admin
# ═════════════════════════════════════════════════════════════════════════════


def get_assessment(assessment_id: int, actor: Actor) -> dict:
    assessment = get_or_raise(Assessment, assessment_id)
    if not _can_view(assessment, actor):
        raise UnauthorizedError("Not permitted to view this assessment")
    return assessment.to_dict()


def list_assessments(actor: Actor, subject_id: str | None = None, period: str | None = None,
                     status: str | None = None) -> list[dict]:
    """List assessments visible to the actor.

    Non-administrators see their own plus those a step of theirs has reached.
    """
    stmt = select(Assessment).order_by(Assessment.created_at.desc(), Assessment.id.desc())
    if not actor.is_admin:
        stmt = stmt.where(_visible_to(actor))
    if subject_id is not None:
        stmt = stmt.where(Assessment.subject_id == str(subject_id))
    if period:
        stmt = stmt.where(Assessment.period == period)
    if status:
        stmt = stmt.where(Assessment.status == status)
    return [a.to_dict(include_layers=False) for a in db.session.execute(stmt).scalars().all()]


def list_pending_for(actor: Actor) -> list[dict]:
    """Assessments whose current step awaits one of the actor's roles.

    Administrators also see everything parked at pending_release.
    """
    in_review = or_(
        Assessment.status == STATUS_SELF_SUBMITTED,
        Assessment.status.like("step\\_%\\_reviewed", escape="\\"),
    )
    stmt = (
        select(Assessment)
        .join(WorkflowStep, and_(
            WorkflowStep.department_role_id == Assessment.department_role_id,
            WorkflowStep.step_order == Assessment.current_step_index,
        ))
        .where(in_review, WorkflowStep.approver_role.in_(actor.roles), Assessment.subject_id != actor.id)
        .order_by(Assessment.submitted_at, Assessment.id)
    )
    rows = list(db.session.execute(stmt).scalars().all())
    if actor.is_admin:
        rows += db.session.execute(
            select(Assessment).where(Assessment.status == STATUS_PENDING_RELEASE).order_by(Assessment.id)
        ).scalars().all()
    return [a.to_dict(include_layers=False) for a in rows]


def get_history(assessment_id: int, actor: Actor) -> list[dict]:
    assessment = get_or_raise(Assessment, assessment_id)
    if not _can_view(assessment, actor):
        raise UnauthorizedError("Not permitted to view this assessment")
    return [e.to_dict() for e in assessment.events]


def get_scoring(assessment_id: int, actor: Actor) -> dict:
    """Per-layer scoring summary (domain scores, overall, tier, completion)."""
    assessment = get_or_raise(Assessment, assessment_id)
    if not _can_view(assessment, actor):
        raise UnauthorizedError("Not permitted to view this assessment")
    domains = rubric_service.load_domains(assessment.template_id)
    layers = {
        layer: scoring.layer_summary(domains, assessment.layer(layer), assessment.layer_evidence(layer))
        for layer in (assessment.scores or {})
    }
    tier = scoring.tier_of(assessment.final_score)
    return {
        "assessment_id": assessment.id,
        "status": assessment.status,
        "layers": layers,
        "final_score": assessment.final_score,
        "final_tier": tier.to_dict() if tier else None,
    }


def delete_assessment(actor: Actor, assessment_id: int) -> None:
    """Administrative delete; cascades the event trail."""
    ensure_admin(actor)
    assessment = get_or_raise(Assessment, assessment_id)
    db.session.delete(assessment)
    commit_or_raise("Assessment")
    logger.info("Assessment deleted", extra={"assessment_id": assessment_id, "actor_id": actor.id})
