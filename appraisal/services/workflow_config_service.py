"""
Workflow Configuration Store.

CRUD over the organisation tree (Department), the configurable unit
(DepartmentRole) and its ordered approval chain (WorkflowStep).

Rules:
  - Writes are administrator-only; callers pass the authenticated Actor.
  - step_order stays contiguous 1..N within a DepartmentRole: inserts shift
    later steps down, deletes and moves renumber.
  - Deleting a DepartmentRole cascades to its steps.
  - Department writes reject self-parenting, cycles and level mismatches
    explicitly instead of relying on a traversal to notice them later.
  - Presets ("staff_flow", "manager_flow") are pre-filled step sequences
    applied to an empty workflow; they are not stored as a concept.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from appraisal.auth import ROLE_SENIORITY, ROLES, Actor, ensure_admin
from appraisal.core.exceptions import ConflictError, ValidationError
from appraisal.models import db
from appraisal.models.assessment import Assessment
from appraisal.models.organization import (
    HIERARCHY_LEVELS,
    PARENT_LEVEL,
    STEP_TYPES,
    Department,
    DepartmentRole,
    WorkflowStep,
)
from appraisal.models.rubric import RubricTemplate
from appraisal.utils.helpers import commit_or_raise, get_or_raise

logger = logging.getLogger(__name__)

WORKFLOW_PRESETS = {
    "staff_flow": (
        ("manager", "review"),
        ("director", "approval"),
        ("staff", "acknowledge"),
    ),
    "manager_flow": (
        ("director", "review_and_approval"),
        ("manager", "acknowledge"),
    ),
}


# ═════════════════════════════════════════════════════════════════════════════
# Departments
# ═════════════════════════════════════════════════════════════════════════════


def _validate_placement(dept_id: int | None, parent_id: int | None, level: str) -> None:
    """Reject self-parenting, cycles, and parent/level mismatches."""
    if level not in HIERARCHY_LEVELS:
        raise ValidationError(
            f"hierarchy_level must be one of: {', '.join(HIERARCHY_LEVELS)}",
            {"hierarchy_level": level},
        )
    expected_parent_level = PARENT_LEVEL[level]

    if parent_id is None:
        if expected_parent_level is not None:
            raise ValidationError(f"A {level} requires a parent {expected_parent_level}",
                                  {"parent_id": "required"})
        return
    if expected_parent_level is None:
        raise ValidationError("A root department cannot have a parent", {"parent_id": "must be null"})
    if dept_id is not None and parent_id == dept_id:
        raise ValidationError("A department cannot be its own parent", {"parent_id": parent_id})

    parent = get_or_raise(Department, parent_id, "Parent department")
    if parent.hierarchy_level != expected_parent_level:
        raise ValidationError(
            f"Parent of a {level} must be a {expected_parent_level}, got {parent.hierarchy_level}",
            {"parent_id": parent_id},
        )

    # Walk up from the new parent; reaching dept_id means the move closes a loop.
    seen = set()
    node = parent
    while node is not None:
        if dept_id is not None and node.id == dept_id:
            raise ValidationError("Department hierarchy cannot contain a cycle", {"parent_id": parent_id})
        if node.id in seen:
            raise ValidationError("Existing department hierarchy contains a cycle", {"department_id": node.id})
        seen.add(node.id)
        node = node.parent


def list_departments() -> list[dict]:
    rows = db.session.execute(select(Department).order_by(Department.name)).scalars().all()
    return [d.to_dict() for d in rows]


def create_department(actor: Actor, data: dict) -> dict:
    ensure_admin(actor)
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", {"name": "required"})
    level = data.get("hierarchy_level") or ("department" if data.get("parent_id") else "root")
    parent_id = data.get("parent_id")
    _validate_placement(None, parent_id, level)

    dept = Department(name=name, parent_id=parent_id, hierarchy_level=level)
    db.session.add(dept)
    commit_or_raise("Department")
    logger.info("Department %s created (%s)", dept.id, level, extra={"actor_id": actor.id})
    return dept.to_dict()


def update_department(actor: Actor, dept_id: int, data: dict) -> dict:
    ensure_admin(actor)
    dept = get_or_raise(Department, dept_id)
    name = dept.name
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name cannot be blank", {"name": "required"})

    parent_id = data["parent_id"] if "parent_id" in data else dept.parent_id
    level = data.get("hierarchy_level") or dept.hierarchy_level
    if parent_id != dept.parent_id or level != dept.hierarchy_level:
        _validate_placement(dept.id, parent_id, level)
        if level != dept.hierarchy_level and dept.children:
            raise ConflictError("Department", message="Cannot change the level of a department that has children")

    dept.name = name
    dept.parent_id = parent_id
    dept.hierarchy_level = level
    commit_or_raise("Department")
    return dept.to_dict()


def delete_department(actor: Actor, dept_id: int) -> None:
    ensure_admin(actor)
    dept = get_or_raise(Department, dept_id)
    if dept.children:
        raise ConflictError("Department", message=f"Department id={dept_id} has child departments")
    role_count = db.session.execute(
        select(func.count(DepartmentRole.id)).where(DepartmentRole.department_id == dept_id)
    ).scalar_one()
    if role_count:
        raise ConflictError("Department", message=f"Department id={dept_id} has {role_count} configured role(s)")
    db.session.delete(dept)
    commit_or_raise("Department")
    logger.info("Department %s deleted", dept_id, extra={"actor_id": actor.id})


# ═════════════════════════════════════════════════════════════════════════════
# Department roles
# ═════════════════════════════════════════════════════════════════════════════


def _validate_role(role: str | None, field: str = "role") -> str:
    role = (role or "").strip().lower()
    if role not in ROLES:
        raise ValidationError(f"{field} must be one of: {', '.join(sorted(ROLES))}", {field: role})
    return role


def _validate_template(template_id) -> int | None:
    if template_id in (None, "", "none"):
        return None
    get_or_raise(RubricTemplate, template_id, "RubricTemplate")
    return template_id


def list_department_roles(department_id: int | None = None) -> list[dict]:
    stmt = select(DepartmentRole)
    if department_id is not None:
        stmt = stmt.where(DepartmentRole.department_id == department_id).order_by(DepartmentRole.role)
    else:
        stmt = stmt.order_by(DepartmentRole.updated_at.desc(), DepartmentRole.id.desc())
    return [r.to_dict() for r in db.session.execute(stmt).scalars().all()]


def get_department_role(role_id: int) -> dict:
    return get_or_raise(DepartmentRole, role_id).to_dict(include_steps=True)


def create_department_role(actor: Actor, data: dict) -> dict:
    """Create a DepartmentRole. No steps are created; the workflow starts empty.

    ``department_id`` of None (or "" / "none") makes the role organisation-wide.
    """
    ensure_admin(actor)
    role = _validate_role(data.get("role"))
    department_id = data.get("department_id")
    if department_id in ("", "none"):
        department_id = None
    if department_id is not None:
        get_or_raise(Department, department_id)

    existing = db.session.execute(
        select(DepartmentRole).where(
            DepartmentRole.department_id.is_(None) if department_id is None
            else DepartmentRole.department_id == department_id,
            DepartmentRole.role == role,
        )
    ).scalar_one_or_none()
    if existing:
        raise ConflictError("DepartmentRole", "role", role)

    dept_role = DepartmentRole(
        department_id=department_id,
        role=role,
        default_template_id=_validate_template(data.get("default_template_id")),
        name=(data.get("name") or None),
    )
    db.session.add(dept_role)
    commit_or_raise("DepartmentRole")
    logger.info(
        "DepartmentRole created dept=%s role=%s", department_id, role,
        extra={"actor_id": actor.id, "department_role_id": dept_role.id},
    )
    return dept_role.to_dict(include_steps=True)


def update_department_role(actor: Actor, role_id: int, data: dict) -> dict:
    """Update the display name and default template. (department, role) is fixed."""
    ensure_admin(actor)
    dept_role = get_or_raise(DepartmentRole, role_id)
    if "default_template_id" in data:
        dept_role.default_template_id = _validate_template(data.get("default_template_id"))
    if "name" in data:
        dept_role.name = data.get("name") or None
    commit_or_raise("DepartmentRole")
    return dept_role.to_dict(include_steps=True)


def delete_department_role(actor: Actor, role_id: int) -> None:
    """Delete a DepartmentRole and, by cascade, all of its steps.

    Assessments already routed through it keep their status; their
    department_role_id becomes NULL and further transitions fail until an
    administrator resolves them.
    """
    ensure_admin(actor)
    dept_role = get_or_raise(DepartmentRole, role_id)
    db.session.execute(
        Assessment.__table__.update()
        .where(Assessment.department_role_id == role_id)
        .values(department_role_id=None)
    )
    db.session.delete(dept_role)
    commit_or_raise("DepartmentRole")
    logger.info("DepartmentRole %s deleted", role_id, extra={"actor_id": actor.id, "department_role_id": role_id})


def resolve_department_role(department_id: int | None, roles) -> DepartmentRole | None:
    """Find the DepartmentRole for a subject.

    Department-specific rows win over organisation-wide ones; among the
    subject's roles the most senior with a configured row wins.
    """
    ordered = [r for r in ROLE_SENIORITY if r in roles]
    if not ordered:
        return None
    candidates = db.session.execute(
        select(DepartmentRole).where(
            DepartmentRole.role.in_(ordered),
            (DepartmentRole.department_id == department_id) | DepartmentRole.department_id.is_(None),
        )
    ).scalars().all()

    def rank(dr: DepartmentRole):
        return (0 if dr.department_id is not None else 1, ordered.index(dr.role))

    candidates.sort(key=rank)
    return candidates[0] if candidates else None


# ═════════════════════════════════════════════════════════════════════════════
# Workflow steps
# ═════════════════════════════════════════════════════════════════════════════


def load_steps(department_role_id: int) -> list[WorkflowStep]:
    """Ordered steps, fetched fresh from the store on every call."""
    return list(db.session.execute(
        select(WorkflowStep)
        .where(WorkflowStep.department_role_id == department_role_id)
        .order_by(WorkflowStep.step_order)
    ).scalars().all())


def get_workflow(department_role_id: int) -> list[dict]:
    get_or_raise(DepartmentRole, department_role_id)
    return [s.to_dict() for s in load_steps(department_role_id)]


def _validate_step_fields(data: dict, partial: bool = False) -> dict:
    out = {}
    if not partial or "approver_role" in data:
        out["approver_role"] = _validate_role(data.get("approver_role"), "approver_role")
    if not partial or "step_type" in data:
        step_type = data.get("step_type")
        if step_type not in STEP_TYPES:
            raise ValidationError(
                f"step_type must be one of: {', '.join(sorted(STEP_TYPES))}",
                {"step_type": step_type},
            )
        out["step_type"] = step_type
    return out


def _parse_order(raw, upper: int) -> int:
    try:
        order = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("step_order must be an integer", {"step_order": raw})
    if order < 1 or order > upper:
        raise ValidationError(f"step_order must be between 1 and {upper}", {"step_order": order})
    return order


def _apply_order(steps: list[WorkflowStep]) -> None:
    """Write contiguous 1..N orders for the given sequence.

    Orders are first parked at negative values and flushed so the unique
    (department_role_id, step_order) constraint never sees a transient clash.
    """
    for idx, step in enumerate(steps, 1):
        step.step_order = -idx
    db.session.flush()
    for idx, step in enumerate(steps, 1):
        step.step_order = idx
    db.session.flush()


def create_step(actor: Actor, department_role_id: int, data: dict) -> dict:
    """Append a step, or insert it at ``step_order`` shifting later steps down."""
    ensure_admin(actor)
    get_or_raise(DepartmentRole, department_role_id)
    fields = _validate_step_fields(data)
    steps = load_steps(department_role_id)

    position = len(steps) + 1
    if data.get("step_order") is not None:
        position = _parse_order(data["step_order"], len(steps) + 1)

    step = WorkflowStep(department_role_id=department_role_id, step_order=len(steps) + 1, **fields)
    db.session.add(step)
    try:
        if position <= len(steps):
            db.session.flush()
            steps.insert(position - 1, step)
            _apply_order(steps)
    except Exception:
        db.session.rollback()
        raise
    commit_or_raise("WorkflowStep")
    logger.info(
        "Workflow step %s:%s/%s added", step.step_order, step.approver_role, step.step_type,
        extra={"actor_id": actor.id, "department_role_id": department_role_id},
    )
    return step.to_dict()


def update_step(actor: Actor, step_id: int, data: dict) -> dict:
    """Change a step's approver role / type, and optionally move it."""
    ensure_admin(actor)
    step = get_or_raise(WorkflowStep, step_id)
    fields = _validate_step_fields(data, partial=True)
    if not fields and "step_order" not in data:
        raise ValidationError("No valid fields to update")
    target = None
    if "step_order" in data:
        steps = load_steps(step.department_role_id)
        target = _parse_order(data["step_order"], len(steps))

    for key, value in fields.items():
        setattr(step, key, value)
    if target is not None and target != step.step_order:
        steps.remove(step)
        steps.insert(target - 1, step)
        try:
            _apply_order(steps)
        except Exception:
            db.session.rollback()
            raise
    commit_or_raise("WorkflowStep")
    return step.to_dict()


def delete_step(actor: Actor, step_id: int) -> None:
    """Delete a step and renumber the remainder to stay contiguous."""
    ensure_admin(actor)
    step = get_or_raise(WorkflowStep, step_id)
    department_role_id = step.department_role_id
    db.session.delete(step)
    try:
        db.session.flush()
        _apply_order(load_steps(department_role_id))
    except Exception:
        db.session.rollback()
        raise
    commit_or_raise("WorkflowStep")
    logger.info("Workflow step %s deleted", step_id,
                extra={"actor_id": actor.id, "department_role_id": department_role_id})


def delete_all_steps(actor: Actor, department_role_id: int) -> int:
    ensure_admin(actor)
    get_or_raise(DepartmentRole, department_role_id)
    deleted = db.session.execute(
        WorkflowStep.__table__.delete().where(WorkflowStep.department_role_id == department_role_id)
    ).rowcount
    commit_or_raise("WorkflowStep")
    logger.info("Workflow cleared (%d steps)", deleted,
                extra={"actor_id": actor.id, "department_role_id": department_role_id})
    return deleted


def apply_preset(actor: Actor, department_role_id: int, preset: str) -> list[dict]:
    """Fill an empty workflow with one of the pre-filled step sequences."""
    ensure_admin(actor)
    get_or_raise(DepartmentRole, department_role_id)
    sequence = WORKFLOW_PRESETS.get(preset)
    if sequence is None:
        raise ValidationError(
            f"preset must be one of: {', '.join(sorted(WORKFLOW_PRESETS))}", {"preset": preset}
        )
    if load_steps(department_role_id):
        raise ConflictError("WorkflowStep", message="Presets can only be applied to an empty workflow")

    for order, (approver_role, step_type) in enumerate(sequence, 1):
        db.session.add(WorkflowStep(
            department_role_id=department_role_id,
            step_order=order,
            approver_role=approver_role,
            step_type=step_type,
        ))
    commit_or_raise("WorkflowStep")
    logger.info("Workflow preset %s applied", preset,
                extra={"actor_id": actor.id, "department_role_id": department_role_id})
    return get_workflow(department_role_id)
