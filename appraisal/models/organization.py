"""
Organisation & workflow configuration models.

Three models:
  Department      — node in a three-level tree (root → department → subdepartment).
  DepartmentRole  — the configurable unit a workflow is attached to:
                    (department, role), department NULL ⇒ organisation-wide.
  WorkflowStep    — one ordered step of a DepartmentRole's approval chain.
"""

from datetime import datetime, timezone

from appraisal.models import db

# ── Constants ─────────────────────────────────────────────────────────────────

HIERARCHY_LEVELS = ("root", "department", "subdepartment")

# Level a parent must have for a child of the given level
PARENT_LEVEL = {
    "root": None,
    "department": "root",
    "subdepartment": "department",
}

STEP_TYPES = frozenset({"review", "approval", "review_and_approval", "acknowledge"})

# Steps whose approver scores their own layer
REVIEW_STEP_TYPES = frozenset({"review", "review_and_approval"})

# Steps whose approver may send the assessment back to the subject
REJECTABLE_STEP_TYPES = frozenset({"approval", "review_and_approval"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Department(db.Model):
    """Organisational unit.

    Business rules (enforced in workflow_config_service at write time):
    - parent_id != id, and the parent chain never loops back.
    - root has no parent; department's parent is a root; subdepartment's
      parent is a department.
    """

    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    parent_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    hierarchy_level = db.Column(
        db.String(20),
        nullable=False,
        default="department",
        comment="root | department | subdepartment",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    parent = db.relationship("Department", remote_side=[id], backref="children")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "parent_name": self.parent.name if self.parent else None,
            "hierarchy_level": self.hierarchy_level,
        }

    def __repr__(self) -> str:
        return f"<Department #{self.id} {self.name} ({self.hierarchy_level})>"


class DepartmentRole(db.Model):
    """A (department, role) pair owning one ordered approval workflow.

    Creating a DepartmentRole does not create steps; an empty workflow is a
    valid stored state but rejects submission.
    """

    __tablename__ = "department_roles"
    __table_args__ = (
        db.UniqueConstraint("department_id", "role", name="uq_department_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="NULL for organisation-wide roles",
    )
    role = db.Column(db.String(20), nullable=False, comment="staff | supervisor | manager | director | admin")
    default_template_id = db.Column(
        db.Integer,
        db.ForeignKey("rubric_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    name = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    department = db.relationship("Department")
    default_template = db.relationship("RubricTemplate")
    steps = db.relationship(
        "WorkflowStep",
        back_populates="department_role",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="WorkflowStep.step_order",
    )

    def to_dict(self, include_steps: bool = False) -> dict:
        d = {
            "id": self.id,
            "department_id": self.department_id,
            "department_name": self.department.name if self.department else None,
            "role": self.role,
            "default_template_id": self.default_template_id,
            "template_name": self.default_template.name if self.default_template else None,
            "name": self.name,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self) -> str:
        return f"<DepartmentRole #{self.id} dept={self.department_id} role={self.role}>"


class WorkflowStep(db.Model):
    """One step of an approval chain. ``step_order`` is contiguous 1..N."""

    __tablename__ = "workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("department_role_id", "step_order", name="uq_workflow_step_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    department_role_id = db.Column(
        db.Integer,
        db.ForeignKey("department_roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    approver_role = db.Column(db.String(20), nullable=False)
    step_type = db.Column(
        db.String(30),
        nullable=False,
        comment="review | approval | review_and_approval | acknowledge",
    )

    department_role = db.relationship("DepartmentRole", back_populates="steps")

    @property
    def writes_layer(self) -> bool:
        return self.step_type in REVIEW_STEP_TYPES

    @property
    def can_reject(self) -> bool:
        return self.step_type in REJECTABLE_STEP_TYPES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "department_role_id": self.department_role_id,
            "step_order": self.step_order,
            "approver_role": self.approver_role,
            "step_type": self.step_type,
        }

    def __repr__(self) -> str:
        return f"<WorkflowStep #{self.id} {self.step_order}:{self.approver_role}/{self.step_type}>"
