"""
Assessment aggregate — one record per (subject, period).

Score and evidence maps are stored per *layer*:

    scores   = {"self": {"<kpi_id>": 3, "<kpi_id>": "excluded"}, "manager": {...}}
    evidence = {"self": {"<kpi_id>": [{"reference", "title", "notes"}, ...]}, ...}

KPI ids are stored as strings (JSON object keys). ``layer_scores`` caches the
overall weighted score of each layer and is recomputed after every score
mutation.

Concurrency: ``version`` is the SQLAlchemy version column. Every ORM UPDATE
carries ``WHERE version = <loaded>``; a concurrent writer that already bumped
it makes the flush raise StaleDataError, so two simultaneous transitions on
the same row cannot both succeed.
"""

from datetime import datetime, timezone

from appraisal.models import db

# ── Status labels ─────────────────────────────────────────────────────────────

STATUS_DRAFT = "draft"
STATUS_RETURNED = "returned"
STATUS_SELF_SUBMITTED = "self_submitted"
STATUS_PENDING_RELEASE = "pending_release"
STATUS_RELEASED = "released"
STATUS_ACKNOWLEDGED = "acknowledged"

# Statuses in which the subject edits the self layer
EDITABLE_STATUSES = frozenset({STATUS_DRAFT, STATUS_RETURNED})

SELF_LAYER = "self"
EXCLUDED = "excluded"
EXCLUDED_ALIASES = frozenset({"excluded", "X", "x"})
NUMERIC_SCORES = (1, 2, 3, 4)


def reviewed_status(step_order: int) -> str:
    """Status label after the given step has been completed."""
    return f"step_{step_order}_reviewed"


def is_in_review(status: str) -> bool:
    return status == STATUS_SELF_SUBMITTED or (status.startswith("step_") and status.endswith("_reviewed"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Assessment(db.Model):
    """An appraisal moving through its department role's workflow.

    Business rules:
    - current_step_index is 0 while the subject edits (draft / returned),
      then the step_order of the step awaiting action.
    - Scores are never cleared by a rejection; the subject edits and resubmits.
    - final_score / final_grade are written at the last evaluative step.
    """

    __tablename__ = "assessments"
    __table_args__ = (
        db.UniqueConstraint("subject_id", "period", name="uq_assessment_subject_period"),
        db.Index("ix_assessment_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.String(64), nullable=False, index=True)
    period = db.Column(db.String(50), nullable=False)
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("rubric_templates.id", ondelete="RESTRICT"),
        nullable=False,
    )
    department_role_id = db.Column(
        db.Integer,
        db.ForeignKey("department_roles.id", ondelete="SET NULL"),
        nullable=True,
        comment="Workflow resolved at submission time",
    )

    status = db.Column(db.String(40), nullable=False, default=STATUS_DRAFT)
    current_step_index = db.Column(db.Integer, nullable=False, default=0)

    scores = db.Column(db.JSON, nullable=False, default=dict)
    evidence = db.Column(db.JSON, nullable=False, default=dict)
    layer_scores = db.Column(db.JSON, nullable=False, default=dict)

    final_score = db.Column(db.Float, nullable=True)
    final_grade = db.Column(db.String(40), nullable=True)
    final_bonus_percent = db.Column(db.Integer, nullable=True)

    rejection_reason = db.Column(db.Text, nullable=True)
    acknowledgement_note = db.Column(db.Text, nullable=True)

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    template = db.relationship("RubricTemplate")
    department_role = db.relationship("DepartmentRole")
    events = db.relationship(
        "AssessmentEvent",
        back_populates="assessment",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AssessmentEvent.id",
    )

    def layer(self, name: str) -> dict:
        return dict((self.scores or {}).get(name) or {})

    def layer_evidence(self, name: str) -> dict:
        return dict((self.evidence or {}).get(name) or {})

    def to_dict(self, include_layers: bool = True) -> dict:
        d = {
            "id": self.id,
            "subject_id": self.subject_id,
            "period": self.period,
            "template_id": self.template_id,
            "template_name": self.template.name if self.template else None,
            "department_role_id": self.department_role_id,
            "status": self.status,
            "current_step_index": self.current_step_index,
            "layer_scores": self.layer_scores or {},
            "final_score": self.final_score,
            "final_grade": self.final_grade,
            "final_bonus_percent": self.final_bonus_percent,
            "rejection_reason": self.rejection_reason,
            "acknowledgement_note": self.acknowledgement_note,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_layers:
            d["scores"] = self.scores or {}
            d["evidence"] = self.evidence or {}
        return d

    def __repr__(self) -> str:
        return f"<Assessment #{self.id} {self.subject_id}/{self.period} {self.status}@{self.current_step_index}>"


class AssessmentEvent(db.Model):
    """Append-only trail of workflow actions on an assessment.

    Reviewer comments, reject reasons and acknowledgement notes live here;
    rows are never updated.
    """

    __tablename__ = "assessment_events"

    id = db.Column(db.Integer, primary_key=True)
    assessment_id = db.Column(
        db.Integer,
        db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action = db.Column(
        db.String(30),
        nullable=False,
        comment="create | submit | advance | reject | release | acknowledge",
    )
    from_status = db.Column(db.String(40), nullable=True)
    to_status = db.Column(db.String(40), nullable=False)
    from_step = db.Column(db.Integer, nullable=True)
    to_step = db.Column(db.Integer, nullable=True)
    actor_id = db.Column(db.String(64), nullable=False)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    assessment = db.relationship("Assessment", back_populates="events")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "assessment_id": self.assessment_id,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "from_step": self.from_step,
            "to_step": self.to_step,
            "actor_id": self.actor_id,
            "comment": self.comment,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<AssessmentEvent #{self.id} a={self.assessment_id} {self.action}>"
