"""
Rubric catalog models.

Hierarchy:  RubricTemplate → RubricDomain (weighted) → RubricStandard → RubricKpi

A KPI carries four rubric-level descriptions (scores 1–4) and optional
evidence guidance. Domain weights are percentages; the domains of one
template are expected to sum to 100 but this is not enforced.

Templates are written once, as a whole tree, by rubric_service.create_template;
the workflow engine only reads them.
"""

from datetime import datetime, timezone

from appraisal.models import db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RubricTemplate(db.Model):
    __tablename__ = "rubric_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    department_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_global = db.Column(db.Boolean, nullable=False, default=False)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    domains = db.relationship(
        "RubricDomain",
        back_populates="template",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RubricDomain.sort_order",
    )

    @property
    def total_weight(self) -> float:
        return sum(d.weight or 0 for d in self.domains)

    def to_dict(self, include_tree: bool = False) -> dict:
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "department_id": self.department_id,
            "is_global": self.is_global,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_tree:
            d["domains"] = [dom.to_dict() for dom in self.domains]
            d["total_weight"] = self.total_weight
        return d

    def __repr__(self) -> str:
        return f"<RubricTemplate #{self.id} {self.name} v{self.version}>"


class RubricDomain(db.Model):
    __tablename__ = "rubric_domains"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("rubric_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    weight = db.Column(db.Float, nullable=False, default=0.0, comment="Percentage of overall score")
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    template = db.relationship("RubricTemplate", back_populates="domains")
    standards = db.relationship(
        "RubricStandard",
        back_populates="domain",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RubricStandard.sort_order",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "weight": self.weight,
            "sort_order": self.sort_order,
            "standards": [s.to_dict() for s in self.standards],
        }


class RubricStandard(db.Model):
    __tablename__ = "rubric_standards"

    id = db.Column(db.Integer, primary_key=True)
    domain_id = db.Column(
        db.Integer,
        db.ForeignKey("rubric_domains.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    domain = db.relationship("RubricDomain", back_populates="standards")
    kpis = db.relationship(
        "RubricKpi",
        back_populates="standard",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RubricKpi.sort_order",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sort_order": self.sort_order,
            "kpis": [k.to_dict() for k in self.kpis],
        }


class RubricKpi(db.Model):
    __tablename__ = "rubric_kpis"

    id = db.Column(db.Integer, primary_key=True)
    standard_id = db.Column(
        db.Integer,
        db.ForeignKey("rubric_standards.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(300), nullable=False)
    rubric_level_1 = db.Column(db.Text, nullable=False)
    rubric_level_2 = db.Column(db.Text, nullable=False)
    rubric_level_3 = db.Column(db.Text, nullable=False)
    rubric_level_4 = db.Column(db.Text, nullable=False)
    evidence_guidance = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    standard = db.relationship("RubricStandard", back_populates="kpis")

    @property
    def rubric_levels(self) -> list[str]:
        return [self.rubric_level_1, self.rubric_level_2, self.rubric_level_3, self.rubric_level_4]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "rubric_levels": self.rubric_levels,
            "evidence_guidance": self.evidence_guidance,
            "sort_order": self.sort_order,
        }
