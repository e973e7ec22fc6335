"""
Rubric Catalog service.

Templates are created as a whole tree (template → domains → standards →
KPIs) inside one transaction: a failure anywhere rolls back every row, so a
partially created template is never visible.

The workflow engine reads the catalog through ``load_domains`` /
``kpi_ids``, which project the tree into the shape the scoring engine needs.

Rules:
  - db.session.commit() for catalog writes happens only in this file.
  - Domain weights that do not sum to 100 are logged, not rejected.
"""

from __future__ import annotations

import logging
import math

from sqlalchemy import func, select

from appraisal.core.exceptions import ConflictError, ValidationError
from appraisal.models import db
from appraisal.models.assessment import Assessment
from appraisal.models.rubric import RubricDomain, RubricKpi, RubricStandard, RubricTemplate
from appraisal.services.scoring import DomainView
from appraisal.utils.helpers import commit_or_raise, get_or_raise

logger = logging.getLogger(__name__)

EXPECTED_TOTAL_WEIGHT = 100.0


# ── Validation helpers ────────────────────────────────────────────────────────


def _require_name(node: dict, path: str) -> str:
    name = (node.get("name") or "").strip() if isinstance(node, dict) else ""
    if not name:
        raise ValidationError(f"{path}.name is required", {path: "name is required"})
    return name


def _parse_weight(raw, path: str) -> float:
    try:
        weight = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{path}.weight must be a number", {path: "weight must be a number"})
    if math.isnan(weight) or weight < 0:
        raise ValidationError(f"{path}.weight must be >= 0", {path: "weight must be >= 0"})
    return weight


def _parse_rubric_levels(kpi: dict, path: str) -> list[str]:
    """Accept either ``rubric_levels: [l1, l2, l3, l4]`` or ``rubric_level_1..4``."""
    levels = kpi.get("rubric_levels")
    if levels is None:
        levels = [kpi.get(f"rubric_level_{i}") for i in range(1, 5)]
    if not isinstance(levels, list) or len(levels) != 4:
        raise ValidationError(f"{path} needs exactly four rubric level descriptions",
                              {path: "rubric_levels must have 4 entries"})
    cleaned = [(lvl or "").strip() if isinstance(lvl, str) else "" for lvl in levels]
    if not all(cleaned):
        raise ValidationError(f"{path} rubric level descriptions must be non-empty",
                              {path: "rubric level descriptions must be non-empty"})
    return cleaned


def _add_standard(domain: RubricDomain, data: dict, path: str, order: int) -> None:
    standard = RubricStandard(name=_require_name(data, path), sort_order=data.get("sort_order", order))
    domain.standards.append(standard)
    kpis = data.get("kpis") or []
    if not isinstance(kpis, list) or not kpis:
        raise ValidationError(f"{path} must contain at least one KPI", {path: "kpis is required"})
    for k_idx, kpi in enumerate(kpis, 1):
        k_path = f"{path}.kpis[{k_idx}]"
        levels = _parse_rubric_levels(kpi, k_path)
        standard.kpis.append(RubricKpi(
            name=_require_name(kpi, k_path),
            rubric_level_1=levels[0],
            rubric_level_2=levels[1],
            rubric_level_3=levels[2],
            rubric_level_4=levels[3],
            evidence_guidance=(kpi.get("evidence_guidance") or None),
            sort_order=kpi.get("sort_order", k_idx),
        ))


# ── Public API ────────────────────────────────────────────────────────────────


def create_template(data: dict, created_by: str | None = None) -> dict:
    """Create a rubric template with its full domain / standard / KPI tree.

    Body shape::

        {
          "name": "...", "description": "...", "department_id": 3, "is_global": false,
          "domains": [
            {"name": "...", "weight": 40,
             "standards": [
               {"name": "...",
                "kpis": [{"name": "...", "rubric_levels": ["..", "..", "..", ".."],
                          "evidence_guidance": "..."}]}
             ]}
          ]
        }

    Returns:
        The created template serialised with its tree.

    Raises:
        ValidationError: on any malformed node (nothing is persisted).
        ConflictError / StoreUnavailableError: on commit failure (rolled back).
    """
    name = _require_name(data, "template")
    domains = data.get("domains") or []
    if not isinstance(domains, list) or not domains:
        raise ValidationError("template must contain at least one domain", {"domains": "required"})

    template = RubricTemplate(
        name=name,
        description=data.get("description"),
        department_id=data.get("department_id"),
        is_global=bool(data.get("is_global", False)),
        created_by=created_by,
    )
    try:
        db.session.add(template)
        for d_idx, dom in enumerate(domains, 1):
            d_path = f"domains[{d_idx}]"
            domain = RubricDomain(
                name=_require_name(dom, d_path),
                weight=_parse_weight(dom.get("weight", 0), d_path),
                sort_order=dom.get("sort_order", d_idx),
            )
            template.domains.append(domain)
            standards = dom.get("standards") or []
            if not isinstance(standards, list) or not standards:
                raise ValidationError(f"{d_path} must contain at least one standard",
                                      {d_path: "standards is required"})
            for s_idx, std in enumerate(standards, 1):
                _add_standard(domain, std, f"{d_path}.standards[{s_idx}]", s_idx)
        db.session.flush()
    except Exception:
        db.session.rollback()
        raise

    commit_or_raise("RubricTemplate")

    total = template.total_weight
    if not math.isclose(total, EXPECTED_TOTAL_WEIGHT, abs_tol=0.01):
        logger.warning(
            "Rubric template %s domain weights sum to %.2f, expected %.0f",
            template.id, total, EXPECTED_TOTAL_WEIGHT,
            extra={"template_id": template.id},
        )
    logger.info("Rubric template created", extra={"template_id": template.id, "actor_id": created_by})
    return template.to_dict(include_tree=True)


def get_template(template_id: int) -> dict:
    return get_or_raise(RubricTemplate, template_id).to_dict(include_tree=True)


def list_templates(department_id: int | None = None) -> list[dict]:
    stmt = select(RubricTemplate).order_by(RubricTemplate.name, RubricTemplate.version)
    if department_id is not None:
        stmt = stmt.where(
            (RubricTemplate.department_id == department_id) | RubricTemplate.is_global.is_(True)
        )
    return [t.to_dict() for t in db.session.execute(stmt).scalars().all()]


def delete_template(template_id: int) -> None:
    """Delete a template and its tree. Refused while assessments use it."""
    template = get_or_raise(RubricTemplate, template_id)
    in_use = db.session.execute(
        select(func.count(Assessment.id)).where(Assessment.template_id == template_id)
    ).scalar_one()
    if in_use:
        raise ConflictError(
            "RubricTemplate",
            message=f"RubricTemplate id={template_id} is used by {in_use} assessment(s)",
        )
    db.session.delete(template)
    commit_or_raise("RubricTemplate")
    logger.info("Rubric template deleted", extra={"template_id": template_id})


def load_domains(template_id: int) -> list[DomainView]:
    """Project a template into scoring-engine domain views."""
    template = get_or_raise(RubricTemplate, template_id)
    return [
        DomainView(
            id=domain.id,
            name=domain.name,
            weight=float(domain.weight or 0),
            kpi_ids=tuple(str(kpi.id) for std in domain.standards for kpi in std.kpis),
        )
        for domain in template.domains
    ]


def kpi_ids(template_id: int) -> set[str]:
    return {k for d in load_domains(template_id) for k in d.kpi_ids}
