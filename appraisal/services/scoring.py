"""
Weighted-rubric scoring engine.

Pure functions over a rubric's domain structure and one layer's
score / evidence maps. No database access and no side effects: callers
(assessment_workflow) persist whatever they need from the results.

Rules:
  - A KPI value is a score in {1, 2, 3, 4}, the marker "excluded", or unset.
  - domain_score averages the numeric values of the domain's KPIs; excluded
    and unset KPIs count in neither numerator nor denominator.
  - overall_score is the weight-averaged domain score over domains that
    produced a score; a domain without any scored KPI drops out of both
    sums rather than counting as zero. Rounded to SCORE_PRECISION places.
  - A value is complete when it is "excluded", or numeric with at least one
    evidence item whose reference is non-blank.

Usage:
    from appraisal.services import scoring

    domains = rubric_service.load_domains(template_id)
    overall = scoring.overall_score(domains, assessment.layer("manager"))
    tier = scoring.tier_of(overall)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from appraisal.models.assessment import EXCLUDED, NUMERIC_SCORES

SCORE_PRECISION = 2

# Completion failure reasons
UNSCORED = "unscored"
MISSING_EVIDENCE = "missing_evidence"
INVALID_SCORE = "invalid_score"


@dataclass(frozen=True)
class DomainView:
    """Read-only projection of a rubric domain: its weight and all KPI ids
    across its standards (as strings, matching the layer map keys)."""

    id: int
    name: str
    weight: float
    kpi_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Tier:
    label: str
    bonus_percent: int
    name: str
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "bonus_percent": self.bonus_percent,
            "name": self.name,
            "description": self.description,
        }


@dataclass(frozen=True)
class Completion:
    completed_count: int
    total_count: int
    incomplete: dict = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.completed_count == self.total_count

    @property
    def percent(self) -> float:
        if not self.total_count:
            return 0.0
        return round(self.completed_count * 100.0 / self.total_count, 1)

    def to_dict(self) -> dict:
        return {
            "completed_count": self.completed_count,
            "total_count": self.total_count,
            "percent": self.percent,
            "incomplete": dict(self.incomplete),
        }


# Highest threshold first; the first one the score reaches wins.
TIER_THRESHOLDS: tuple[tuple[float, Tier], ...] = (
    (3.9, Tier("Exemplary", 100, "Exemplary",
               "Outstanding performance that exceeds expectations across all domains.")),
    (3.6, Tier("TrailBlazer", 90, "Trail Blazers",
               "Goes beyond role expectations and contributes to team and organisational success.")),
    (3.4, Tier("RisingStar", 80, "Rising Star",
               "Significant growth and potential; meets expectations with notable areas of excellence.")),
    (3.2, Tier("SolidFoundation", 65, "Solid Foundation",
               "Reliably meets role expectations across key performance areas.")),
    (3.0, Tier("Developing", 50, "Developing Under Guidance",
               "Entry grade; expected to progress to Solid Foundation.")),
    (2.8, Tier("NeedsImprovement", 40, "Needs Improvement",
               "Must progress to the next grade within two appraisal cycles.")),
    (2.6, Tier("PerformanceManagement", 10, "Performance Management",
               "Placed on a time-boxed performance management plan.")),
)
BELOW_THRESHOLD = Tier("BelowThreshold", 0, "Below Threshold",
                       "Critically below acceptable standards; formal improvement plan required.")


def is_numeric_score(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value in NUMERIC_SCORES


def has_evidence(items) -> bool:
    """True when at least one evidence item has a non-blank reference."""
    if not isinstance(items, list):
        return False
    return any(
        isinstance(item, Mapping) and str(item.get("reference") or "").strip()
        for item in items
    )


def domain_score(domain: DomainView, layer_scores: Mapping) -> float | None:
    values = [layer_scores.get(k) for k in domain.kpi_ids]
    scored = [v for v in values if is_numeric_score(v)]
    if not scored:
        return None
    return sum(scored) / len(scored)


def overall_score(domains: Iterable[DomainView], layer_scores: Mapping) -> float | None:
    weighted_sum = 0.0
    total_weight = 0.0
    for domain in domains:
        score = domain_score(domain, layer_scores)
        if score is None:
            continue
        weighted_sum += score * domain.weight
        total_weight += domain.weight
    if total_weight <= 0:
        return None
    return round(weighted_sum / total_weight, SCORE_PRECISION)


def tier_of(score: float | None) -> Tier | None:
    if score is None:
        return None
    for threshold, tier in TIER_THRESHOLDS:
        if score >= threshold:
            return tier
    return BELOW_THRESHOLD


def kpi_status(value, items) -> str | None:
    """Return None when the KPI value is complete, else the failure reason."""
    if value is None:
        return UNSCORED
    if value == EXCLUDED:
        return None
    if not is_numeric_score(value):
        return INVALID_SCORE
    if not has_evidence(items):
        return MISSING_EVIDENCE
    return None


def completion(domains: Iterable[DomainView], layer_scores: Mapping, layer_evidence: Mapping) -> Completion:
    total = 0
    incomplete = {}
    for domain in domains:
        for kpi_id in domain.kpi_ids:
            total += 1
            reason = kpi_status(layer_scores.get(kpi_id), layer_evidence.get(kpi_id))
            if reason is not None:
                incomplete[kpi_id] = reason
    return Completion(completed_count=total - len(incomplete), total_count=total, incomplete=incomplete)


def layer_summary(domains: Iterable[DomainView], layer_scores: Mapping, layer_evidence: Mapping) -> dict:
    """Per-domain scores, overall score, tier and completion for one layer."""
    domains = list(domains)
    overall = overall_score(domains, layer_scores)
    tier = tier_of(overall)
    return {
        "domains": [
            {
                "id": d.id,
                "name": d.name,
                "weight": d.weight,
                "score": domain_score(d, layer_scores),
            }
            for d in domains
        ],
        "overall_score": overall,
        "tier": tier.to_dict() if tier else None,
        "completion": completion(domains, layer_scores, layer_evidence).to_dict(),
    }
