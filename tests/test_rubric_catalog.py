"""
Tests: Rubric catalog — template tree creation, atomic rollback, read
projections, and delete guards.
"""

import logging

import pytest

from appraisal.core.exceptions import ConflictError, NotFoundError, ValidationError
from appraisal.models import db
from appraisal.models.rubric import RubricDomain, RubricKpi, RubricStandard, RubricTemplate
from appraisal.services import assessment_workflow as workflow
from appraisal.services import rubric_service


def _count(model) -> int:
    return db.session.query(model).count()


def test_create_template_persists_whole_tree(rubric):
    assert rubric["total_weight"] == 100
    assert [d["name"] for d in rubric["domains"]] == ["Delivery", "Collaboration"]
    kpi = rubric["domains"][0]["standards"][0]["kpis"][0]
    assert kpi["rubric_levels"] == ["Beginning", "Developing", "Proficient", "Exemplary"]
    assert kpi["evidence_guidance"] == "Link to a work artefact."
    assert _count(RubricKpi) == 3


def test_invalid_kpi_rolls_back_every_row(rubric_payload):
    payload = rubric_payload()
    payload["domains"][1]["standards"][0]["kpis"][0]["rubric_levels"] = ["only", "three", "levels"]

    with pytest.raises(ValidationError) as exc:
        rubric_service.create_template(payload)

    assert "domains[2].standards[1].kpis[1]" in str(exc.value)
    assert _count(RubricTemplate) == 0
    assert _count(RubricDomain) == 0
    assert _count(RubricStandard) == 0
    assert _count(RubricKpi) == 0


def test_missing_domains_is_rejected(rubric_payload):
    with pytest.raises(ValidationError):
        rubric_service.create_template(rubric_payload(domains=[]))


def test_negative_weight_is_rejected(rubric_payload):
    payload = rubric_payload()
    payload["domains"][0]["weight"] = -5
    with pytest.raises(ValidationError):
        rubric_service.create_template(payload)
    assert _count(RubricTemplate) == 0


def test_weights_not_summing_to_100_are_logged_not_rejected(rubric_payload, caplog):
    payload = rubric_payload()
    payload["domains"][1]["weight"] = 30

    with caplog.at_level(logging.WARNING, logger="appraisal.services.rubric_service"):
        template = rubric_service.create_template(payload)

    assert template["total_weight"] == 90
    assert any("sum to 90.00" in r.getMessage() for r in caplog.records)


def test_rubric_levels_accept_numbered_fields(rubric_payload):
    payload = rubric_payload()
    payload["domains"][1]["standards"][0]["kpis"] = [{
        "name": "Mentoring",
        "rubric_level_1": "a", "rubric_level_2": "b", "rubric_level_3": "c", "rubric_level_4": "d",
    }]
    template = rubric_service.create_template(payload)
    assert template["domains"][1]["standards"][0]["kpis"][0]["rubric_levels"] == ["a", "b", "c", "d"]


def test_load_domains_projects_string_kpi_ids(rubric):
    domains = rubric_service.load_domains(rubric["id"])
    assert [d.weight for d in domains] == [60.0, 40.0]
    assert list(domains[0].kpi_ids) + list(domains[1].kpi_ids) == rubric["kpi_ids"]
    assert rubric_service.kpi_ids(rubric["id"]) == set(rubric["kpi_ids"])


def test_list_templates_filters_by_department(admin, department, rubric, rubric_payload):
    rubric_service.create_template(rubric_payload(name="Local", is_global=False, department_id=department["id"]))
    rubric_service.create_template(rubric_payload(name="Elsewhere", is_global=False))

    names = {t["name"] for t in rubric_service.list_templates(department["id"])}
    assert names == {"Engineering Rubric", "Local"}
    assert len(rubric_service.list_templates()) == 3


def test_delete_template_cascades_tree(rubric):
    rubric_service.delete_template(rubric["id"])
    assert _count(RubricTemplate) == 0
    assert _count(RubricKpi) == 0
    with pytest.raises(NotFoundError):
        rubric_service.get_template(rubric["id"])


def test_delete_template_in_use_is_refused(staff, rubric):
    workflow.create_assessment(staff, "2026", template_id=rubric["id"])
    with pytest.raises(ConflictError):
        rubric_service.delete_template(rubric["id"])
    assert _count(RubricTemplate) == 1


# ── API ───────────────────────────────────────────────────────────────────────


def test_api_create_requires_admin(client, staff, admin, auth_headers, rubric_payload):
    res = client.post("/api/v1/rubrics", json=rubric_payload(), headers=auth_headers(staff))
    assert res.status_code == 403
    assert res.get_json()["code"] == "UNAUTHORIZED"

    res = client.post("/api/v1/rubrics", json=rubric_payload(), headers=auth_headers(admin))
    assert res.status_code == 201
    body = res.get_json()
    assert body["created_by"] == admin.id

    res = client.get(f"/api/v1/rubrics/{body['id']}", headers=auth_headers(staff))
    assert res.status_code == 200
    assert len(res.get_json()["domains"]) == 2


def test_api_requires_token(client):
    res = client.get("/api/v1/rubrics")
    assert res.status_code == 401


def test_api_validation_error_shape(client, admin, auth_headers, rubric_payload):
    res = client.post("/api/v1/rubrics", json=rubric_payload(name=""), headers=auth_headers(admin))
    assert res.status_code == 400
    body = res.get_json()
    assert body["code"] == "VALIDATION_ERROR"
    assert "template" in body["details"]
