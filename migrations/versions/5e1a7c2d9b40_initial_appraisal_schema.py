"""initial_appraisal_schema

Creates the appraisal engine tables:
  - departments          — organisation tree (root → department → subdepartment)
  - rubric_templates     — rubric catalog root, with domains / standards / kpis
  - department_roles     — (department, role) pair owning a workflow
  - workflow_steps       — ordered approval chain of a department role
  - assessments          — one per (subject, period), versioned for optimistic locking
  - assessment_events    — append-only transition trail

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 5e1a7c2d9b40
Revises:
Create Date: 2026-10-19 09:12:44.518203
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5e1a7c2d9b40'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Department ────────────────────────────────────────────────────────
    if "departments" not in existing:
        op.create_table(
            "departments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("parent_id", sa.Integer(), nullable=True),
            sa.Column(
                "hierarchy_level", sa.String(length=20), nullable=False,
                server_default="department",
                comment="root | department | subdepartment",
            ),
            *_timestamps(),
            sa.ForeignKeyConstraint(["parent_id"], ["departments.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_departments_parent_id", "departments", ["parent_id"])

    # ── Rubric catalog ────────────────────────────────────────────────────
    if "rubric_templates" not in existing:
        op.create_table(
            "rubric_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("department_id", sa.Integer(), nullable=True),
            sa.Column("is_global", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "rubric_domains" not in existing:
        op.create_table(
            "rubric_domains",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("weight", sa.Float(), nullable=False, server_default="0",
                      comment="Percentage of overall score"),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["template_id"], ["rubric_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_rubric_domains_template_id", "rubric_domains", ["template_id"])

    if "rubric_standards" not in existing:
        op.create_table(
            "rubric_standards",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("domain_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["domain_id"], ["rubric_domains.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_rubric_standards_domain_id", "rubric_standards", ["domain_id"])

    if "rubric_kpis" not in existing:
        op.create_table(
            "rubric_kpis",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("standard_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=300), nullable=False),
            sa.Column("rubric_level_1", sa.Text(), nullable=False),
            sa.Column("rubric_level_2", sa.Text(), nullable=False),
            sa.Column("rubric_level_3", sa.Text(), nullable=False),
            sa.Column("rubric_level_4", sa.Text(), nullable=False),
            sa.Column("evidence_guidance", sa.Text(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["standard_id"], ["rubric_standards.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_rubric_kpis_standard_id", "rubric_kpis", ["standard_id"])

    # ── Workflow configuration ────────────────────────────────────────────
    if "department_roles" not in existing:
        op.create_table(
            "department_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("department_id", sa.Integer(), nullable=True,
                      comment="NULL for organisation-wide roles"),
            sa.Column("role", sa.String(length=20), nullable=False,
                      comment="staff | supervisor | manager | director | admin"),
            sa.Column("default_template_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=200), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["default_template_id"], ["rubric_templates.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("department_id", "role", name="uq_department_role"),
        )
        op.create_index("ix_department_roles_department_id", "department_roles", ["department_id"])

    if "workflow_steps" not in existing:
        op.create_table(
            "workflow_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("department_role_id", sa.Integer(), nullable=False),
            sa.Column("step_order", sa.Integer(), nullable=False),
            sa.Column("approver_role", sa.String(length=20), nullable=False),
            sa.Column("step_type", sa.String(length=30), nullable=False,
                      comment="review | approval | review_and_approval | acknowledge"),
            sa.ForeignKeyConstraint(["department_role_id"], ["department_roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("department_role_id", "step_order", name="uq_workflow_step_order"),
        )
        op.create_index("ix_workflow_steps_department_role_id", "workflow_steps", ["department_role_id"])

    # ── Assessments ───────────────────────────────────────────────────────
    if "assessments" not in existing:
        op.create_table(
            "assessments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("subject_id", sa.String(length=64), nullable=False),
            sa.Column("period", sa.String(length=50), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("department_role_id", sa.Integer(), nullable=True,
                      comment="Workflow resolved at submission time"),
            sa.Column("status", sa.String(length=40), nullable=False, server_default="draft"),
            sa.Column("current_step_index", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("scores", sa.JSON(), nullable=False),
            sa.Column("evidence", sa.JSON(), nullable=False),
            sa.Column("layer_scores", sa.JSON(), nullable=False),
            sa.Column("final_score", sa.Float(), nullable=True),
            sa.Column("final_grade", sa.String(length=40), nullable=True),
            sa.Column("final_bonus_percent", sa.Integer(), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("acknowledgement_note", sa.Text(), nullable=True),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["template_id"], ["rubric_templates.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["department_role_id"], ["department_roles.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("subject_id", "period", name="uq_assessment_subject_period"),
        )
        op.create_index("ix_assessments_subject_id", "assessments", ["subject_id"])
        op.create_index("ix_assessment_status", "assessments", ["status"])

    if "assessment_events" not in existing:
        op.create_table(
            "assessment_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("assessment_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False,
                      comment="create | submit | advance | reject | release | acknowledge"),
            sa.Column("from_status", sa.String(length=40), nullable=True),
            sa.Column("to_status", sa.String(length=40), nullable=False),
            sa.Column("from_step", sa.Integer(), nullable=True),
            sa.Column("to_step", sa.Integer(), nullable=True),
            sa.Column("actor_id", sa.String(length=64), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["assessment_id"], ["assessments.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_assessment_events_assessment_id", "assessment_events", ["assessment_id"])


def downgrade():
    for table in (
        "assessment_events",
        "assessments",
        "workflow_steps",
        "department_roles",
        "rubric_kpis",
        "rubric_standards",
        "rubric_domains",
        "rubric_templates",
        "departments",
    ):
        op.drop_table(table)
