"""initial_tracker_schema

Creates the tracker schema:
  - organisations, users, organisation_memberships
  - projects, project_memberships, resources
  - milestones, deliverables, variations, variation_milestones
  - milestone_baseline_versions (append-only history)
  - milestone_certificates, timesheets, expenses
  - audit_logs

Revision ID: 7c1e0a9d4b21
Revises:
Create Date: 2026-10-17 09:12:40.118532
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c1e0a9d4b21'
down_revision = None
branch_labels = None
depends_on = None


def _signer(prefix):
    return [
        sa.Column(f"{prefix}_signed_by_id", sa.Integer(),
                  sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column(f"{prefix}_signer_name", sa.String(length=200), nullable=True),
        sa.Column(f"{prefix}_signed_at", sa.DateTime(), nullable=True),
    ]


def _dual_signature(prefix=""):
    return _signer(f"{prefix}supplier") + _signer(f"{prefix}customer")


def _tombstone():
    return [
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_by_id", sa.Integer(),
                  sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    ]


def _project_fk():
    return sa.Column("project_id", sa.Integer(),
                     sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)


def _single_approval():
    return _signer("approver") + [
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.Integer(),
                  sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("resource_id", sa.Integer(),
                  sa.ForeignKey("resources.id", ondelete="SET NULL"), nullable=True),
    ]


def _index_tombstone(table):
    op.create_index(f"ix_{table}_is_deleted", table, ["is_deleted"])


def upgrade():
    # ── Tenancy ───────────────────────────────────────────────────────────
    op.create_table(
        "organisations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("subscription_tier", sa.String(length=30), nullable=False,
                  server_default="free", comment="free | starter | professional | enterprise"),
        sa.Column("settings", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=200), nullable=False, unique=True),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("is_system_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_table(
        "organisation_memberships",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organisation_id", sa.Integer(),
                  sa.ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(),
                  sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("org_role", sa.String(length=30), nullable=False, server_default="org_member"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("joined_at", sa.DateTime(), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("organisation_id", "user_id", name="uq_org_membership"),
    )
    op.create_index("ix_organisation_memberships_organisation_id",
                    "organisation_memberships", ["organisation_id"])
    op.create_index("ix_organisation_memberships_user_id", "organisation_memberships", ["user_id"])

    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organisation_id", sa.Integer(),
                  sa.ForeignKey("organisations.id", ondelete="CASCADE"), nullable=True),
        sa.Column("reference", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("budget", sa.Numeric(14, 2), nullable=True),
        sa.Column("settings", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("organisation_id", "reference", name="uq_project_org_reference"),
    )
    op.create_index("ix_projects_organisation_id", "projects", ["organisation_id"])

    op.create_table(
        "project_memberships",
        sa.Column("id", sa.Integer(), primary_key=True),
        _project_fk(),
        sa.Column("user_id", sa.Integer(),
                  sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=30), nullable=False, server_default="viewer"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("project_id", "user_id", name="uq_project_membership"),
    )
    op.create_index("ix_project_memberships_project_id", "project_memberships", ["project_id"])
    op.create_index("ix_project_memberships_user_id", "project_memberships", ["user_id"])

    op.create_table(
        "resources",
        sa.Column("id", sa.Integer(), primary_key=True),
        _project_fk(),
        sa.Column("user_id", sa.Integer(),
                  sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=200), nullable=True),
        sa.Column("role_title", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_resources_project_id", "resources", ["project_id"])
    op.create_index("ix_resources_user_id", "resources", ["user_id"])

    # ── Milestones & deliverables ─────────────────────────────────────────
    op.create_table(
        "milestones",
        sa.Column("id", sa.Integer(), primary_key=True),
        _project_fk(),
        sa.Column("milestone_ref", sa.String(length=30), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("forecast_end_date", sa.Date(), nullable=True),
        sa.Column("billable", sa.Numeric(14, 2), nullable=True),
        sa.Column("baseline_start_date", sa.Date(), nullable=True),
        sa.Column("baseline_end_date", sa.Date(), nullable=True),
        sa.Column("baseline_billable", sa.Numeric(14, 2), nullable=True),
        sa.Column("baseline_status", sa.String(length=30), nullable=False, server_default="draft",
                  comment="draft | awaiting_supplier_sign | awaiting_customer_sign | locked"),
        *_dual_signature("baseline_"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        *_tombstone(),
        sa.UniqueConstraint("project_id", "milestone_ref", name="uq_milestone_project_ref"),
    )
    op.create_index("ix_milestones_project_id", "milestones", ["project_id"])
    _index_tombstone("milestones")

    op.create_table(
        "deliverables",
        sa.Column("id", sa.Integer(), primary_key=True),
        _project_fk(),
        sa.Column("milestone_id", sa.Integer(),
                  sa.ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True),
        sa.Column("deliverable_ref", sa.String(length=30), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="not_started"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        *_dual_signature(),
        *_tombstone(),
    )
    op.create_index("ix_deliverables_project_id", "deliverables", ["project_id"])
    op.create_index("ix_deliverables_milestone_id", "deliverables", ["milestone_id"])
    _index_tombstone("deliverables")

    # ── Variations & baseline history ─────────────────────────────────────
    op.create_table(
        "variations",
        sa.Column("id", sa.Integer(), primary_key=True),
        _project_fk(),
        sa.Column("variation_ref", sa.String(length=20), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("variation_type", sa.String(length=30), nullable=False, server_default="combined"),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="draft"),
        sa.Column("total_cost_impact", sa.Numeric(14, 2), nullable=True),
        sa.Column("total_days_impact", sa.Integer(), nullable=True),
        sa.Column("created_by_id", sa.Integer(),
                  sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("applied_at", sa.DateTime(), nullable=True),
        sa.Column("certificate_number", sa.String(length=50), nullable=True),
        sa.Column("rejected_by_id", sa.Integer(),
                  sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        *_dual_signature(),
        *_tombstone(),
        sa.UniqueConstraint("project_id", "variation_ref", name="uq_variation_project_ref"),
    )
    op.create_index("ix_variations_project_id", "variations", ["project_id"])
    _index_tombstone("variations")

    op.create_table(
        "variation_milestones",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("variation_id", sa.Integer(),
                  sa.ForeignKey("variations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("milestone_id", sa.Integer(),
                  sa.ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False),
        sa.Column("cost_delta", sa.Numeric(14, 2), nullable=True),
        sa.Column("start_delta_days", sa.Integer(), nullable=True),
        sa.Column("end_delta_days", sa.Integer(), nullable=True),
        sa.Column("rationale", sa.Text(), nullable=True),
        sa.Column("baseline_version_before", sa.Integer(), nullable=True),
        sa.Column("baseline_version_after", sa.Integer(), nullable=True),
        sa.UniqueConstraint("variation_id", "milestone_id", name="uq_variation_milestone"),
    )
    op.create_index("ix_variation_milestones_variation_id", "variation_milestones", ["variation_id"])
    op.create_index("ix_variation_milestones_milestone_id", "variation_milestones", ["milestone_id"])

    op.create_table(
        "milestone_baseline_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("milestone_id", sa.Integer(),
                  sa.ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("variation_id", sa.Integer(),
                  sa.ForeignKey("variations.id", ondelete="RESTRICT"), nullable=True,
                  comment="NULL only for version 1 (original baseline)"),
        sa.Column("baseline_start_date", sa.Date(), nullable=True),
        sa.Column("baseline_end_date", sa.Date(), nullable=True),
        sa.Column("baseline_billable", sa.Numeric(14, 2), nullable=True),
        sa.Column("start_delta_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("end_delta_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_delta", sa.Numeric(14, 2), nullable=False, server_default="0"),
        *_dual_signature(),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("milestone_id", "version", name="uq_baseline_milestone_version"),
        sa.UniqueConstraint("milestone_id", "variation_id", name="uq_baseline_milestone_variation"),
    )
    op.create_index("idx_baseline_milestone", "milestone_baseline_versions", ["milestone_id"])

    # ── Certificates, timesheets, expenses ───────────────────────────────
    op.create_table(
        "milestone_certificates",
        sa.Column("id", sa.Integer(), primary_key=True),
        _project_fk(),
        sa.Column("milestone_id", sa.Integer(),
                  sa.ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False),
        sa.Column("certificate_number", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("payment_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("created_by_id", sa.Integer(),
                  sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("accepted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        *_dual_signature(),
        *_tombstone(),
    )
    op.create_index("ix_milestone_certificates_project_id", "milestone_certificates", ["project_id"])
    op.create_index("ix_milestone_certificates_milestone_id", "milestone_certificates", ["milestone_id"])
    _index_tombstone("milestone_certificates")

    op.create_table(
        "timesheets",
        sa.Column("id", sa.Integer(), primary_key=True),
        _project_fk(),
        sa.Column("milestone_id", sa.Integer(),
                  sa.ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("hours", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        *_single_approval(),
        *_tombstone(),
    )
    op.create_index("ix_timesheets_project_id", "timesheets", ["project_id"])
    op.create_index("ix_timesheets_resource_id", "timesheets", ["resource_id"])
    _index_tombstone("timesheets")

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        _project_fk(),
        sa.Column("expense_date", sa.Date(), nullable=False),
        sa.Column("category", sa.String(length=30), nullable=False, server_default="travel"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("chargeable_to_customer", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        *_single_approval(),
        *_tombstone(),
    )
    op.create_index("ix_expenses_project_id", "expenses", ["project_id"])
    op.create_index("ix_expenses_resource_id", "expenses", ["resource_id"])
    _index_tombstone("expenses")

    # ── Audit ─────────────────────────────────────────────────────────────
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organisation_id", sa.Integer(),
                  sa.ForeignKey("organisations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("project_id", sa.Integer(),
                  sa.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True),
        sa.Column("entity_type", sa.String(length=30), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("action", sa.String(length=60), nullable=False),
        sa.Column("actor_user_id", sa.Integer(),
                  sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("diff_json", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_organisation_id", "audit_logs", ["organisation_id"])
    op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])
    op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("idx_audit_project", "audit_logs", ["project_id"])
    op.create_index("idx_audit_action", "audit_logs", ["action"])
    op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    for table in (
        "audit_logs",
        "expenses",
        "timesheets",
        "milestone_certificates",
        "milestone_baseline_versions",
        "variation_milestones",
        "variations",
        "deliverables",
        "milestones",
        "resources",
        "project_memberships",
        "projects",
        "organisation_memberships",
        "users",
        "organisations",
    ):
        op.drop_table(table)
