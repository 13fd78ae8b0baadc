"""decision_approval_engine_schema

Create decision log, approval / e-signature and audit tables.

Revision ID: 7e1d0c2a9b41
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7e1d0c2a9b41"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "decisions" not in existing_tables:
        op.create_table(
            "decisions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=True),
            sa.Column("owner_id", sa.String(length=150), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("summary", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("phase", sa.String(length=20), nullable=False, server_default="design"),
            sa.Column("approver_id", sa.String(length=150), nullable=True),
            sa.Column("approver_name", sa.String(length=255), nullable=True),
            sa.Column("approver_email", sa.String(length=255), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("recommended_option_id", sa.String(length=36), nullable=True),
            sa.Column("selected_option_id", sa.String(length=36), nullable=True),
            sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("signer_name", sa.String(length=255), nullable=True),
            sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_decisions_project_id", "decisions", ["project_id"])
        op.create_index("ix_decisions_approver_id", "decisions", ["approver_id"])
        op.create_index("ix_decision_status_phase", "decisions", ["status", "phase"])

    if "decision_options" not in existing_tables:
        op.create_table(
            "decision_options",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("decision_id", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("media_urls", sa.JSON(), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["decision_id"], ["decisions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_decision_options_decision_id", "decision_options", ["decision_id"])

    if "cost_impacts" not in existing_tables:
        op.create_table(
            "cost_impacts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("option_id", sa.String(length=36), nullable=False),
            sa.Column("label", sa.String(length=255), nullable=False),
            sa.Column("amount_minor_units", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.CheckConstraint("amount_minor_units >= 0", name="ck_cost_impact_amount_non_negative"),
            sa.ForeignKeyConstraint(["option_id"], ["decision_options.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_cost_impacts_option_id", "cost_impacts", ["option_id"])

    if "decision_comments" not in existing_tables:
        op.create_table(
            "decision_comments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("decision_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=150), nullable=False),
            sa.Column("user_name", sa.String(length=255), nullable=True),
            sa.Column("body", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["decision_id"], ["decisions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_decision_comments_decision_id", "decision_comments", ["decision_id"])

    if "decision_versions" not in existing_tables:
        op.create_table(
            "decision_versions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("decision_id", sa.String(length=36), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("snapshot", sa.JSON(), nullable=False),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["decision_id"], ["decisions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("decision_id", "version_number", name="uq_decision_version_number"),
        )
        op.create_index("ix_decision_versions_decision_id", "decision_versions", ["decision_id"])

    if "approvals" not in existing_tables:
        op.create_table(
            "approvals",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("owner_id", sa.String(length=150), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("decision_id", sa.String(length=36), nullable=True),
            sa.Column("signs_decision", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["decision_id"], ["decisions.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approvals_decision_id", "approvals", ["decision_id"])

    if "approval_workflow_configs" not in existing_tables:
        op.create_table(
            "approval_workflow_configs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("approval_id", sa.String(length=36), nullable=False),
            sa.Column("require_signers", sa.JSON(), nullable=False),
            sa.Column("approval_type", sa.String(length=20), nullable=False, server_default="e_sign"),
            sa.Column("approval_order", sa.String(length=20), nullable=False, server_default="sequential"),
            sa.Column("legal_text", sa.Text(), nullable=True),
            sa.Column("due_in_days", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["approval_id"], ["approvals.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("approval_id"),
        )

    if "approval_signers" not in existing_tables:
        op.create_table(
            "approval_signers",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("approval_id", sa.String(length=36), nullable=False),
            sa.Column("signer_id", sa.String(length=255), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("state", sa.String(length=20), nullable=False, server_default="waiting"),
            sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["approval_id"], ["approvals.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("approval_id", "signer_id", name="uq_approval_signer"),
        )
        op.create_index("ix_approval_signers_approval_id", "approval_signers", ["approval_id"])
        op.create_index("ix_approval_signer_state", "approval_signers", ["state", "due_at"])

    if "signature_captures" not in existing_tables:
        op.create_table(
            "signature_captures",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("approval_id", sa.String(length=36), nullable=False),
            sa.Column("signer_id", sa.String(length=255), nullable=False),
            sa.Column("capture_type", sa.String(length=20), nullable=False),
            sa.Column("signature_type", sa.String(length=10), nullable=True),
            sa.Column("signature_data", sa.Text(), nullable=True),
            sa.Column("legal_text_accepted", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("legal_text_snapshot", sa.Text(), nullable=True),
            sa.Column("ip_address", sa.String(length=45), nullable=True),
            sa.Column("signed_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("document_url", sa.String(length=1000), nullable=True),
            sa.Column("file_name", sa.String(length=255), nullable=True),
            sa.ForeignKeyConstraint(["approval_id"], ["approvals.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("approval_id", "signer_id", name="uq_signature_per_signer"),
        )
        op.create_index("ix_signature_captures_approval_id", "signature_captures", ["approval_id"])

    if "audit_entries" not in existing_tables:
        op.create_table(
            "audit_entries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=20), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=40), nullable=False),
            sa.Column("actor_id", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("actor_name", sa.String(length=255), nullable=True),
            sa.Column("actor_ip", sa.String(length=45), nullable=True),
            sa.Column("details", sa.Text(), nullable=True),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_entries", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_entries", ["actor_id"])
        op.create_index("idx_audit_action", "audit_entries", ["action"])
        op.create_index("idx_audit_ts", "audit_entries", ["created_at"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    # Children before parents.
    for table in (
        "audit_entries",
        "signature_captures",
        "approval_signers",
        "approval_workflow_configs",
        "approvals",
        "decision_versions",
        "decision_comments",
        "cost_impacts",
        "decision_options",
        "decisions",
    ):
        if table in existing_tables:
            op.drop_table(table)
