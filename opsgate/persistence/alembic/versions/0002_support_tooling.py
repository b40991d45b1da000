"""support tooling

Revision ID: 0002_support_tooling
Revises: 0001_admin_gateway
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_support_tooling"
down_revision = "0001_admin_gateway"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Operator-set passwords and per-feature usage attribution.
    op.add_column("identity_users", sa.Column("password_hash", sa.String(), nullable=True))
    op.add_column("credit_transactions", sa.Column("feature", sa.String(), nullable=True))

    op.create_table(
        "admin_notes",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("target_type", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_admin_notes_target", "admin_notes", ["target_type", "target_id"])
    op.create_index("ix_admin_notes_created_at", "admin_notes", ["created_at"])

    op.create_table(
        "feature_flag_overrides",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("feature_flag_id", sa.String(), sa.ForeignKey("feature_flags.id"), nullable=False),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("state", sa.Boolean(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("feature_flag_id", "organization_id", name="uq_feature_flag_overrides_flag_org"),
    )
    op.create_index("ix_feature_flag_overrides_feature_flag_id", "feature_flag_overrides", ["feature_flag_id"])
    op.create_index("ix_feature_flag_overrides_organization_id", "feature_flag_overrides", ["organization_id"])

    op.create_table(
        "email_queue",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("to_email", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("template", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_email_queue_to_email", "email_queue", ["to_email"])
    op.create_index("ix_email_queue_status", "email_queue", ["status"])
    op.create_index("ix_email_queue_created_at", "email_queue", ["created_at"])


def downgrade() -> None:
    op.drop_table("email_queue")
    op.drop_table("feature_flag_overrides")
    op.drop_table("admin_notes")
    op.drop_column("credit_transactions", "feature")
    op.drop_column("identity_users", "password_hash")
