"""admin gateway

Revision ID: 0001_admin_gateway
Revises: 
Create Date: 2026-10-12 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_admin_gateway"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    # Identity provider boundary used by the database-backed provider.
    op.create_table(
        "identity_users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("email_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sign_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("user_metadata", postgresql.JSONB(), nullable=True),
        sa.Column("app_metadata", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_identity_users_email", "identity_users", ["email"], unique=True)

    op.create_table(
        "access_tokens",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("identity_users.id"), nullable=False),
        sa.Column("token_prefix", sa.String(), nullable=False),
        sa.Column("token_hash", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_access_tokens_user_id", "access_tokens", ["user_id"])
    op.create_index("ix_access_tokens_token_hash", "access_tokens", ["token_hash"], unique=True)

    op.create_table(
        "user_roles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )
    op.create_index("ix_user_roles_user_id", "user_roles", ["user_id"])

    # Tenant data shared with the customer-facing product.
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("business_name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("account_status", sa.String(), nullable=False, server_default="trial"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_ends_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_organizations_slug", "organizations", ["slug"], unique=True)

    op.create_table(
        "user_organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        _created_at(),
        sa.UniqueConstraint("user_id", "organization_id", name="uq_user_organizations_member"),
    )
    op.create_index("ix_user_organizations_user_id", "user_organizations", ["user_id"])
    op.create_index("ix_user_organizations_organization_id", "user_organizations", ["organization_id"])

    op.create_table(
        "profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("avatar_url", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("job_title", sa.String(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"])

    op.create_table(
        "billing_profiles",
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), primary_key=True),
        sa.Column("subscription_plan", sa.String(), nullable=True),
        sa.Column("subscription_status", sa.String(), nullable=False, server_default="active"),
        sa.Column("is_sponsored", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sponsored_reason", sa.String(), nullable=True),
        _updated_at(),
    )

    op.create_table(
        "listings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("property_type", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("price", sa.Numeric(14, 2), nullable=True),
        _created_at(),
    )
    op.create_index("ix_listings_organization_id", "listings", ["organization_id"])

    # Credit ledger and the materialized per-organization balance.
    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("balance_after", sa.Numeric(14, 2), nullable=True),
        _created_at(),
        sa.UniqueConstraint("organization_id", "idempotency_key", name="uq_credit_transactions_idem"),
    )
    op.create_index("ix_credit_transactions_organization_id", "credit_transactions", ["organization_id"])
    op.create_index(
        "ix_credit_transactions_org_created", "credit_transactions", ["organization_id", "created_at"]
    )

    op.create_table(
        "organization_credit_balances",
        sa.Column("organization_id", sa.String(), sa.ForeignKey("organizations.id"), primary_key=True),
        sa.Column("balance", sa.Numeric(14, 2), nullable=False, server_default="0"),
        _updated_at(),
    )

    # Gateway-owned tables.
    op.create_table(
        "admin_audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=True),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("before_state", postgresql.JSONB(), nullable=True),
        sa.Column("after_state", postgresql.JSONB(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_admin_audit_log_actor_id", "admin_audit_log", ["actor_id"])
    op.create_index("ix_admin_audit_log_action_type", "admin_audit_log", ["action_type"])
    op.create_index("ix_admin_audit_log_target_id", "admin_audit_log", ["target_id"])
    op.create_index("ix_admin_audit_log_created_at", "admin_audit_log", ["created_at"])
    # Backs the per-actor rate limit on manual alert test fires.
    op.create_index(
        "ix_admin_audit_log_actor_action_created",
        "admin_audit_log",
        ["actor_id", "action_type", "created_at"],
    )

    op.create_table(
        "impersonation_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("super_admin_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_impersonation_sessions_super_admin_id", "impersonation_sessions", ["super_admin_id"])
    op.create_index("ix_impersonation_sessions_organization_id", "impersonation_sessions", ["organization_id"])
    op.create_index(
        "uq_impersonation_sessions_active_admin",
        "impersonation_sessions",
        ["super_admin_id"],
        unique=True,
        postgresql_where=sa.text("ended_at IS NULL"),
    )

    op.create_table(
        "gdpr_data_requests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("request_type", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("target_email", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("requested_by", sa.String(), nullable=False),
        _created_at(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_gdpr_data_requests_status", "gdpr_data_requests", ["status"])

    op.create_table(
        "admin_alert_rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metric_type", sa.String(), nullable=False),
        sa.Column("condition", sa.String(), nullable=False),
        sa.Column("threshold", sa.Numeric(14, 4), nullable=False),
        sa.Column("time_window_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("notification_channels", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "admin_alert_history",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("rule_id", sa.String(), nullable=True),
        sa.Column("rule_name", sa.String(), nullable=False),
        sa.Column("metric_type", sa.String(), nullable=False),
        sa.Column("metric_value", sa.Numeric(14, 4), nullable=False),
        sa.Column("threshold", sa.Numeric(14, 4), nullable=False),
        sa.Column("condition", sa.String(), nullable=False),
        sa.Column("notification_channels", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("notification_status", sa.String(), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_admin_alert_history_rule_id", "admin_alert_history", ["rule_id"])
    op.create_index("ix_admin_alert_history_triggered_at", "admin_alert_history", ["triggered_at"])

    # Keyed configuration entities.
    op.create_table(
        "discount_codes",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("discount_type", sa.String(), nullable=False, server_default="percentage"),
        sa.Column("discount_value", sa.Numeric(14, 2), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("max_uses_per_org", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("times_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("applicable_plans", postgresql.JSONB(), nullable=True),
        sa.Column("min_months", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("credit_grant_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_discount_codes_code", "discount_codes", ["code"], unique=True)

    op.create_table(
        "feature_flags",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("applies_to", sa.String(), nullable=False, server_default="all"),
        sa.Column("organization_ids", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "usage_rates",
        sa.Column("feature_type", sa.String(), primary_key=True),
        sa.Column("credits_per_use", sa.Numeric(14, 4), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _updated_at(),
    )

    op.create_table(
        "ai_instruction_sets",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("feature_type", sa.String(), nullable=False),
        sa.Column("scope", sa.String(), nullable=False, server_default="global"),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("locale", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("banned_phrases", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("tone_guidelines", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("freeform_instructions", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_ai_instruction_sets_organization_id", "ai_instruction_sets", ["organization_id"])
    op.create_index("ix_ai_instruction_sets_feature_scope", "ai_instruction_sets", ["feature_type", "scope"])

    op.create_table(
        "ai_instruction_history",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("instruction_set_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("before_state", postgresql.JSONB(), nullable=True),
        sa.Column("after_state", postgresql.JSONB(), nullable=True),
        sa.Column("changed_by", sa.String(), nullable=True),
        sa.Column("change_reason", sa.Text(), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_ai_instruction_history_instruction_set_id", "ai_instruction_history", ["instruction_set_id"])


def downgrade() -> None:
    for table in (
        "ai_instruction_history",
        "ai_instruction_sets",
        "usage_rates",
        "feature_flags",
        "discount_codes",
        "admin_alert_history",
        "admin_alert_rules",
        "gdpr_data_requests",
        "impersonation_sessions",
        "admin_audit_log",
        "organization_credit_balances",
        "credit_transactions",
        "listings",
        "billing_profiles",
        "profiles",
        "user_organizations",
        "organizations",
        "user_roles",
        "access_tokens",
        "identity_users",
    ):
        op.drop_table(table)
