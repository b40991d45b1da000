from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    inspect,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in local runs and tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
Credits = Numeric(14, 2)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


def row_to_dict(row: Any) -> dict[str, Any]:
    # Snapshot mapped columns into JSON-safe values for audit states and responses.
    payload: dict[str, Any] = {}
    for attr in inspect(row).mapper.column_attrs:
        value = getattr(row, attr.key)
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = float(value)
        payload[attr.key] = value
    return payload


# Identity provider boundary tables.


class IdentityUser(Base):
    __tablename__ = "identity_users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    email: Mapped[str | None] = mapped_column(String, unique=True, index=True, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    email_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sign_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Free-form profile data; suspension flags are stored here.
    user_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    app_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # bcrypt hash set by operators; never returned by the provider.
    password_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class AccessToken(Base):
    __tablename__ = "access_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("identity_users.id"), index=True)
    # Short prefix for operator display; the secret itself is only stored hashed.
    token_prefix: Mapped[str] = mapped_column(String)
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    role: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# Tenant data read (and occasionally mutated) by the gateway.


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    business_name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    contact_email: Mapped[str | None] = mapped_column(String, nullable=True)
    account_status: Mapped[str] = mapped_column(String, default="trial")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_period_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class OrganizationMember(Base):
    __tablename__ = "user_organizations"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_user_organizations_member"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    role: Mapped[str] = mapped_column(String, default="user")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    job_title: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class BillingProfile(Base):
    __tablename__ = "billing_profiles"

    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), primary_key=True)
    subscription_plan: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_status: Mapped[str] = mapped_column(String, default="active")
    is_sponsored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sponsored_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class Listing(Base):
    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    property_type: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# Credit ledger.


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("organization_id", "idempotency_key", name="uq_credit_transactions_idem"),
        Index("ix_credit_transactions_org_created", "organization_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    # Signed: positive for grants and purchases, negative for usage.
    amount: Mapped[Decimal] = mapped_column(Credits)
    type: Mapped[str] = mapped_column(String)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    # Feature that consumed credits; set on usage rows.
    feature: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
    # Balance observed right after this transaction was applied; used for replays.
    balance_after: Mapped[Decimal | None] = mapped_column(Credits, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class OrganizationCreditBalance(Base):
    __tablename__ = "organization_credit_balances"

    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(Credits, default=Decimal("0"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# Gateway-owned tables.


class AuditLogEntry(Base):
    __tablename__ = "admin_audit_log"
    __table_args__ = (
        Index("ix_admin_audit_log_actor_action_created", "actor_id", "action_type", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    actor_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    action_type: Mapped[str] = mapped_column(String, index=True)
    target_type: Mapped[str | None] = mapped_column(String, nullable=True)
    target_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # "metadata" is reserved on declarative classes.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


class ImpersonationSession(Base):
    __tablename__ = "impersonation_sessions"
    __table_args__ = (
        # At most one open session per super admin, enforced by the store.
        Index(
            "uq_impersonation_sessions_active_admin",
            "super_admin_id",
            unique=True,
            postgresql_where=text("ended_at IS NULL"),
            sqlite_where=text("ended_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    super_admin_id: Mapped[str] = mapped_column(String, index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class GdprDataRequest(Base):
    __tablename__ = "gdpr_data_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    request_type: Mapped[str] = mapped_column(String)
    target_type: Mapped[str] = mapped_column(String)
    target_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_email: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AlertRule(Base):
    __tablename__ = "admin_alert_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metric_type: Mapped[str] = mapped_column(String)
    condition: Mapped[str] = mapped_column(String)
    threshold: Mapped[float] = mapped_column(Numeric(14, 4, asdecimal=False))
    time_window_minutes: Mapped[int] = mapped_column(Integer, default=60)
    notification_channels: Mapped[list[str]] = mapped_column(JSONType, default=list)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class AlertHistoryEntry(Base):
    __tablename__ = "admin_alert_history"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # Denormalized so history survives rule edits and deletes.
    rule_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    rule_name: Mapped[str] = mapped_column(String)
    metric_type: Mapped[str] = mapped_column(String)
    metric_value: Mapped[float] = mapped_column(Numeric(14, 4, asdecimal=False))
    threshold: Mapped[float] = mapped_column(Numeric(14, 4, asdecimal=False))
    condition: Mapped[str] = mapped_column(String)
    notification_channels: Mapped[list[str]] = mapped_column(JSONType, default=list)
    notification_status: Mapped[str] = mapped_column(String)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


# Keyed configuration entities.


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String, unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    discount_type: Mapped[str] = mapped_column(String, default="percentage")
    discount_value: Mapped[float] = mapped_column(Numeric(14, 2, asdecimal=False))
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_uses_per_org: Mapped[int] = mapped_column(Integer, default=1)
    times_used: Mapped[int] = mapped_column(Integer, default=0)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    applicable_plans: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    min_months: Mapped[int] = mapped_column(Integer, default=1)
    credit_grant_amount: Mapped[float | None] = mapped_column(Numeric(14, 2, asdecimal=False), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class FeatureFlag(Base):
    __tablename__ = "feature_flags"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # "all" or "specific_orgs".
    applies_to: Mapped[str] = mapped_column(String, default="all")
    organization_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class FeatureFlagOverride(Base):
    __tablename__ = "feature_flag_overrides"
    __table_args__ = (
        UniqueConstraint("feature_flag_id", "organization_id", name="uq_feature_flag_overrides_flag_org"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    feature_flag_id: Mapped[str] = mapped_column(String, ForeignKey("feature_flags.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    # Forced state for this organization, regardless of the flag default.
    state: Mapped[bool] = mapped_column(Boolean, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class UsageRate(Base):
    __tablename__ = "usage_rates"

    feature_type: Mapped[str] = mapped_column(String, primary_key=True)
    credits_per_use: Mapped[float] = mapped_column(Numeric(14, 4, asdecimal=False))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class AIInstructionSet(Base):
    __tablename__ = "ai_instruction_sets"
    __table_args__ = (
        Index("ix_ai_instruction_sets_feature_scope", "feature_type", "scope"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    feature_type: Mapped[str] = mapped_column(String)
    # "global" or "organization".
    scope: Mapped[str] = mapped_column(String, default="global")
    organization_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    locale: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    banned_phrases: Mapped[list[str]] = mapped_column(JSONType, default=list)
    tone_guidelines: Mapped[list[str]] = mapped_column(JSONType, default=list)
    freeform_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class AIInstructionHistory(Base):
    __tablename__ = "ai_instruction_history"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # No FK: history rows outlive the instruction set they describe.
    instruction_set_id: Mapped[str] = mapped_column(String, index=True)
    action: Mapped[str] = mapped_column(String)
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    changed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# Support tooling.


class AdminNote(Base):
    __tablename__ = "admin_notes"
    __table_args__ = (Index("ix_admin_notes_target", "target_type", "target_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    target_type: Mapped[str] = mapped_column(String)
    target_id: Mapped[str] = mapped_column(String)
    note: Mapped[str] = mapped_column(Text)
    created_by: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)


class EmailQueueItem(Base):
    __tablename__ = "email_queue"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    to_email: Mapped[str] = mapped_column(String, index=True)
    subject: Mapped[str] = mapped_column(String)
    template: Mapped[str] = mapped_column(String)
    # pending -> sent | failed; delivery is owned by the mail worker.
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
