from __future__ import annotations

from typing import Any

from sqlalchemy import case, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.domain.models import CreditTransaction, DiscountCode, FeatureFlag, Organization, UserRole
from opsgate.services.authz import REVENUE_REDACTION_REASON, Tier, allows, redact_financials
from opsgate.services.identity import Principal

GRANT_TYPES = ("grant", "purchase")
USAGE_TYPE = "usage"


async def _credit_totals(session: AsyncSession) -> dict[str, float]:
    granted, used = (
        await session.execute(
            select(
                func.coalesce(
                    func.sum(case((CreditTransaction.type.in_(GRANT_TYPES), CreditTransaction.amount), else_=0)),
                    0,
                ),
                func.coalesce(
                    func.sum(case((CreditTransaction.type == USAGE_TYPE, func.abs(CreditTransaction.amount)), else_=0)),
                    0,
                ),
            )
        )
    ).one()
    granted_value = round(float(granted), 2)
    used_value = round(float(used), 2)
    return {"granted": granted_value, "used": used_value, "balance": round(granted_value - used_value, 2)}


async def overview(session: AsyncSession, *, principal: Principal) -> dict[str, Any]:
    org_total, org_active, org_trial = (
        await session.execute(
            select(
                func.count(Organization.id),
                func.count(case((Organization.account_status == "active", 1))),
                func.count(case((Organization.account_status == "trial", 1))),
            )
        )
    ).one()
    user_total, admin_total = (
        await session.execute(
            select(
                func.count(distinct(UserRole.user_id)),
                func.count(case((UserRole.role == "admin", 1))),
            )
        )
    ).one()
    discount_total, discount_active, redemptions = (
        await session.execute(
            select(
                func.count(DiscountCode.id),
                func.count(case((DiscountCode.is_active.is_(True), 1))),
                func.coalesce(func.sum(DiscountCode.times_used), 0),
            )
        )
    ).one()
    flag_total, flag_enabled = (
        await session.execute(
            select(
                func.count(FeatureFlag.id),
                func.count(case((FeatureFlag.is_enabled.is_(True), 1))),
            )
        )
    ).one()

    # Totals are only computed for callers allowed to see them.
    credits = await _credit_totals(session) if allows(principal, Tier.SUPER_ADMIN) else None
    return {
        "organizations": {"total": int(org_total), "active": int(org_active), "trial": int(org_trial)},
        "users": {"total": int(user_total), "admins": int(admin_total)},
        "discounts": {
            "total": int(discount_total),
            "active": int(discount_active),
            "totalRedemptions": int(redemptions or 0),
        },
        "features": {"total": int(flag_total), "enabled": int(flag_enabled)},
        "credits": redact_financials(principal, credits, reason=REVENUE_REDACTION_REASON),
    }


async def recent_signups(session: AsyncSession, *, limit: int) -> list[dict[str, Any]]:
    rows = (
        await session.execute(
            select(Organization.id, Organization.business_name, Organization.account_status, Organization.created_at)
            .order_by(Organization.created_at.desc(), Organization.id)
            .limit(limit)
        )
    ).all()
    return [
        {
            "id": row.id,
            "name": row.business_name,
            "account_status": row.account_status,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]


async def feature_usage(session: AsyncSession, *, principal: Principal) -> list[dict[str, Any]]:
    feature = func.coalesce(CreditTransaction.feature, "unknown")
    total = func.sum(func.abs(CreditTransaction.amount))
    rows = (
        await session.execute(
            select(feature.label("feature"), func.count(CreditTransaction.id).label("count"), total.label("total"))
            .where(CreditTransaction.type == USAGE_TYPE)
            .group_by(feature)
            .order_by(total.desc())
        )
    ).all()
    show_credits = allows(principal, Tier.SUPER_ADMIN)
    usage: list[dict[str, Any]] = []
    for row in rows:
        entry: dict[str, Any] = {"feature": row.feature, "count": int(row.count)}
        if show_credits:
            entry["totalCredits"] = round(float(row.total or 0), 2)
        else:
            # Counts stay visible; consumed credits are hidden, never zeroed.
            entry["totalCredits"] = None
            entry["totalCreditsRedacted"] = True
        usage.append(entry)
    return usage


async def discount_stats(session: AsyncSession) -> list[dict[str, Any]]:
    rows = (
        await session.execute(
            select(
                DiscountCode.id,
                DiscountCode.code,
                DiscountCode.discount_type,
                DiscountCode.discount_value,
                DiscountCode.times_used,
                DiscountCode.max_uses,
                DiscountCode.is_active,
                DiscountCode.credit_grant_amount,
            ).order_by(DiscountCode.times_used.desc(), DiscountCode.code)
        )
    ).all()
    return [dict(row._mapping) for row in rows]
