from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.core.config import Settings
from opsgate.core.errors import NotFound, ValidationFailed
from opsgate.domain.models import (
    AIInstructionSet,
    BillingProfile,
    CreditTransaction,
    FeatureFlag,
    FeatureFlagOverride,
    Listing,
    Organization,
    OrganizationCreditBalance,
    OrganizationMember,
    row_to_dict,
    utc_now,
)
from opsgate.services.audit import AuditTrail
from opsgate.services.authz import Tier, allows
from opsgate.services.identity import DEVELOPER, SUPER_ADMIN, Principal


logger = logging.getLogger(__name__)

PLANS = ("starter", "pro")
ACTIVE_LISTING_STATUS = "For Sale"
DETAIL_USER_LIMIT = 10

# Tenant rows removed together with their organization, children first.
_DEPENDENT_TABLES = (
    FeatureFlagOverride,
    OrganizationMember,
    Listing,
    BillingProfile,
    CreditTransaction,
    OrganizationCreditBalance,
    AIInstructionSet,
)


def _matches(column, term: str):
    return func.lower(column).contains(term.lower(), autoescape=True)


async def _get_org(session: AsyncSession, organization_id: str) -> Organization:
    org = await session.get(Organization, organization_id)
    if org is None:
        raise NotFound("Organization not found", organization_id=organization_id)
    return org


async def _counts_by_org(session: AsyncSession, column, org_ids: list[str]) -> dict[str, int]:
    rows = (
        await session.execute(
            select(column, func.count()).where(column.in_(org_ids)).group_by(column)
        )
    ).all()
    return {org_id: int(count) for org_id, count in rows}


async def list_organizations(
    session: AsyncSession,
    *,
    principal: Principal,
    search: str | None = None,
    status: str | None = None,
    page: int = 0,
    page_size: int = 20,
) -> dict[str, Any]:
    conditions = []
    if search:
        conditions.append(
            or_(
                _matches(Organization.business_name, search),
                _matches(Organization.slug, search),
                _matches(Organization.contact_email, search),
            )
        )
    if status == "active":
        conditions.append(Organization.is_active.is_(True))
    elif status == "inactive":
        conditions.append(Organization.is_active.is_(False))

    total = int(
        await session.scalar(select(func.count()).select_from(Organization).where(*conditions)) or 0
    )
    orgs = (
        await session.execute(
            select(Organization)
            .where(*conditions)
            .order_by(Organization.created_at.desc())
            .offset(page * page_size)
            .limit(page_size)
        )
    ).scalars().all()
    if not orgs:
        return {"organizations": [], "total": total}

    org_ids = [org.id for org in orgs]
    user_counts = await _counts_by_org(session, OrganizationMember.organization_id, org_ids)
    listing_counts = await _counts_by_org(session, Listing.organization_id, org_ids)
    is_super_admin = allows(principal, Tier.SUPER_ADMIN)
    balances: dict[str, float] = {}
    if is_super_admin:
        balance_rows = (
            await session.execute(
                select(OrganizationCreditBalance).where(
                    OrganizationCreditBalance.organization_id.in_(org_ids)
                )
            )
        ).scalars().all()
        balances = {row.organization_id: float(row.balance) for row in balance_rows}

    organizations = []
    for org in orgs:
        item = row_to_dict(org)
        item["user_count"] = user_counts.get(org.id, 0)
        item["listing_count"] = listing_counts.get(org.id, 0)
        # Null plus an explicit flag, so a hidden balance never reads as zero.
        item["credit_balance"] = balances.get(org.id, 0.0) if is_super_admin else None
        item["credit_balance_redacted"] = not is_super_admin
        organizations.append(item)
    return {"organizations": organizations, "total": total}


async def get_detail(session: AsyncSession, *, organization_id: str) -> dict[str, Any]:
    org = await _get_org(session, organization_id)
    users = await session.scalar(
        select(func.count())
        .select_from(OrganizationMember)
        .where(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.role.not_in([SUPER_ADMIN, DEVELOPER]),
        )
    )
    listings = await session.scalar(
        select(func.count()).select_from(Listing).where(Listing.organization_id == organization_id)
    )
    active_listings = await session.scalar(
        select(func.count())
        .select_from(Listing)
        .where(Listing.organization_id == organization_id, Listing.status == ACTIVE_LISTING_STATUS)
    )
    members = (
        await session.execute(
            select(OrganizationMember)
            .where(OrganizationMember.organization_id == organization_id)
            .limit(DETAIL_USER_LIMIT)
        )
    ).scalars().all()
    billing = await session.get(BillingProfile, organization_id)
    return {
        "organization": row_to_dict(org),
        "stats": {
            "users": int(users or 0),
            "listings": int(listings or 0),
            "activeListings": int(active_listings or 0),
        },
        "users": [
            {
                "user_id": member.user_id,
                "role": member.role,
                "created_at": member.created_at.isoformat() if member.created_at else None,
            }
            for member in members
        ],
        "billing_profile": row_to_dict(billing) if billing is not None else None,
    }


async def get_billing(session: AsyncSession, *, organization_id: str) -> dict[str, Any]:
    org = await _get_org(session, organization_id)
    billing = await session.get(BillingProfile, organization_id)
    return {
        "organization_id": organization_id,
        "organization_name": org.business_name,
        "account_status": org.account_status,
        "trial_ends_at": org.trial_ends_at.isoformat() if org.trial_ends_at else None,
        "grace_period_ends_at": org.grace_period_ends_at.isoformat() if org.grace_period_ends_at else None,
        "billing_profile": row_to_dict(billing) if billing is not None else None,
    }


async def change_plan(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    organization_id: str,
    plan: str,
    is_sponsored: bool | None,
    sponsored_reason: str | None,
    actor: Principal,
) -> dict[str, Any]:
    if plan not in PLANS:
        raise ValidationFailed("Invalid plan. Must be 'starter' or 'pro'", field="plan", allowed=list(PLANS))
    org = await _get_org(session, organization_id)

    billing = await session.get(BillingProfile, organization_id)
    before = {
        "subscription_plan": billing.subscription_plan if billing else None,
        "is_sponsored": bool(billing.is_sponsored) if billing else False,
        "sponsored_reason": billing.sponsored_reason if billing else None,
    }
    sponsored = bool(is_sponsored)
    after = {
        "subscription_plan": plan,
        "is_sponsored": sponsored,
        "sponsored_reason": (sponsored_reason or None) if sponsored else None,
    }
    if billing is None:
        billing = BillingProfile(organization_id=organization_id, subscription_status="active")
        session.add(billing)
    billing.subscription_plan = after["subscription_plan"]
    billing.is_sponsored = after["is_sponsored"]
    billing.sponsored_reason = after["sponsored_reason"]
    billing.updated_at = utc_now()
    await session.commit()

    logger.info("plan_changed organization_id=%s plan=%s", organization_id, plan)
    await audit.record(
        actor_id=actor.user_id,
        action_type="change_plan",
        target_type="organization",
        target_id=organization_id,
        before=before,
        after=after,
        metadata={"organization_name": org.business_name},
    )
    return {
        "success": True,
        "organization_id": organization_id,
        "previous_plan": before["subscription_plan"],
        "new_plan": plan,
        "is_sponsored": after["is_sponsored"],
        "sponsored_reason": after["sponsored_reason"],
    }


async def _delete_one(session: AsyncSession, org: Organization) -> dict[str, int]:
    # Runs inside the caller's transaction; nothing is committed here.
    removed: dict[str, int] = {}
    for model in _DEPENDENT_TABLES:
        result = await session.execute(
            delete(model)
            .where(model.organization_id == org.id)
            .execution_options(synchronize_session=False)
        )
        removed[model.__tablename__] = int(result.rowcount or 0)

    # Flags target organizations through a JSON list rather than a column.
    flags = (
        await session.execute(select(FeatureFlag).where(FeatureFlag.applies_to == "specific_orgs"))
    ).scalars().all()
    for flag in flags:
        if org.id in (flag.organization_ids or []):
            flag.organization_ids = [value for value in flag.organization_ids if value != org.id]

    await session.delete(org)
    await session.flush()
    return removed


async def delete_organizations(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    organization_ids: list[str],
    actor: Principal,
    settings: Settings,
) -> dict[str, Any]:
    if not organization_ids:
        raise ValidationFailed("organizationIds array is required", field="organizationIds")
    if len(organization_ids) > settings.bulk_organization_max_items:
        raise ValidationFailed(
            f"Maximum {settings.bulk_organization_max_items} organizations per delete request",
            field="organizationIds",
        )

    results: list[dict[str, Any]] = []
    for org_id in organization_ids:
        org = await session.get(Organization, org_id)
        if org is None:
            results.append({"orgId": org_id, "success": False, "error": "Organization not found"})
            continue
        before = {"id": org.id, "business_name": org.business_name, "slug": org.slug}
        try:
            removed = await _delete_one(session, org)
            await session.commit()
        except SQLAlchemyError as exc:
            # Whole organization rolls back; no partially deleted tenant is left behind.
            await session.rollback()
            logger.error("organization_delete_failed organization_id=%s", org_id, exc_info=exc)
            results.append({"orgId": org_id, "success": False, "error": "Failed to delete organization"})
            continue

        logger.info("organization_deleted organization_id=%s removed=%s", org_id, removed)
        await audit.record(
            actor_id=actor.user_id,
            action_type="delete_organization",
            target_type="organization",
            target_id=org_id,
            before=before,
            after=None,
            metadata={"removed_rows": removed},
        )
        results.append({"orgId": org_id, "success": True})

    success_count = sum(1 for result in results if result["success"])
    return {
        "success": success_count == len(results),
        "message": f"Deleted {success_count} of {len(organization_ids)} organizations",
        "results": results,
    }
