from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.core.config import Settings
from opsgate.core.errors import Conflict, DependencyFailure, NotFound, ValidationFailed
from opsgate.domain.models import (
    CreditTransaction,
    GdprDataRequest,
    Listing,
    Organization,
    OrganizationMember,
    Profile,
    new_id,
    row_to_dict,
    utc_now,
)
from opsgate.persistence.repos import audit as audit_repo
from opsgate.services.audit import AuditTrail, to_jsonable
from opsgate.services.identity import IdentityProvider, Principal


logger = logging.getLogger(__name__)

REQUEST_TYPES = ("data_export", "data_deletion", "access_request")
TARGET_TYPES = ("user", "organization")
EXPORTABLE_TYPES = ("data_export", "access_request")

_TERMINAL_STATUS = {"complete": "completed", "reject": "rejected"}


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


async def list_requests(session: AsyncSession, *, status: str | None = None) -> list[dict[str, Any]]:
    stmt = select(GdprDataRequest).order_by(GdprDataRequest.created_at.desc())
    if status:
        stmt = stmt.where(GdprDataRequest.status == status)
    rows = (await session.execute(stmt)).scalars().all()
    return [row_to_dict(row) for row in rows]


async def create_request(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    request_type: str,
    target_type: str,
    target_id: str | None,
    target_email: str | None,
    notes: str | None,
    actor: Principal,
) -> dict[str, Any]:
    if request_type not in REQUEST_TYPES:
        raise ValidationFailed("Invalid request type", field="request_type", allowed=list(REQUEST_TYPES))
    if target_type not in TARGET_TYPES:
        raise ValidationFailed("Invalid target type", field="target_type", allowed=list(TARGET_TYPES))
    resolved_id = _clean(target_id)
    resolved_email = _clean(target_email)
    if resolved_id is None and resolved_email is None:
        raise ValidationFailed("Either target ID or target email is required", field="target_id")

    row = GdprDataRequest(
        id=new_id(),
        request_type=request_type,
        target_type=target_type,
        target_id=resolved_id,
        target_email=resolved_email,
        notes=_clean(notes),
        status="pending",
        requested_by=actor.user_id,
    )
    session.add(row)
    await session.commit()
    logger.info("gdpr_request_created request_id=%s request_type=%s", row.id, request_type)
    await audit.record(
        actor_id=actor.user_id,
        action_type="create_gdpr_request",
        target_type="gdpr_request",
        target_id=row.id,
        after=row,
    )
    return row_to_dict(row)


async def process_request(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    request_id: str,
    action: str,
    reason: str | None,
    actor: Principal,
) -> dict[str, Any]:
    new_status = _TERMINAL_STATUS.get(action)
    if new_status is None:
        raise ValidationFailed("Invalid action. Must be 'complete' or 'reject'", field="action")

    row = await session.get(GdprDataRequest, request_id)
    if row is None:
        raise NotFound("GDPR request not found", request_id=request_id)
    # Terminal states are final; the stored status is authoritative.
    if row.status != "pending":
        raise Conflict(
            f"GDPR request is already {row.status}",
            code="GDPR_REQUEST_CLOSED",
            status=row.status,
        )

    previous_status = row.status
    values: dict[str, Any] = {"status": new_status, "completed_at": utc_now()}
    if action == "reject" and reason:
        values["rejection_reason"] = reason
    # Conditional on the pending status so two racing calls cannot both close it.
    result = await session.execute(
        update(GdprDataRequest)
        .where(GdprDataRequest.id == request_id, GdprDataRequest.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise Conflict("GDPR request is no longer pending", code="GDPR_REQUEST_CLOSED")
    await session.commit()

    logger.info("gdpr_request_processed request_id=%s status=%s", request_id, new_status)
    await audit.record(
        actor_id=actor.user_id,
        action_type=f"{action}_gdpr_request",
        target_type="gdpr_request",
        target_id=request_id,
        before={"status": previous_status},
        after={"status": new_status, "rejection_reason": values.get("rejection_reason")},
    )
    return {"success": True, "status": new_status}


async def _resolve_user_id(
    session: AsyncSession,
    identity: IdentityProvider,
    request: GdprDataRequest,
) -> str | None:
    if request.target_id:
        return request.target_id
    if not request.target_email:
        return None
    profile_id = (
        await session.execute(select(Profile.id).where(Profile.email == request.target_email))
    ).scalar_one_or_none()
    if profile_id is not None:
        return profile_id
    user = await identity.find_user_by_email(request.target_email)
    return user.id if user is not None else None


async def _export_user(
    session: AsyncSession,
    identity: IdentityProvider,
    user_id: str,
    settings: Settings,
) -> dict[str, Any]:
    data: dict[str, Any] = {}
    profile = await session.get(Profile, user_id)
    data["profile"] = row_to_dict(profile) if profile is not None else None

    memberships = (
        await session.execute(
            select(OrganizationMember).where(OrganizationMember.user_id == user_id)
        )
    ).scalars().all()
    data["organization_memberships"] = [
        {
            "organization_id": member.organization_id,
            "role": member.role,
            "created_at": member.created_at.isoformat() if member.created_at else None,
        }
        for member in memberships
    ]

    user = await identity.get_user(user_id)
    if user is not None:
        # Identity metadata only; credentials never leave the provider.
        data["auth_metadata"] = to_jsonable(
            {
                "email": user.email,
                "email_confirmed_at": user.email_confirmed_at,
                "phone": user.phone,
                "created_at": user.created_at,
                "last_sign_in_at": user.last_sign_in_at,
                "app_metadata": user.app_metadata,
            }
        )

    activity = await audit_repo.list_by_actor(
        session, actor_id=user_id, limit=settings.gdpr_export_audit_limit
    )
    data["activity_logs"] = [
        {
            "action_type": entry.action_type,
            "target_type": entry.target_type,
            "target_id": entry.target_id,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in activity
    ]
    return data


async def _export_organization(
    session: AsyncSession,
    organization_id: str,
    settings: Settings,
) -> dict[str, Any]:
    data: dict[str, Any] = {}
    org = await session.get(Organization, organization_id)
    data["organization"] = row_to_dict(org) if org is not None else None

    members = (
        await session.execute(
            select(OrganizationMember).where(OrganizationMember.organization_id == organization_id)
        )
    ).scalars().all()
    data["members"] = [
        {
            "user_id": member.user_id,
            "role": member.role,
            "created_at": member.created_at.isoformat() if member.created_at else None,
        }
        for member in members
    ]

    ledger = (
        await session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.organization_id == organization_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(settings.gdpr_export_ledger_limit)
        )
    ).scalars().all()
    data["credit_ledger"] = [
        {
            "id": txn.id,
            "amount": float(txn.amount),
            "type": txn.type,
            "description": txn.description,
            "created_at": txn.created_at.isoformat() if txn.created_at else None,
        }
        for txn in ledger
    ]

    listings = (
        await session.execute(
            select(Listing)
            .where(Listing.organization_id == organization_id)
            .order_by(Listing.created_at.desc())
            .limit(settings.gdpr_export_listing_limit)
        )
    ).scalars().all()
    data["listings"] = [row_to_dict(listing) for listing in listings]
    return data


async def export_request(
    session: AsyncSession,
    audit: AuditTrail,
    identity: IdentityProvider,
    *,
    request_id: str,
    actor: Principal,
    settings: Settings,
) -> dict[str, Any]:
    request = await session.get(GdprDataRequest, request_id)
    if request is None:
        raise NotFound("GDPR request not found", request_id=request_id)
    if request.request_type not in EXPORTABLE_TYPES:
        raise ValidationFailed(
            "This request type does not support data export",
            field="request_type",
            request_type=request.request_type,
        )
    if request.target_type == "organization" and not request.target_id:
        raise ValidationFailed("Organization exports require target_id", field="target_id")

    now = datetime.now(timezone.utc)
    export_data: dict[str, Any] = {
        "export_date": now.isoformat(),
        "request_id": request.id,
        "request_type": request.request_type,
        "target_type": request.target_type,
    }
    try:
        if request.target_type == "user":
            user_id = await _resolve_user_id(session, identity, request)
            if user_id is not None:
                export_data.update(await _export_user(session, identity, user_id, settings))
        elif request.target_type == "organization":
            export_data.update(await _export_organization(session, request.target_id, settings))
    except SQLAlchemyError as exc:
        logger.error("gdpr_export_failed request_id=%s", request_id, exc_info=exc)
        raise DependencyFailure("Failed to assemble GDPR export") from exc

    # Exporting never advances the request status; process() closes it.
    await audit.record(
        actor_id=actor.user_id,
        action_type="generate_gdpr_export",
        target_type=request.target_type,
        target_id=request.target_id or request.target_email,
        after={"request_id": request.id, "export_generated": True},
    )
    return {
        "success": True,
        "export_data": export_data,
        "filename": f"gdpr_export_{request.target_type}_{int(now.timestamp() * 1000)}.json",
    }
