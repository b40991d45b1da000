from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.core.errors import Conflict, NotFound, ValidationFailed
from opsgate.domain.models import ImpersonationSession, Organization, new_id, utc_now
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import Principal


logger = logging.getLogger(__name__)

DEFAULT_REASON = "Support/debugging"


async def active_session(session: AsyncSession, super_admin_id: str) -> ImpersonationSession | None:
    # At most one row matches, enforced by the partial unique index.
    return (
        await session.execute(
            select(ImpersonationSession).where(
                ImpersonationSession.super_admin_id == super_admin_id,
                ImpersonationSession.ended_at.is_(None),
            )
        )
    ).scalar_one_or_none()


def _session_to_dict(row: ImpersonationSession, *, organization_name: str | None = None) -> dict[str, Any]:
    return {
        "session_id": row.id,
        "organization_id": row.organization_id,
        "organization_name": organization_name,
        "reason": row.reason,
        "started_at": row.started_at.isoformat() if row.started_at else None,
    }


async def start(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    organization_id: str,
    reason: str | None,
    actor: Principal,
) -> dict[str, Any]:
    organization_id = (organization_id or "").strip()
    if not organization_id:
        raise ValidationFailed("Organization ID is required", field="organizationId")
    org = await session.get(Organization, organization_id)
    if org is None:
        raise NotFound("Organization not found", organization_id=organization_id)

    existing = await active_session(session, actor.user_id)
    if existing is not None:
        raise Conflict(
            "An impersonation session is already active; end it before starting another",
            code="IMPERSONATION_ACTIVE",
            session_id=existing.id,
            organization_id=existing.organization_id,
        )

    resolved_reason = (reason or "").strip() or DEFAULT_REASON
    row = ImpersonationSession(
        id=new_id(),
        super_admin_id=actor.user_id,
        organization_id=organization_id,
        reason=resolved_reason,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError as exc:
        # A concurrent start for the same admin won the unique index.
        await session.rollback()
        raise Conflict(
            "An impersonation session is already active; end it before starting another",
            code="IMPERSONATION_ACTIVE",
        ) from exc

    logger.info(
        "impersonation_started super_admin_id=%s organization_id=%s session_id=%s",
        actor.user_id,
        organization_id,
        row.id,
    )
    await audit.record(
        actor_id=actor.user_id,
        action_type="impersonate_user",
        target_type="organization",
        target_id=organization_id,
        after={"session_id": row.id, "organization_name": org.business_name},
        metadata={"reason": resolved_reason, "session_id": row.id},
    )
    return {"success": True, "session_id": row.id, "organization_name": org.business_name}


async def end(session: AsyncSession, audit: AuditTrail, *, actor: Principal) -> dict[str, Any]:
    row = await active_session(session, actor.user_id)
    if row is None:
        return {"success": True, "message": "No active impersonation session"}

    ended_at = utc_now()
    # Only the caller that closes the open row records the end.
    result = await session.execute(
        update(ImpersonationSession)
        .where(ImpersonationSession.id == row.id, ImpersonationSession.ended_at.is_(None))
        .values(ended_at=ended_at)
    )
    await session.commit()
    if result.rowcount != 1:
        return {"success": True, "message": "No active impersonation session"}

    logger.info(
        "impersonation_ended super_admin_id=%s organization_id=%s session_id=%s",
        actor.user_id,
        row.organization_id,
        row.id,
    )
    # Keyed off the stored session, never off caller-supplied data.
    await audit.record(
        actor_id=actor.user_id,
        action_type="end_impersonation",
        target_type="organization",
        target_id=row.organization_id,
        before={"session_id": row.id, "ended_at": None},
        after={"session_id": row.id, "ended_at": ended_at},
        metadata={"session_id": row.id},
    )
    return {"success": True, "session_id": row.id}


async def current(session: AsyncSession, *, actor: Principal) -> dict[str, Any] | None:
    row = await active_session(session, actor.user_id)
    if row is None:
        return None
    org = await session.get(Organization, row.organization_id)
    return _session_to_dict(row, organization_name=org.business_name if org else None)
