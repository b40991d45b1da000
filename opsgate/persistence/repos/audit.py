from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.domain.models import AuditLogEntry


def _matches(column, term: str):
    # Case-insensitive substring match; wildcard characters in the term are literal.
    return func.lower(column).contains(term.lower(), autoescape=True)


def _filtered(stmt, *, search: str | None, action_type: str | None):
    if action_type and action_type != "all":
        stmt = stmt.where(_matches(AuditLogEntry.action_type, action_type))
    if search:
        stmt = stmt.where(
            or_(
                _matches(AuditLogEntry.action_type, search),
                _matches(AuditLogEntry.target_type, search),
                _matches(AuditLogEntry.target_id, search),
            )
        )
    return stmt


async def list_entries(
    session: AsyncSession,
    *,
    search: str | None = None,
    action_type: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[AuditLogEntry], int]:
    # Most-recent-first with id as tie breaker for rows written in the same instant.
    stmt = _filtered(select(AuditLogEntry), search=search, action_type=action_type)
    stmt = stmt.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    rows = list((await session.execute(stmt)).scalars().all())

    count_stmt = _filtered(
        select(func.count()).select_from(AuditLogEntry), search=search, action_type=action_type
    )
    total = int(await session.scalar(count_stmt) or 0)
    return rows, total


async def count_actions_since(
    session: AsyncSession,
    *,
    actor_id: str,
    action_type: str,
    since: datetime,
) -> int:
    value = await session.scalar(
        select(func.count())
        .select_from(AuditLogEntry)
        .where(
            AuditLogEntry.actor_id == actor_id,
            AuditLogEntry.action_type == action_type,
            AuditLogEntry.created_at >= since,
        )
    )
    return int(value or 0)


async def list_by_actor(session: AsyncSession, *, actor_id: str, limit: int) -> list[AuditLogEntry]:
    result = await session.execute(
        select(AuditLogEntry)
        .where(AuditLogEntry.actor_id == actor_id)
        .order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
