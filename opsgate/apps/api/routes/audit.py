from __future__ import annotations

from typing import Any

from fastapi import Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.apps.api.deps import get_app_settings, get_audit, get_db
from opsgate.core.config import Settings
from opsgate.services.audit import AuditTrail


async def list_audit_log(
    search: str | None = None,
    action_type: str | None = Query(default=None, alias="actionType"),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    audit: AuditTrail = Depends(get_audit),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Clamp rather than reject oversized pages so old clients keep working.
    resolved_limit = min(limit or settings.audit_log_default_limit, settings.audit_log_max_limit)
    logs, total = await audit.list(
        db,
        search=search,
        action_type=action_type,
        limit=resolved_limit,
        offset=offset,
    )
    return {"logs": logs, "total": total, "limit": resolved_limit, "offset": offset}
