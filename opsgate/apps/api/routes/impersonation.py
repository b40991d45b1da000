from __future__ import annotations

from typing import Any

from fastapi import Body, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.apps.api.deps import get_audit, get_db, get_principal
from opsgate.services import impersonation as impersonation_service
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import Principal


class StartImpersonationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    organization_id: str = Field(default="", alias="organizationId")
    reason: str | None = None


async def start_impersonation(
    body: StartImpersonationRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await impersonation_service.start(
        db,
        audit,
        organization_id=body.organization_id,
        reason=body.reason,
        actor=principal,
    )


async def end_impersonation(
    body: dict[str, Any] | None = Body(default=None),
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Any body is ignored; the session is looked up from the caller's identity.
    return await impersonation_service.end(db, audit, actor=principal)


async def current_impersonation(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return {"session": await impersonation_service.current(db, actor=principal)}
