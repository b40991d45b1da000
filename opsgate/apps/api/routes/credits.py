from __future__ import annotations

from decimal import Decimal
from typing import Any

from fastapi import Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.apps.api.deps import get_app_settings, get_audit, get_db, get_principal, idempotency_key_header
from opsgate.core.config import Settings
from opsgate.services import credits as credits_service
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import Principal


class GrantCreditsRequest(BaseModel):
    # Amount and organization are checked by the ledger so errors name the field.
    organization_id: str | None = None
    amount: Decimal | None = None
    reason: str | None = None


async def grant_credits(
    body: GrantCreditsRequest,
    idempotency_key: str | None = Depends(idempotency_key_header),
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await credits_service.grant(
        db,
        audit,
        organization_id=body.organization_id or "",
        amount=body.amount,
        reason=body.reason,
        actor=principal,
        idempotency_key=idempotency_key if settings.idempotency_enabled else None,
    )
