from __future__ import annotations

from typing import Any

from fastapi import Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.apps.api.deps import get_app_settings, get_audit, get_db, get_identity, get_principal
from opsgate.core.config import Settings
from opsgate.services import gdpr as gdpr_service
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import IdentityProvider, Principal


class CreateGdprRequest(BaseModel):
    request_type: str
    target_type: str
    target_id: str | None = None
    target_email: str | None = None
    notes: str | None = None


class ProcessGdprRequest(BaseModel):
    action: str
    reason: str | None = None


async def list_gdpr_requests(status: str | None = None, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return {"requests": await gdpr_service.list_requests(db, status=status)}


async def create_gdpr_request(
    body: CreateGdprRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await gdpr_service.create_request(
        db,
        audit,
        request_type=body.request_type,
        target_type=body.target_type,
        target_id=body.target_id,
        target_email=body.target_email,
        notes=body.notes,
        actor=principal,
    )


async def process_gdpr_request(
    request_id: str,
    body: ProcessGdprRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await gdpr_service.process_request(
        db,
        audit,
        request_id=request_id,
        action=body.action,
        reason=body.reason,
        actor=principal,
    )


async def export_gdpr_request(
    request_id: str,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    identity: IdentityProvider = Depends(get_identity),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await gdpr_service.export_request(
        db,
        audit,
        identity,
        request_id=request_id,
        actor=principal,
        settings=settings,
    )
