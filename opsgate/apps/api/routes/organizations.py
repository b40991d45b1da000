from __future__ import annotations

from typing import Any

from fastapi import Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.apps.api.deps import get_app_settings, get_audit, get_db, get_principal
from opsgate.core.config import Settings
from opsgate.services import credits as credits_service
from opsgate.services import organizations as organizations_service
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import Principal


class ChangePlanRequest(BaseModel):
    plan: str
    is_sponsored: bool = False
    sponsored_reason: str | None = None


class DeleteOrganizationsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    organization_ids: list[str] = Field(default_factory=list, alias="organizationIds")


async def list_organizations(
    search: str | None = None,
    status: str | None = None,
    page: int = Query(default=0, ge=0),
    page_size: int = Query(default=20, ge=1, le=100, alias="pageSize"),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await organizations_service.list_organizations(
        db,
        principal=principal,
        search=search,
        status=status,
        page=page,
        page_size=page_size,
    )


async def organization_detail(organization_id: str, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return await organizations_service.get_detail(db, organization_id=organization_id)


async def organization_billing(organization_id: str, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return await organizations_service.get_billing(db, organization_id=organization_id)


async def organization_credits(
    organization_id: str,
    principal: Principal = Depends(get_principal),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Staff may call this; numeric fields are redacted below super-admin.
    return await credits_service.get_organization_credits(
        db, organization_id=organization_id, principal=principal, settings=settings
    )


async def change_plan(
    organization_id: str,
    body: ChangePlanRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await organizations_service.change_plan(
        db,
        audit,
        organization_id=organization_id,
        plan=body.plan,
        is_sponsored=body.is_sponsored,
        sponsored_reason=body.sponsored_reason,
        actor=principal,
    )


async def delete_organizations(
    body: DeleteOrganizationsRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await organizations_service.delete_organizations(
        db,
        audit,
        organization_ids=body.organization_ids,
        actor=principal,
        settings=settings,
    )
