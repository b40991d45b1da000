from __future__ import annotations

from typing import Any

from fastapi import Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.apps.api.deps import get_app_settings, get_audit, get_db, get_identity, get_principal
from opsgate.core.config import Settings
from opsgate.services import users as users_service
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import IdentityProvider, Principal


class BulkUserActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_ids: list[str] = Field(default_factory=list, alias="userIds")
    action: str
    reason: str | None = None


class DeleteUsersRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_ids: list[str] = Field(default_factory=list, alias="userIds")


class ChangeRoleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(default="", alias="userId")
    new_role: str = Field(default="", alias="newRole")


async def list_users(
    search: str | None = None,
    role: str | None = None,
    page: int = Query(default=0, ge=0),
    page_size: int = Query(default=20, ge=1, le=100, alias="pageSize"),
    identity: IdentityProvider = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await users_service.list_users(
        db, identity, search=search, role=role, page=page, page_size=page_size
    )


async def bulk_user_action(
    body: BulkUserActionRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    identity: IdentityProvider = Depends(get_identity),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    return await users_service.bulk_action(
        audit,
        identity,
        user_ids=body.user_ids,
        action=body.action,
        reason=body.reason,
        actor=principal,
        settings=settings,
    )


async def delete_users(
    body: DeleteUsersRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    identity: IdentityProvider = Depends(get_identity),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await users_service.delete_users(
        db, audit, identity, user_ids=body.user_ids, actor=principal, settings=settings
    )


async def change_user_role(
    body: ChangeRoleRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    identity: IdentityProvider = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await users_service.change_role(
        db, audit, identity, user_id=body.user_id, new_role=body.new_role, actor=principal
    )
