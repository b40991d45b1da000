from __future__ import annotations

from typing import Any

from fastapi import Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.apps.api.deps import get_app_settings, get_audit, get_db, get_identity, get_principal
from opsgate.core.config import Settings
from opsgate.services import support as support_service
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import IdentityProvider, Principal


class CreateNoteRequest(BaseModel):
    target_type: str | None = None
    target_id: str | None = None
    note: str | None = None


class UserIdRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(default=None, alias="userId")


class PasswordResetRequest(BaseModel):
    email: str | None = None


class SetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(default=None, alias="userId")
    new_password: str | None = Field(default=None, alias="newPassword")


async def list_notes(
    target_type: str | None = None,
    target_id: str | None = None,
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    return await support_service.list_notes(db, target_type=target_type, target_id=target_id, settings=settings)


async def create_note(
    body: CreateNoteRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await support_service.create_note(
        db, audit, target_type=body.target_type, target_id=body.target_id, note=body.note, actor=principal
    )


async def delete_note(
    note_id: str,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await support_service.delete_note(db, audit, note_id=note_id, actor=principal)


async def email_queue(
    limit: int | None = Query(default=None, ge=1, le=500),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    return await support_service.list_email_queue(db, limit=limit or settings.email_queue_default_limit)


async def resend_verification(
    body: UserIdRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    identity: IdentityProvider = Depends(get_identity),
) -> dict[str, Any]:
    return await support_service.resend_verification(audit, identity, user_id=body.user_id, actor=principal)


async def password_reset(
    body: PasswordResetRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    identity: IdentityProvider = Depends(get_identity),
) -> dict[str, Any]:
    return await support_service.send_password_reset(audit, identity, email=body.email, actor=principal)


async def set_password(
    body: SetPasswordRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    identity: IdentityProvider = Depends(get_identity),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    return await support_service.set_password(
        audit,
        identity,
        user_id=body.user_id,
        new_password=body.new_password,
        actor=principal,
        settings=settings,
    )
