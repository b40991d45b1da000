from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import Depends
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.apps.api.deps import get_audit, get_db, get_principal
from opsgate.services import catalog as catalog_service
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import Principal


class DiscountCodeRequest(BaseModel):
    code: str | None = None
    description: str | None = None
    discount_type: str | None = None
    discount_value: float | None = None
    max_uses: int | None = None
    max_uses_per_org: int | None = None
    valid_until: datetime | None = None
    applicable_plans: list[str] | None = None
    min_months: int | None = None
    credit_grant_amount: float | None = None
    is_active: bool | None = None


class FeatureFlagRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    is_enabled: bool | None = None
    applies_to: str | None = None
    organization_ids: list[str] | None = None


class ToggleFlagRequest(BaseModel):
    # Older clients send is_active for the same switch.
    is_enabled: bool = Field(validation_alias=AliasChoices("is_enabled", "is_active"))


class FlagOverrideRequest(BaseModel):
    organization_id: str | None = None
    state: bool | None = None
    expires_at: datetime | None = None
    reason: str | None = None


class CreateUsageRateRequest(BaseModel):
    feature_type: str = ""
    credits_per_use: float | None = None
    description: str | None = None


class UpdateUsageRateRequest(BaseModel):
    credits_per_use: float | None = None
    description: str | None = None
    is_active: bool | None = None


class CreateInstructionRequest(BaseModel):
    feature_type: str | None = None
    scope: str | None = None
    organization_id: str | None = None
    locale: str | None = None
    name: str | None = None
    description: str | None = None
    banned_phrases: list[str] | None = None
    tone_guidelines: list[str] | None = None
    freeform_instructions: str | None = None
    is_active: bool | None = None
    priority: int | None = None


class UpdateInstructionRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    banned_phrases: list[str] | None = None
    tone_guidelines: list[str] | None = None
    freeform_instructions: str | None = None
    is_active: bool | None = None
    priority: int | None = None
    locale: str | None = None
    change_reason: str | None = None


class DuplicateInstructionRequest(BaseModel):
    name: str | None = None
    organization_id: str | None = None
    locale: str | None = None


# Discount codes.


async def list_discounts(db: AsyncSession = Depends(get_db)) -> list[dict[str, Any]]:
    return await catalog_service.list_discounts(db)


async def create_discount(
    body: DiscountCodeRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.create_discount(db, audit, payload=body.model_dump(), actor=principal)


async def update_discount(
    discount_id: str,
    body: DiscountCodeRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.update_discount(
        db, audit, discount_id=discount_id, changes=body.model_dump(exclude_unset=True), actor=principal
    )


async def delete_discount(
    discount_id: str,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.delete_discount(db, audit, discount_id=discount_id, actor=principal)


# Feature flags.


async def list_flags(db: AsyncSession = Depends(get_db)) -> list[dict[str, Any]]:
    return await catalog_service.list_flags(db)


async def create_flag(
    body: FeatureFlagRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.create_flag(db, audit, payload=body.model_dump(), actor=principal)


async def update_flag(
    flag_id: str,
    body: FeatureFlagRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.update_flag(
        db, audit, flag_id=flag_id, changes=body.model_dump(exclude_unset=True), actor=principal
    )


async def toggle_flag(
    flag_id: str,
    body: ToggleFlagRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.toggle_flag(
        db, audit, flag_id=flag_id, is_enabled=body.is_enabled, actor=principal
    )


async def delete_flag(
    flag_id: str,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.delete_flag(db, audit, flag_id=flag_id, actor=principal)


# Feature flag overrides.


async def list_flag_overrides(flag_id: str, db: AsyncSession = Depends(get_db)) -> list[dict[str, Any]]:
    return await catalog_service.list_flag_overrides(db, flag_id=flag_id)


async def set_flag_override(
    flag_id: str,
    body: FlagOverrideRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.set_flag_override(
        db, audit, flag_id=flag_id, payload=body.model_dump(), actor=principal
    )


async def delete_flag_override(
    flag_id: str,
    override_id: str,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.delete_flag_override(
        db, audit, flag_id=flag_id, override_id=override_id, actor=principal
    )


# Usage rates.


async def list_usage_rates(db: AsyncSession = Depends(get_db)) -> list[dict[str, Any]]:
    return await catalog_service.list_usage_rates(db)


async def create_usage_rate(
    body: CreateUsageRateRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.create_usage_rate(
        db,
        audit,
        feature_type=body.feature_type,
        credits_per_use=body.credits_per_use,
        description=body.description,
        actor=principal,
    )


async def update_usage_rate(
    feature_type: str,
    body: UpdateUsageRateRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.update_usage_rate(
        db, audit, feature_type=feature_type, changes=body.model_dump(exclude_unset=True), actor=principal
    )


async def delete_usage_rate(
    feature_type: str,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.delete_usage_rate(db, audit, feature_type=feature_type, actor=principal)


# AI instruction sets.


async def list_instructions(
    feature_type: str | None = None,
    scope: str | None = None,
    organization_id: str | None = None,
    is_active: bool | None = None,
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    return await catalog_service.list_instructions(
        db,
        feature_type=feature_type,
        scope=scope,
        organization_id=organization_id,
        is_active=is_active,
    )


async def instruction_detail(instruction_id: str, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return await catalog_service.get_instruction(db, instruction_id=instruction_id)


async def instruction_history(instruction_id: str, db: AsyncSession = Depends(get_db)) -> list[dict[str, Any]]:
    return await catalog_service.instruction_history(db, instruction_id=instruction_id)


async def create_instruction(
    body: CreateInstructionRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.create_instruction(db, audit, payload=body.model_dump(), actor=principal)


async def update_instruction(
    instruction_id: str,
    body: UpdateInstructionRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.update_instruction(
        db,
        audit,
        instruction_id=instruction_id,
        changes=body.model_dump(exclude_unset=True),
        actor=principal,
    )


async def delete_instruction(
    instruction_id: str,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await catalog_service.delete_instruction(db, audit, instruction_id=instruction_id, actor=principal)


async def duplicate_instruction(
    instruction_id: str,
    body: DuplicateInstructionRequest | None = None,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # An explicit null locale clears it; an absent one keeps the source's.
    body = body or DuplicateInstructionRequest()
    return await catalog_service.duplicate_instruction(
        db,
        audit,
        instruction_id=instruction_id,
        name=body.name,
        organization_id=body.organization_id,
        locale=body.locale,
        locale_set="locale" in body.model_fields_set,
        actor=principal,
    )
