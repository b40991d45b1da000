from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.core.errors import Conflict, NotFound, ValidationFailed
from opsgate.domain.models import (
    AIInstructionHistory,
    AIInstructionSet,
    DiscountCode,
    FeatureFlag,
    FeatureFlagOverride,
    Organization,
    UsageRate,
    new_id,
    row_to_dict,
    utc_now,
)
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import Principal


logger = logging.getLogger(__name__)

DISCOUNT_TYPES = ("percentage", "fixed")
FLAG_SCOPES = ("all", "specific_orgs")
INSTRUCTION_SCOPES = ("global", "organization")
INSTRUCTION_HISTORY_LIMIT = 50


def _strip_or_none(value: str | None) -> str | None:
    return (value or "").strip() or None


async def _commit_or_conflict(session: AsyncSession, message: str, code: str) -> None:
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise Conflict(message, code=code) from exc


async def _get_or_404(session: AsyncSession, model, key: str, message: str):
    row = await session.get(model, key)
    if row is None:
        raise NotFound(message, id=key)
    return row


# Discount codes.


def _discount_value(value: Any) -> float:
    if value is None or float(value) <= 0:
        raise ValidationFailed("Valid discount value is required", field="discount_value")
    return float(value)


def _discount_type(value: str | None) -> str:
    resolved = value or "percentage"
    if resolved not in DISCOUNT_TYPES:
        raise ValidationFailed("Invalid discount type", field="discount_type", allowed=list(DISCOUNT_TYPES))
    return resolved


async def list_discounts(session: AsyncSession) -> list[dict[str, Any]]:
    rows = (await session.execute(select(DiscountCode).order_by(DiscountCode.created_at.desc()))).scalars().all()
    return [row_to_dict(row) for row in rows]


async def create_discount(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    payload: dict[str, Any],
    actor: Principal,
) -> dict[str, Any]:
    code = (payload.get("code") or "").strip().upper()
    if not code:
        raise ValidationFailed("Code is required", field="code")
    row = DiscountCode(
        id=new_id(),
        code=code,
        description=_strip_or_none(payload.get("description")),
        discount_type=_discount_type(payload.get("discount_type")),
        discount_value=_discount_value(payload.get("discount_value")),
        max_uses=payload.get("max_uses") or None,
        max_uses_per_org=payload.get("max_uses_per_org") or 1,
        valid_until=payload.get("valid_until"),
        applicable_plans=list(payload.get("applicable_plans") or []) or None,
        min_months=payload.get("min_months") or 1,
        credit_grant_amount=payload.get("credit_grant_amount"),
        is_active=payload.get("is_active") is not False,
        created_by=actor.user_id,
    )
    session.add(row)
    await _commit_or_conflict(session, f"Discount code {code} already exists", "DISCOUNT_CODE_EXISTS")
    logger.info("discount_code_created discount_id=%s code=%s", row.id, code)

    after = row_to_dict(row)
    await audit.record(
        actor_id=actor.user_id,
        action_type="create_discount_code",
        target_type="discount_code",
        target_id=row.id,
        after=after,
    )
    return after


async def update_discount(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    discount_id: str,
    changes: dict[str, Any],
    actor: Principal,
) -> dict[str, Any]:
    row = await _get_or_404(session, DiscountCode, discount_id, "Discount code not found")
    before = row_to_dict(row)

    if "code" in changes:
        code = (changes["code"] or "").strip().upper()
        if not code:
            raise ValidationFailed("Code is required", field="code")
        row.code = code
    if "description" in changes:
        row.description = _strip_or_none(changes["description"])
    if "discount_type" in changes:
        row.discount_type = _discount_type(changes["discount_type"])
    if "discount_value" in changes:
        row.discount_value = _discount_value(changes["discount_value"])
    if "max_uses" in changes:
        row.max_uses = changes["max_uses"] or None
    if "max_uses_per_org" in changes:
        row.max_uses_per_org = changes["max_uses_per_org"] or 1
    if "valid_until" in changes:
        row.valid_until = changes["valid_until"] or None
    if "applicable_plans" in changes:
        row.applicable_plans = list(changes["applicable_plans"] or []) or None
    if "min_months" in changes:
        row.min_months = changes["min_months"] or 1
    if "credit_grant_amount" in changes:
        row.credit_grant_amount = changes["credit_grant_amount"]
    if "is_active" in changes:
        row.is_active = bool(changes["is_active"])
    row.updated_at = utc_now()
    await _commit_or_conflict(session, f"Discount code {row.code} already exists", "DISCOUNT_CODE_EXISTS")

    after = row_to_dict(row)
    await audit.record(
        actor_id=actor.user_id,
        action_type="update_discount_code",
        target_type="discount_code",
        target_id=discount_id,
        before=before,
        after=after,
    )
    return after


async def delete_discount(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    discount_id: str,
    actor: Principal,
) -> dict[str, Any]:
    row = await _get_or_404(session, DiscountCode, discount_id, "Discount code not found")
    before = row_to_dict(row)
    await session.delete(row)
    await session.commit()
    await audit.record(
        actor_id=actor.user_id,
        action_type="delete_discount_code",
        target_type="discount_code",
        target_id=discount_id,
        before=before,
        after=None,
    )
    return {"success": True}


# Feature flags.


def _flag_scope(value: str | None) -> str:
    resolved = value or "all"
    if resolved not in FLAG_SCOPES:
        raise ValidationFailed("Invalid applies_to value", field="applies_to", allowed=list(FLAG_SCOPES))
    return resolved


async def list_flags(session: AsyncSession) -> list[dict[str, Any]]:
    rows = (await session.execute(select(FeatureFlag).order_by(FeatureFlag.created_at.desc()))).scalars().all()
    return [row_to_dict(row) for row in rows]


async def create_flag(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    payload: dict[str, Any],
    actor: Principal,
) -> dict[str, Any]:
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationFailed("Name is required", field="name")
    row = FeatureFlag(
        id=new_id(),
        name=name,
        description=_strip_or_none(payload.get("description")),
        is_enabled=payload.get("is_enabled") is not False,
        applies_to=_flag_scope(payload.get("applies_to")),
        organization_ids=list(payload.get("organization_ids") or []),
        created_by=actor.user_id,
    )
    session.add(row)
    await _commit_or_conflict(session, f"Feature flag {name} already exists", "FEATURE_FLAG_EXISTS")
    logger.info("feature_flag_created flag_id=%s name=%s", row.id, name)

    after = row_to_dict(row)
    await audit.record(
        actor_id=actor.user_id,
        action_type="create_feature_flag",
        target_type="feature_flag",
        target_id=row.id,
        after=after,
    )
    return after


async def update_flag(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    flag_id: str,
    changes: dict[str, Any],
    actor: Principal,
) -> dict[str, Any]:
    row = await _get_or_404(session, FeatureFlag, flag_id, "Feature flag not found")
    before = row_to_dict(row)

    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise ValidationFailed("Name is required", field="name")
        row.name = name
    if "description" in changes:
        row.description = _strip_or_none(changes["description"])
    if "is_enabled" in changes:
        row.is_enabled = bool(changes["is_enabled"])
    if "applies_to" in changes:
        row.applies_to = _flag_scope(changes["applies_to"])
    if "organization_ids" in changes:
        row.organization_ids = list(changes["organization_ids"] or [])
    row.updated_at = utc_now()
    await _commit_or_conflict(session, f"Feature flag {row.name} already exists", "FEATURE_FLAG_EXISTS")

    after = row_to_dict(row)
    await audit.record(
        actor_id=actor.user_id,
        action_type="update_feature_flag",
        target_type="feature_flag",
        target_id=flag_id,
        before=before,
        after=after,
    )
    return after


async def toggle_flag(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    flag_id: str,
    is_enabled: bool,
    actor: Principal,
) -> dict[str, Any]:
    row = await _get_or_404(session, FeatureFlag, flag_id, "Feature flag not found")
    previous = row.is_enabled
    row.is_enabled = is_enabled
    row.updated_at = utc_now()
    await session.commit()
    logger.info("feature_flag_toggled flag_id=%s enabled=%s", flag_id, is_enabled)

    after = row_to_dict(row)
    await audit.record(
        actor_id=actor.user_id,
        action_type="toggle_feature_flag",
        target_type="feature_flag",
        target_id=flag_id,
        before={"is_enabled": previous},
        after=after,
    )
    return after


async def delete_flag(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    flag_id: str,
    actor: Principal,
) -> dict[str, Any]:
    row = await _get_or_404(session, FeatureFlag, flag_id, "Feature flag not found")
    before = row_to_dict(row)
    # Overrides go with their flag in the same transaction.
    await session.execute(delete(FeatureFlagOverride).where(FeatureFlagOverride.feature_flag_id == flag_id))
    await session.delete(row)
    await session.commit()
    await audit.record(
        actor_id=actor.user_id,
        action_type="delete_feature_flag",
        target_type="feature_flag",
        target_id=flag_id,
        before=before,
        after=None,
    )
    return {"success": True}


# Feature flag overrides.


async def list_flag_overrides(session: AsyncSession, *, flag_id: str) -> list[dict[str, Any]]:
    await _get_or_404(session, FeatureFlag, flag_id, "Feature flag not found")
    rows = (
        await session.execute(
            select(FeatureFlagOverride)
            .where(FeatureFlagOverride.feature_flag_id == flag_id)
            .order_by(FeatureFlagOverride.created_at, FeatureFlagOverride.id)
        )
    ).scalars().all()
    return [row_to_dict(row) for row in rows]


async def set_flag_override(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    flag_id: str,
    payload: dict[str, Any],
    actor: Principal,
) -> dict[str, Any]:
    await _get_or_404(session, FeatureFlag, flag_id, "Feature flag not found")
    organization_id = (payload.get("organization_id") or "").strip()
    if not organization_id:
        raise ValidationFailed("Organization ID is required", field="organization_id")
    if payload.get("state") is None:
        raise ValidationFailed("Override state is required", field="state")
    await _get_or_404(session, Organization, organization_id, "Organization not found")

    # One override per flag and organization; setting again replaces it.
    row = (
        await session.execute(
            select(FeatureFlagOverride).where(
                FeatureFlagOverride.feature_flag_id == flag_id,
                FeatureFlagOverride.organization_id == organization_id,
            )
        )
    ).scalar_one_or_none()
    before = row_to_dict(row) if row is not None else None
    if row is None:
        row = FeatureFlagOverride(id=new_id(), feature_flag_id=flag_id, organization_id=organization_id)
        session.add(row)
    row.state = bool(payload["state"])
    row.expires_at = payload.get("expires_at")
    row.reason = _strip_or_none(payload.get("reason"))
    row.created_by = actor.user_id
    await _commit_or_conflict(
        session, "An override for this organization already exists", "FEATURE_FLAG_OVERRIDE_EXISTS"
    )
    logger.info(
        "feature_flag_override_set flag_id=%s organization_id=%s state=%s", flag_id, organization_id, row.state
    )

    after = row_to_dict(row)
    await audit.record(
        actor_id=actor.user_id,
        action_type="set_feature_flag_override",
        target_type="feature_flag",
        target_id=flag_id,
        before=before,
        after=after,
        metadata={"organization_id": organization_id},
    )
    return after


async def delete_flag_override(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    flag_id: str,
    override_id: str,
    actor: Principal,
) -> dict[str, Any]:
    row = await session.get(FeatureFlagOverride, override_id)
    if row is None or row.feature_flag_id != flag_id:
        raise NotFound("Feature flag override not found", id=override_id)
    before = row_to_dict(row)
    await session.delete(row)
    await session.commit()
    await audit.record(
        actor_id=actor.user_id,
        action_type="delete_feature_flag_override",
        target_type="feature_flag",
        target_id=flag_id,
        before=before,
        after=None,
        metadata={"organization_id": before["organization_id"]},
    )
    return {"success": True}


# Usage rates.


def _credits_per_use(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValidationFailed("credits_per_use must be a non-negative number", field="credits_per_use")
    return float(value)


async def list_usage_rates(session: AsyncSession) -> list[dict[str, Any]]:
    rows = (await session.execute(select(UsageRate).order_by(UsageRate.feature_type))).scalars().all()
    return [row_to_dict(row) for row in rows]


async def create_usage_rate(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    feature_type: str,
    credits_per_use: Any,
    description: str | None,
    actor: Principal,
) -> dict[str, Any]:
    feature_type = (feature_type or "").strip()
    if not feature_type:
        raise ValidationFailed("feature_type and valid credits_per_use are required", field="feature_type")
    row = UsageRate(
        feature_type=feature_type,
        credits_per_use=_credits_per_use(credits_per_use),
        description=description or None,
        is_active=True,
    )
    session.add(row)
    await _commit_or_conflict(session, f"Usage rate for {feature_type} already exists", "USAGE_RATE_EXISTS")

    after = row_to_dict(row)
    await audit.record(
        actor_id=actor.user_id,
        action_type="create_usage_rate",
        target_type="usage_rate",
        target_id=feature_type,
        after=after,
    )
    return after


async def update_usage_rate(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    feature_type: str,
    changes: dict[str, Any],
    actor: Principal,
) -> dict[str, Any]:
    value = _credits_per_use(changes.get("credits_per_use"))
    row = await _get_or_404(session, UsageRate, feature_type, "Usage rate not found")
    before = row_to_dict(row)

    row.credits_per_use = value
    if "description" in changes:
        row.description = changes["description"]
    if "is_active" in changes and changes["is_active"] is not None:
        row.is_active = bool(changes["is_active"])
    row.updated_at = utc_now()
    await session.commit()

    after = row_to_dict(row)
    await audit.record(
        actor_id=actor.user_id,
        action_type="update_usage_rate",
        target_type="usage_rate",
        target_id=feature_type,
        before=before,
        after=after,
    )
    return after


async def delete_usage_rate(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    feature_type: str,
    actor: Principal,
) -> dict[str, Any]:
    row = await _get_or_404(session, UsageRate, feature_type, "Usage rate not found")
    before = row_to_dict(row)
    await session.delete(row)
    await session.commit()
    await audit.record(
        actor_id=actor.user_id,
        action_type="delete_usage_rate",
        target_type="usage_rate",
        target_id=feature_type,
        before=before,
        after=None,
    )
    return {"success": True}


# AI instruction sets. Every change also lands in ai_instruction_history,
# written in the same transaction as the change itself.


def _history(
    instruction_id: str,
    action: str,
    *,
    actor: Principal,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    reason: str | None = None,
) -> AIInstructionHistory:
    return AIInstructionHistory(
        id=new_id(),
        instruction_set_id=instruction_id,
        action=action,
        before_state=before,
        after_state=after,
        changed_by=actor.user_id,
        change_reason=reason,
    )


async def list_instructions(
    session: AsyncSession,
    *,
    feature_type: str | None = None,
    scope: str | None = None,
    organization_id: str | None = None,
    is_active: bool | None = None,
) -> list[dict[str, Any]]:
    stmt = select(AIInstructionSet).order_by(
        AIInstructionSet.feature_type,
        AIInstructionSet.scope,
        AIInstructionSet.priority.desc(),
    )
    if feature_type:
        stmt = stmt.where(AIInstructionSet.feature_type == feature_type)
    if scope:
        stmt = stmt.where(AIInstructionSet.scope == scope)
    if organization_id:
        stmt = stmt.where(AIInstructionSet.organization_id == organization_id)
    if is_active is not None:
        stmt = stmt.where(AIInstructionSet.is_active.is_(is_active))
    rows = (await session.execute(stmt)).scalars().all()
    return [row_to_dict(row) for row in rows]


async def get_instruction(session: AsyncSession, *, instruction_id: str) -> dict[str, Any]:
    row = await _get_or_404(session, AIInstructionSet, instruction_id, "AI instruction not found")
    return row_to_dict(row)


async def create_instruction(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    payload: dict[str, Any],
    actor: Principal,
) -> dict[str, Any]:
    feature_type = (payload.get("feature_type") or "").strip()
    name = (payload.get("name") or "").strip()
    if not feature_type or not name:
        raise ValidationFailed("feature_type and name are required", field="feature_type")
    scope = payload.get("scope") or "global"
    if scope not in INSTRUCTION_SCOPES:
        raise ValidationFailed("Invalid scope", field="scope", allowed=list(INSTRUCTION_SCOPES))
    organization_id = payload.get("organization_id") or None
    if scope == "organization" and not organization_id:
        raise ValidationFailed(
            "organization_id is required for organization-scoped instructions", field="organization_id"
        )
    if scope == "global" and organization_id:
        raise ValidationFailed(
            "organization_id must not be set for global instructions", field="organization_id"
        )

    row = AIInstructionSet(
        id=new_id(),
        feature_type=feature_type,
        scope=scope,
        organization_id=organization_id,
        locale=payload.get("locale") or None,
        name=name,
        description=_strip_or_none(payload.get("description")),
        banned_phrases=list(payload.get("banned_phrases") or []),
        tone_guidelines=list(payload.get("tone_guidelines") or []),
        freeform_instructions=_strip_or_none(payload.get("freeform_instructions")),
        is_active=payload.get("is_active") is not False,
        priority=payload.get("priority") or 0,
        created_by=actor.user_id,
    )
    session.add(row)
    await session.flush()
    after = row_to_dict(row)
    session.add(_history(row.id, "created", actor=actor, after=after))
    await session.commit()
    logger.info("ai_instruction_created instruction_id=%s feature_type=%s", row.id, feature_type)

    await audit.record(
        actor_id=actor.user_id,
        action_type="create_ai_instruction",
        target_type="ai_instruction",
        target_id=row.id,
        after=after,
    )
    return after


async def update_instruction(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    instruction_id: str,
    changes: dict[str, Any],
    actor: Principal,
) -> dict[str, Any]:
    row = await _get_or_404(session, AIInstructionSet, instruction_id, "AI instruction not found")
    before = row_to_dict(row)

    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise ValidationFailed("Name is required", field="name")
        row.name = name
    if "description" in changes:
        row.description = _strip_or_none(changes["description"])
    if "banned_phrases" in changes:
        row.banned_phrases = list(changes["banned_phrases"] or [])
    if "tone_guidelines" in changes:
        row.tone_guidelines = list(changes["tone_guidelines"] or [])
    if "freeform_instructions" in changes:
        row.freeform_instructions = _strip_or_none(changes["freeform_instructions"])
    if "is_active" in changes and changes["is_active"] is not None:
        row.is_active = bool(changes["is_active"])
    if "priority" in changes and changes["priority"] is not None:
        row.priority = int(changes["priority"])
    if "locale" in changes:
        row.locale = changes["locale"] or None
    row.updated_at = utc_now()
    await session.flush()

    after = row_to_dict(row)
    action = "updated"
    if before["is_active"] != after["is_active"]:
        action = "activated" if after["is_active"] else "deactivated"
    session.add(
        _history(
            instruction_id,
            action,
            actor=actor,
            before=before,
            after=after,
            reason=changes.get("change_reason"),
        )
    )
    await session.commit()

    await audit.record(
        actor_id=actor.user_id,
        action_type="update_ai_instruction",
        target_type="ai_instruction",
        target_id=instruction_id,
        before=before,
        after=after,
    )
    return after


async def delete_instruction(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    instruction_id: str,
    actor: Principal,
) -> dict[str, Any]:
    row = await _get_or_404(session, AIInstructionSet, instruction_id, "AI instruction not found")
    before = row_to_dict(row)
    session.add(_history(instruction_id, "deleted", actor=actor, before=before))
    await session.delete(row)
    await session.commit()
    await audit.record(
        actor_id=actor.user_id,
        action_type="delete_ai_instruction",
        target_type="ai_instruction",
        target_id=instruction_id,
        before=before,
        after=None,
    )
    return {"success": True}


async def instruction_history(
    session: AsyncSession,
    *,
    instruction_id: str,
    limit: int = INSTRUCTION_HISTORY_LIMIT,
) -> list[dict[str, Any]]:
    rows = (
        await session.execute(
            select(AIInstructionHistory)
            .where(AIInstructionHistory.instruction_set_id == instruction_id)
            .order_by(AIInstructionHistory.changed_at.desc())
            .limit(limit)
        )
    ).scalars().all()
    return [row_to_dict(row) for row in rows]


async def duplicate_instruction(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    instruction_id: str,
    name: str | None,
    organization_id: str | None,
    locale: str | None,
    locale_set: bool,
    actor: Principal,
) -> dict[str, Any]:
    source = await _get_or_404(session, AIInstructionSet, instruction_id, "Source AI instruction not found")
    # Copies start inactive; scope follows whether an organization was given.
    row = AIInstructionSet(
        id=new_id(),
        feature_type=source.feature_type,
        scope="organization" if organization_id else "global",
        organization_id=organization_id or None,
        locale=locale if locale_set else source.locale,
        name=(name or "").strip() or f"{source.name} (Copy)",
        description=source.description,
        banned_phrases=list(source.banned_phrases or []),
        tone_guidelines=list(source.tone_guidelines or []),
        freeform_instructions=source.freeform_instructions,
        is_active=False,
        priority=source.priority,
        created_by=actor.user_id,
    )
    session.add(row)
    await session.flush()
    after = row_to_dict(row)
    session.add(
        _history(
            row.id,
            "created",
            actor=actor,
            after={**after, "duplicated_from": instruction_id},
            reason=f"Duplicated from instruction {source.name}",
        )
    )
    await session.commit()
    logger.info("ai_instruction_duplicated source_id=%s instruction_id=%s", instruction_id, row.id)

    await audit.record(
        actor_id=actor.user_id,
        action_type="duplicate_ai_instruction",
        target_type="ai_instruction",
        target_id=row.id,
        before={"source_id": instruction_id},
        after=after,
    )
    return after
