from __future__ import annotations

from typing import Any

from fastapi import Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.apps.api.deps import get_app_settings, get_audit, get_db, get_principal
from opsgate.core.config import Settings
from opsgate.services import alerts as alerts_service
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import Principal


class AlertRuleCreateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    metric_type: str | None = None
    condition: str | None = None
    threshold: float | None = None
    time_window_minutes: int | None = None
    notification_channels: list[str] | None = None
    is_enabled: bool | None = None


class AlertRuleUpdateRequest(AlertRuleCreateRequest):
    pass


class EvaluateAlertsRequest(BaseModel):
    metrics: dict[str, float] | None = None


async def list_alert_rules(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return {"rules": await alerts_service.list_rules(db)}


async def alert_history(
    limit: int | None = Query(default=None, ge=1, le=500),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    resolved = limit or settings.alert_history_default_limit
    return {"history": await alerts_service.list_history(db, limit=resolved)}


async def create_alert_rule(
    body: AlertRuleCreateRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await alerts_service.create_rule(db, audit, payload=body.model_dump(), actor=principal)


async def update_alert_rule(
    rule_id: str,
    body: AlertRuleUpdateRequest,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Only fields present in the request are applied.
    return await alerts_service.update_rule(
        db, audit, rule_id=rule_id, changes=body.model_dump(exclude_unset=True), actor=principal
    )


async def delete_alert_rule(
    rule_id: str,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await alerts_service.delete_rule(db, audit, rule_id=rule_id, actor=principal)


async def trigger_test_alert(
    rule_id: str,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await alerts_service.fire_test_alert(db, audit, rule_id=rule_id, actor=principal, settings=settings)


async def evaluate_alert_rules(
    body: EvaluateAlertsRequest | None = None,
    principal: Principal = Depends(get_principal),
    audit: AuditTrail = Depends(get_audit),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    triggered = await alerts_service.evaluate(
        db, audit, actor=principal, metrics=body.metrics if body is not None else None
    )
    return {"triggered": triggered}
