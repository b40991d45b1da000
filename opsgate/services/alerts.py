from __future__ import annotations

from datetime import timedelta
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.core.config import Settings
from opsgate.core.errors import NotFound, RateLimited, ValidationFailed
from opsgate.domain.models import AlertHistoryEntry, AlertRule, new_id, row_to_dict, utc_now
from opsgate.persistence.repos import audit as audit_repo
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import Principal
from opsgate.services.telemetry import availability, counters_snapshot, p95_latency


logger = logging.getLogger(__name__)

CONDITIONS = ("gt", "gte", "lt", "lte", "eq")
DEFAULT_TIME_WINDOW_MINUTES = 60
DEFAULT_CHANNELS = ("email",)

TEST_ALERT_ACTION = "test_alert"

# Fields an update may touch; anything else in the payload is ignored.
_UPDATABLE_FIELDS = (
    "name",
    "description",
    "metric_type",
    "condition",
    "threshold",
    "time_window_minutes",
    "notification_channels",
    "is_enabled",
)


def compare(*, condition: str, actual: float, threshold: float) -> bool:
    if condition == "gt":
        return actual > threshold
    if condition == "gte":
        return actual >= threshold
    if condition == "lt":
        return actual < threshold
    if condition == "lte":
        return actual <= threshold
    if condition == "eq":
        return actual == threshold
    raise ValidationFailed(f"Unsupported condition: {condition}", field="condition")


def _require_text(value: str | None, field: str, message: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationFailed(message, field=field)
    return cleaned


def _check_condition(condition: str) -> str:
    cleaned = condition.strip()
    if cleaned not in CONDITIONS:
        raise ValidationFailed(
            "Invalid condition", field="condition", allowed=list(CONDITIONS)
        )
    return cleaned


def _check_window(value: Any) -> int:
    if value is None:
        raise ValidationFailed("Time window is required", field="time_window_minutes")
    window = int(value)
    if window < 1:
        raise ValidationFailed("Time window must be at least 1 minute", field="time_window_minutes")
    return window


async def _get_rule(session: AsyncSession, rule_id: str) -> AlertRule:
    rule = await session.get(AlertRule, rule_id)
    if rule is None:
        raise NotFound("Alert rule not found", rule_id=rule_id)
    return rule


async def list_rules(session: AsyncSession) -> list[dict[str, Any]]:
    rows = (await session.execute(select(AlertRule).order_by(AlertRule.created_at.desc()))).scalars().all()
    return [row_to_dict(row) for row in rows]


async def list_history(session: AsyncSession, *, limit: int) -> list[dict[str, Any]]:
    rows = (
        await session.execute(
            select(AlertHistoryEntry).order_by(AlertHistoryEntry.triggered_at.desc()).limit(limit)
        )
    ).scalars().all()
    return [row_to_dict(row) for row in rows]


async def create_rule(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    payload: dict[str, Any],
    actor: Principal,
) -> dict[str, Any]:
    name = _require_text(payload.get("name"), "name", "Alert rule name is required")
    metric_type = _require_text(payload.get("metric_type"), "metric_type", "Metric type is required")
    condition = _check_condition(_require_text(payload.get("condition"), "condition", "Condition is required"))
    if payload.get("threshold") is None:
        raise ValidationFailed("Threshold is required", field="threshold")
    window = payload.get("time_window_minutes")
    time_window_minutes = DEFAULT_TIME_WINDOW_MINUTES if window is None else _check_window(window)

    rule = AlertRule(
        id=new_id(),
        name=name,
        description=(payload.get("description") or "").strip() or None,
        metric_type=metric_type,
        condition=condition,
        threshold=float(payload["threshold"]),
        time_window_minutes=time_window_minutes,
        notification_channels=list(payload.get("notification_channels") or DEFAULT_CHANNELS),
        is_enabled=payload.get("is_enabled") is not False,
        created_by=actor.user_id,
    )
    session.add(rule)
    await session.commit()
    await audit.record(
        actor_id=actor.user_id,
        action_type="create_alert_rule",
        target_type="alert_rule",
        target_id=rule.id,
        after=rule,
    )
    return row_to_dict(rule)


async def update_rule(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    rule_id: str,
    changes: dict[str, Any],
    actor: Principal,
) -> dict[str, Any]:
    rule = await _get_rule(session, rule_id)
    before = row_to_dict(rule)

    # Validate every field before touching the row.
    validated: dict[str, Any] = {}
    for field in _UPDATABLE_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if field in ("name", "metric_type"):
            value = _require_text(value, field, f"{field} must not be empty")
        elif field == "description":
            value = (value or "").strip() or None
        elif field == "condition":
            value = _check_condition(_require_text(value, field, "Condition is required"))
        elif field == "threshold":
            if value is None:
                raise ValidationFailed("Threshold is required", field="threshold")
            value = float(value)
        elif field == "time_window_minutes":
            value = _check_window(value)
        elif field == "is_enabled":
            if value is None:
                raise ValidationFailed("is_enabled must be true or false", field="is_enabled")
        elif field == "notification_channels":
            value = list(value or [])
        validated[field] = value
    for field, value in validated.items():
        setattr(rule, field, value)
    rule.updated_at = utc_now()
    await session.commit()

    after = row_to_dict(rule)
    await audit.record(
        actor_id=actor.user_id,
        action_type="update_alert_rule",
        target_type="alert_rule",
        target_id=rule_id,
        before=before,
        after=after,
    )
    return after


async def delete_rule(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    rule_id: str,
    actor: Principal,
) -> dict[str, Any]:
    rule = await _get_rule(session, rule_id)
    before = row_to_dict(rule)
    await session.delete(rule)
    await session.commit()
    await audit.record(
        actor_id=actor.user_id,
        action_type="delete_alert_rule",
        target_type="alert_rule",
        target_id=rule_id,
        before=before,
        after=None,
    )
    return {"success": True}


async def fire_test_alert(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    rule_id: str,
    actor: Principal,
    settings: Settings,
) -> dict[str, Any]:
    """Write a visibly synthetic firing for ``rule_id``.

    The limiter counts the actor's recent ``test_alert`` audit rows. It is an
    approximate limiter: concurrent calls can both observe a count below the
    limit and both succeed.
    """
    since = utc_now() - timedelta(seconds=settings.alert_test_window_seconds)
    recent = await audit_repo.count_actions_since(
        session, actor_id=actor.user_id, action_type=TEST_ALERT_ACTION, since=since
    )
    if recent >= settings.alert_test_limit:
        logger.info("alert_test_rate_limited actor_id=%s recent=%s", actor.user_id, recent)
        raise RateLimited(
            f"Rate limit exceeded. Maximum {settings.alert_test_limit} test alerts per minute.",
            limit=settings.alert_test_limit,
            window_seconds=settings.alert_test_window_seconds,
        )

    rule = await _get_rule(session, rule_id)
    # metric_value equals the threshold so test entries stand out from real triggers.
    entry = AlertHistoryEntry(
        id=new_id(),
        rule_id=rule.id,
        rule_name=rule.name,
        metric_type=rule.metric_type,
        metric_value=rule.threshold,
        threshold=rule.threshold,
        condition=rule.condition,
        notification_channels=list(rule.notification_channels or []),
        notification_status="sent",
    )
    session.add(entry)
    await session.commit()

    await audit.record(
        actor_id=actor.user_id,
        action_type=TEST_ALERT_ACTION,
        target_type="alert_rule",
        target_id=rule_id,
        after={"rule_name": rule.name, "channels": rule.notification_channels},
    )
    return {"success": True, "history_id": entry.id}


def collect_metrics(*, window_s: int) -> dict[str, float]:
    # Process-local operational metrics; callers may overlay explicit values.
    counters = counters_snapshot()
    availability_pct = availability(window_s)
    error_rate = 0.0 if availability_pct is None else max(0.0, 1.0 - (availability_pct / 100.0))
    return {
        "error.rate": round(error_rate, 4),
        "latency.p95": float(p95_latency(window_s) or 0.0),
        "audit.write_failed": float(counters.get("audit.write_failed", 0)),
    }


async def evaluate(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    actor: Principal,
    metrics: dict[str, float] | None = None,
) -> list[dict[str, Any]]:
    """Evaluate enabled rules and record a history entry for each firing.

    Metrics missing from both the supplied values and the collected ones are
    skipped rather than treated as zero.
    """
    rules = (
        await session.execute(select(AlertRule).where(AlertRule.is_enabled.is_(True)))
    ).scalars().all()

    fired: list[AlertHistoryEntry] = []
    for rule in rules:
        observed = dict(collect_metrics(window_s=rule.time_window_minutes * 60))
        observed.update(metrics or {})
        if rule.metric_type not in observed:
            continue
        actual = float(observed[rule.metric_type])
        if rule.condition not in CONDITIONS or not compare(
            condition=rule.condition, actual=actual, threshold=float(rule.threshold)
        ):
            continue
        entry = AlertHistoryEntry(
            id=new_id(),
            rule_id=rule.id,
            rule_name=rule.name,
            metric_type=rule.metric_type,
            metric_value=actual,
            threshold=rule.threshold,
            condition=rule.condition,
            notification_channels=list(rule.notification_channels or []),
            notification_status="triggered",
        )
        session.add(entry)
        fired.append(entry)
        logger.warning(
            "alert_triggered rule_id=%s metric=%s actual=%s condition=%s threshold=%s",
            rule.id,
            rule.metric_type,
            actual,
            rule.condition,
            rule.threshold,
        )
    if fired:
        await session.commit()
    await audit.record(
        actor_id=actor.user_id,
        action_type="evaluate_alert_rules",
        target_type="alert_rule",
        after={"evaluated": len(rules), "triggered": [entry.rule_id for entry in fired]},
        metadata={"supplied_metrics": sorted(metrics or {})},
    )
    return [row_to_dict(entry) for entry in fired]
