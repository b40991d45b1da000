from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
import logging
from typing import Any, Iterable

from sqlalchemy import case, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.core.config import Settings
from opsgate.core.errors import Conflict, DependencyFailure, NotFound, ValidationFailed
from opsgate.domain.models import (
    CreditTransaction,
    Organization,
    OrganizationCreditBalance,
    as_utc,
    new_id,
    utc_now,
)
from opsgate.services.audit import AuditTrail
from opsgate.services.authz import CREDIT_REDACTION_REASON, Tier, allows, redacted
from opsgate.services.identity import Principal


logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")
# Largest value a Numeric(14, 2) column holds.
MAX_CREDIT_AMOUNT = Decimal("999999999999.99")
_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}

DEFAULT_GRANT_DESCRIPTION = "Admin credit grant"


def _to_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationFailed("Valid credit amount is required", field="amount") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationFailed("Valid credit amount is required", field="amount")
    if amount > MAX_CREDIT_AMOUNT:
        raise ValidationFailed(
            "Credit amount exceeds the maximum", field="amount", maximum=str(MAX_CREDIT_AMOUNT)
        )
    # Sub-cent amounts are refused rather than rounded.
    if amount != amount.quantize(_CENTS):
        raise ValidationFailed("Credit amount must have at most 2 decimal places", field="amount")
    return amount.quantize(_CENTS)


async def adjust_balance(session: AsyncSession, *, organization_id: str, amount: Decimal) -> Decimal:
    """Apply ``balance += amount`` in a single statement and return the new balance.

    The upsert runs inside the caller's transaction; the store serializes
    concurrent writers on the balance row so no adjustment is lost.
    """
    dialect = session.get_bind().dialect.name
    insert = _UPSERT_INSERTS.get(dialect)
    if insert is None:
        raise DependencyFailure("Unsupported database dialect for balance adjustment", dialect=dialect)
    now = utc_now()
    stmt = insert(OrganizationCreditBalance).values(
        organization_id=organization_id,
        balance=amount,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[OrganizationCreditBalance.organization_id],
        set_={
            "balance": OrganizationCreditBalance.balance + stmt.excluded.balance,
            "updated_at": now,
        },
    ).returning(OrganizationCreditBalance.balance)
    new_balance = (await session.execute(stmt)).scalar_one()
    return Decimal(str(new_balance)).quantize(_CENTS)


def _grant_result(txn: CreditTransaction, *, replayed: bool) -> dict[str, Any]:
    return {
        "success": True,
        "amount": float(txn.amount),
        "new_balance": float(txn.balance_after) if txn.balance_after is not None else None,
        "transaction_id": txn.id,
        "organization_id": txn.organization_id,
        "replayed": replayed,
    }


async def _find_by_idempotency_key(
    session: AsyncSession, *, organization_id: str, idempotency_key: str
) -> CreditTransaction | None:
    return (
        await session.execute(
            select(CreditTransaction).where(
                CreditTransaction.organization_id == organization_id,
                CreditTransaction.idempotency_key == idempotency_key,
            )
        )
    ).scalar_one_or_none()


def _replay(existing: CreditTransaction, *, amount: Decimal, description: str) -> dict[str, Any]:
    # Same key with a different payload is a client bug, not a retry.
    if Decimal(str(existing.amount)).quantize(_CENTS) != amount or existing.description != description:
        raise Conflict(
            "Idempotency-Key was already used with a different payload",
            code="IDEMPOTENCY_KEY_CONFLICT",
            transaction_id=existing.id,
        )
    logger.info(
        "credit_grant_replayed organization_id=%s transaction_id=%s",
        existing.organization_id,
        existing.id,
    )
    return _grant_result(existing, replayed=True)


async def grant(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    organization_id: str,
    amount: Any,
    reason: str | None,
    actor: Principal,
    idempotency_key: str | None = None,
) -> dict[str, Any]:
    organization_id = (organization_id or "").strip()
    if not organization_id:
        raise ValidationFailed("Organization ID is required", field="organization_id")
    value = _to_amount(amount)
    description = (reason or "").strip() or DEFAULT_GRANT_DESCRIPTION

    org = await session.get(Organization, organization_id)
    if org is None:
        raise NotFound("Organization not found", organization_id=organization_id)

    if idempotency_key:
        existing = await _find_by_idempotency_key(
            session, organization_id=organization_id, idempotency_key=idempotency_key
        )
        if existing is not None:
            return _replay(existing, amount=value, description=description)

    txn = CreditTransaction(
        id=new_id(),
        organization_id=organization_id,
        amount=value,
        type="grant",
        source="admin_grant",
        description=description,
        created_by=actor.user_id,
        idempotency_key=idempotency_key,
    )
    try:
        txn.balance_after = await adjust_balance(session, organization_id=organization_id, amount=value)
        session.add(txn)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        if not idempotency_key:
            raise DependencyFailure("Failed to grant credits") from exc
        # A concurrent request with the same key won the insert; replay its result.
        existing = await _find_by_idempotency_key(
            session, organization_id=organization_id, idempotency_key=idempotency_key
        )
        if existing is None:
            raise DependencyFailure("Failed to grant credits") from exc
        return _replay(existing, amount=value, description=description)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("credit_grant_failed organization_id=%s", organization_id, exc_info=exc)
        raise DependencyFailure("Failed to grant credits") from exc

    logger.info(
        "credit_granted organization_id=%s amount=%s new_balance=%s transaction_id=%s",
        organization_id,
        value,
        txn.balance_after,
        txn.id,
    )
    await audit.record(
        actor_id=actor.user_id,
        action_type="grant_credits",
        target_type="organization",
        target_id=organization_id,
        after={
            "amount": value,
            "reason": reason,
            "org_name": org.business_name,
            "new_balance": txn.balance_after,
            "transaction_id": txn.id,
        },
        metadata={"idempotency_key": idempotency_key} if idempotency_key else None,
    )
    return _grant_result(txn, replayed=False)


def week_start(moment: datetime) -> str:
    # Weeks start on Sunday; Python's weekday() counts from Monday.
    day = as_utc(moment).date()
    return (day - timedelta(days=(day.weekday() + 1) % 7)).isoformat()


def build_weekly_timeline(transactions: Iterable[tuple[datetime, Any]]) -> list[dict[str, Any]]:
    """Bucket ``(created_at, amount)`` pairs into Sunday-start weeks.

    Positive amounts count as credits, everything else as debits; both are
    reported as absolute sums.
    """
    weeks: dict[str, dict[str, float]] = defaultdict(lambda: {"credits": 0.0, "debits": 0.0})
    for created_at, amount in transactions:
        value = float(amount)
        bucket = weeks[week_start(created_at)]
        if value > 0:
            bucket["credits"] += abs(value)
        else:
            bucket["debits"] += abs(value)
    return [
        {"week": week, "credits": round(data["credits"], 2), "debits": round(data["debits"], 2)}
        for week, data in sorted(weeks.items())
    ]


def _transaction_to_dict(txn: CreditTransaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "amount": float(txn.amount),
        "type": txn.type,
        "description": txn.description,
        "source": txn.source,
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
        "created_by": txn.created_by,
    }


async def get_organization_credits(
    session: AsyncSession,
    *,
    organization_id: str,
    principal: Principal,
    settings: Settings,
) -> dict[str, Any]:
    if not allows(principal, Tier.SUPER_ADMIN):
        return redacted(CREDIT_REDACTION_REASON)

    org = await session.get(Organization, organization_id)
    if org is None:
        raise NotFound("Organization not found", organization_id=organization_id)

    balance_row = await session.get(OrganizationCreditBalance, organization_id)
    recent = (
        await session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.organization_id == organization_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(settings.credits_recent_transactions)
        )
    ).scalars().all()
    transactions = [_transaction_to_dict(txn) for txn in recent]
    last_top_up = next((txn for txn in transactions if txn["amount"] > 0), None)

    totals = (
        await session.execute(
            select(
                func.coalesce(
                    func.sum(case((CreditTransaction.amount > 0, CreditTransaction.amount), else_=0)), 0
                ),
                func.coalesce(
                    func.sum(case((CreditTransaction.amount < 0, -CreditTransaction.amount), else_=0)), 0
                ),
            ).where(CreditTransaction.organization_id == organization_id)
        )
    ).one()

    cutoff = utc_now() - timedelta(days=settings.credits_timeline_days)
    timeline_rows = (
        await session.execute(
            select(CreditTransaction.created_at, CreditTransaction.amount)
            .where(
                CreditTransaction.organization_id == organization_id,
                CreditTransaction.created_at >= cutoff,
            )
            .order_by(CreditTransaction.created_at.asc())
        )
    ).all()

    return {
        "organization_id": organization_id,
        "organization_name": org.business_name,
        "balance": float(balance_row.balance) if balance_row is not None else 0.0,
        "balance_updated_at": balance_row.updated_at.isoformat() if balance_row is not None else None,
        "last_top_up": (
            {
                "amount": last_top_up["amount"],
                "date": last_top_up["created_at"],
                "description": last_top_up["description"],
            }
            if last_top_up
            else None
        ),
        "total_granted": round(float(totals[0]), 2),
        "total_used": round(float(totals[1]), 2),
        "usage_timeline": build_weekly_timeline(timeline_rows),
        "transactions": transactions,
    }
