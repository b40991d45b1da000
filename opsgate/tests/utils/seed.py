from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsgate.domain.models import (
    AuditLogEntry,
    CreditTransaction,
    Listing,
    Organization,
    OrganizationMember,
    new_id,
)


async def create_org(
    sessionmaker: async_sessionmaker[AsyncSession],
    *,
    name: str | None = None,
    **fields: Any,
) -> str:
    org_id = uuid4().hex
    suffix = org_id[:8]
    async with sessionmaker() as session:
        session.add(
            Organization(
                id=org_id,
                business_name=name or f"Org {suffix}",
                slug=fields.pop("slug", f"org-{suffix}"),
                contact_email=fields.pop("contact_email", f"owner-{suffix}@example.test"),
                **fields,
            )
        )
        await session.commit()
    return org_id


async def add_member(
    sessionmaker: async_sessionmaker[AsyncSession],
    *,
    organization_id: str,
    user_id: str,
    role: str = "user",
) -> None:
    async with sessionmaker() as session:
        session.add(
            OrganizationMember(id=new_id(), organization_id=organization_id, user_id=user_id, role=role)
        )
        await session.commit()


async def add_listing(
    sessionmaker: async_sessionmaker[AsyncSession],
    *,
    organization_id: str,
    status: str = "For Sale",
) -> str:
    listing_id = new_id()
    async with sessionmaker() as session:
        session.add(Listing(id=listing_id, organization_id=organization_id, status=status, address="1 Main St"))
        await session.commit()
    return listing_id


async def add_transaction(
    sessionmaker: async_sessionmaker[AsyncSession],
    *,
    organization_id: str,
    amount: str,
    type: str,
    **fields: Any,
) -> None:
    async with sessionmaker() as session:
        session.add(
            CreditTransaction(
                id=new_id(),
                organization_id=organization_id,
                amount=Decimal(amount),
                type=type,
                **fields,
            )
        )
        await session.commit()


async def audit_entries(
    sessionmaker: async_sessionmaker[AsyncSession],
    *,
    action_type: str | None = None,
    target_id: str | None = None,
) -> list[AuditLogEntry]:
    # Read audit rows directly for assertions without going through the API.
    async with sessionmaker() as session:
        stmt = select(AuditLogEntry).order_by(AuditLogEntry.id)
        if action_type:
            stmt = stmt.where(AuditLogEntry.action_type == action_type)
        if target_id:
            stmt = stmt.where(AuditLogEntry.target_id == target_id)
        return list((await session.execute(stmt)).scalars().all())
