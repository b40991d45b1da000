from __future__ import annotations

from datetime import timedelta
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsgate.domain.models import IdentityUser, UserRole, new_id
from opsgate.services.identity import issue_access_token


async def create_user(
    sessionmaker: async_sessionmaker[AsyncSession],
    *,
    roles: Iterable[str] = (),
    email: str | None = None,
    user_metadata: dict[str, Any] | None = None,
) -> str:
    # Provision an identity user plus role rows for integration tests.
    user_id = uuid4().hex
    async with sessionmaker() as session:
        session.add(
            IdentityUser(
                id=user_id,
                email=email or f"{user_id[:8]}@example.test",
                user_metadata=user_metadata or {},
                app_metadata={"provider": "email"},
            )
        )
        for role in roles:
            session.add(UserRole(id=new_id(), user_id=user_id, role=role))
        await session.commit()
    return user_id


async def auth_headers(
    sessionmaker: async_sessionmaker[AsyncSession],
    user_id: str,
    *,
    ttl: timedelta | None = None,
) -> dict[str, str]:
    async with sessionmaker() as session:
        raw_token = await issue_access_token(session, user_id=user_id, ttl=ttl)
    return {"Authorization": f"Bearer {raw_token}"}


async def create_principal(
    sessionmaker: async_sessionmaker[AsyncSession],
    *,
    roles: Iterable[str],
    email: str | None = None,
) -> tuple[str, dict[str, str]]:
    # Return (user_id, headers) for a caller holding the given roles.
    user_id = await create_user(sessionmaker, roles=roles, email=email)
    return user_id, await auth_headers(sessionmaker, user_id)


async def super_admin(sessionmaker: async_sessionmaker[AsyncSession]) -> tuple[str, dict[str, str]]:
    return await create_principal(sessionmaker, roles=["super_admin"])


async def developer(sessionmaker: async_sessionmaker[AsyncSession]) -> tuple[str, dict[str, str]]:
    return await create_principal(sessionmaker, roles=["developer"])
