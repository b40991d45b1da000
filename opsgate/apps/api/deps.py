from __future__ import annotations

from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.core.config import Settings
from opsgate.services.audit import AuditTrail
from opsgate.services.authz import Tier, authorize
from opsgate.services.identity import IdentityProvider, Principal, resolve_principal


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with request.app.state.sessionmaker() as session:
        yield session


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_audit(request: Request) -> AuditTrail:
    return request.app.state.audit


def get_identity(request: Request) -> IdentityProvider:
    return request.app.state.identity


async def get_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: IdentityProvider = Depends(get_identity),
    settings: Settings = Depends(get_app_settings),
) -> Principal:
    # Resolved once per request; FastAPI caches the result for later dependencies.
    principal = await resolve_principal(
        header_value=request.headers.get(settings.auth_header),
        identity=identity,
        session=db,
    )
    request.state.principal = principal
    return principal


def require_tier(tier: Tier) -> Callable[..., Awaitable[Principal]]:
    # Dependency factory attached to every protected route by the route table.
    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        authorize(principal, tier)
        return principal

    return _dependency


def idempotency_key_header(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
) -> str | None:
    # Expose Idempotency-Key in OpenAPI without forcing usage in handlers.
    return idempotency_key
