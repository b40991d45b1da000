from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets
from typing import Any, Protocol
from uuid import uuid4

import bcrypt
from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsgate.core.errors import DependencyFailure, NotFound, Unauthenticated
from opsgate.domain.models import AccessToken, EmailQueueItem, IdentityUser, UserRole, as_utc, new_id


logger = logging.getLogger(__name__)

SUPER_ADMIN = "super_admin"
DEVELOPER = "developer"
KNOWN_ROLES = ("super_admin", "developer", "admin", "user")

_TOKEN_PREFIX = "ogt"


class Principal(BaseModel):
    # Authenticated caller plus the role set resolved for this request only.
    user_id: str
    email: str | None = None
    roles: frozenset[str] = frozenset()

    @property
    def is_super_admin(self) -> bool:
        return SUPER_ADMIN in self.roles

    @property
    def is_developer(self) -> bool:
        return DEVELOPER in self.roles


@dataclass(frozen=True)
class IdentityRecord:
    id: str
    email: str | None
    phone: str | None
    email_confirmed_at: datetime | None
    last_sign_in_at: datetime | None
    created_at: datetime | None
    user_metadata: dict[str, Any]
    app_metadata: dict[str, Any]

    @property
    def display_name(self) -> str | None:
        return self.user_metadata.get("full_name") or self.user_metadata.get("name")


class IdentityProvider(Protocol):
    """Boundary to the identity service that owns credentials and user records."""

    async def verify_token(self, token: str) -> IdentityRecord | None: ...

    async def get_user(self, user_id: str) -> IdentityRecord | None: ...

    async def find_user_by_email(self, email: str) -> IdentityRecord | None: ...

    async def update_user_metadata(self, user_id: str, changes: dict[str, Any]) -> IdentityRecord: ...

    async def delete_user(self, user_id: str) -> None: ...

    async def send_verification_email(self, email: str) -> None: ...

    async def send_password_reset(self, email: str) -> None: ...

    async def set_password(self, user_id: str, password: str) -> None: ...


def hash_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_access_token(*, token_id: str | None = None) -> tuple[str, str, str, str]:
    # Embed the token id so operators can trace a credential without the secret.
    resolved_id = token_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_token = f"{_TOKEN_PREFIX}_{resolved_id}_{secret}"
    return resolved_id, raw_token, raw_token[:12], hash_token(raw_token)


def _to_record(user: IdentityUser) -> IdentityRecord:
    return IdentityRecord(
        id=user.id,
        email=user.email,
        phone=user.phone,
        email_confirmed_at=user.email_confirmed_at,
        last_sign_in_at=user.last_sign_in_at,
        created_at=user.created_at,
        user_metadata=dict(user.user_metadata or {}),
        app_metadata=dict(user.app_metadata or {}),
    )


class DatabaseIdentityProvider:
    """Identity provider backed by the identity_users and access_tokens tables."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def verify_token(self, token: str) -> IdentityRecord | None:
        now = datetime.now(timezone.utc)
        async with self._sessionmaker() as session:
            row = (
                await session.execute(
                    select(AccessToken, IdentityUser)
                    .join(IdentityUser, IdentityUser.id == AccessToken.user_id)
                    .where(AccessToken.token_hash == hash_token(token))
                )
            ).first()
        if row is None:
            return None
        access_token, user = row
        if access_token.revoked_at is not None:
            return None
        if access_token.expires_at is not None and as_utc(access_token.expires_at) <= now:
            return None
        return _to_record(user)

    async def get_user(self, user_id: str) -> IdentityRecord | None:
        async with self._sessionmaker() as session:
            user = await session.get(IdentityUser, user_id)
        return _to_record(user) if user is not None else None

    async def find_user_by_email(self, email: str) -> IdentityRecord | None:
        async with self._sessionmaker() as session:
            user = (
                await session.execute(select(IdentityUser).where(IdentityUser.email == email))
            ).scalar_one_or_none()
        return _to_record(user) if user is not None else None

    async def update_user_metadata(self, user_id: str, changes: dict[str, Any]) -> IdentityRecord:
        # Merge into existing metadata; keys set to None are kept as explicit nulls.
        async with self._sessionmaker() as session:
            user = await session.get(IdentityUser, user_id)
            if user is None:
                raise NotFound("User not found", user_id=user_id)
            merged = dict(user.user_metadata or {})
            merged.update(changes)
            user.user_metadata = merged
            await session.commit()
            return _to_record(user)

    async def delete_user(self, user_id: str) -> None:
        async with self._sessionmaker() as session:
            user = await session.get(IdentityUser, user_id)
            if user is None:
                raise NotFound("User not found", user_id=user_id)
            await session.execute(delete(AccessToken).where(AccessToken.user_id == user_id))
            await session.delete(user)
            await session.commit()

    async def _enqueue_email(self, *, to_email: str, subject: str, template: str, payload: dict[str, Any]) -> None:
        async with self._sessionmaker() as session:
            session.add(
                EmailQueueItem(id=new_id(), to_email=to_email, subject=subject, template=template, payload=payload)
            )
            await session.commit()

    async def send_verification_email(self, email: str) -> None:
        # The mail worker renders the confirmation link from link_token.
        await self._enqueue_email(
            to_email=email,
            subject="Confirm your email address",
            template="signup_verification",
            payload={"link_token": secrets.token_urlsafe(32)},
        )

    async def send_password_reset(self, email: str) -> None:
        # Unknown addresses are a silent no-op.
        if await self.find_user_by_email(email) is None:
            logger.info("password_reset_unknown_email")
            return
        await self._enqueue_email(
            to_email=email,
            subject="Reset your password",
            template="password_reset",
            payload={"link_token": secrets.token_urlsafe(32)},
        )

    async def set_password(self, user_id: str, password: str) -> None:
        hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        async with self._sessionmaker() as session:
            user = await session.get(IdentityUser, user_id)
            if user is None:
                raise NotFound("User not found", user_id=user_id)
            user.password_hash = hashed
            await session.commit()


async def issue_access_token(
    session: AsyncSession,
    *,
    user_id: str,
    ttl: timedelta | None = None,
) -> str:
    # Persist only the hash; the raw token is returned once to the caller.
    token_id, raw_token, prefix, token_hash = generate_access_token()
    expires_at = datetime.now(timezone.utc) + ttl if ttl is not None else None
    session.add(
        AccessToken(
            id=token_id,
            user_id=user_id,
            token_prefix=prefix,
            token_hash=token_hash,
            expires_at=expires_at,
        )
    )
    await session.commit()
    return raw_token


def parse_bearer_token(header_value: str | None) -> str:
    # Enforce Bearer token format before any provider lookup.
    if not header_value:
        raise Unauthenticated("Missing authorization header")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise Unauthenticated("Missing or invalid bearer token")
    return parts[1]


async def load_roles(session: AsyncSession, user_id: str) -> frozenset[str]:
    rows = (await session.execute(select(UserRole.role).where(UserRole.user_id == user_id))).scalars().all()
    return frozenset(rows)


async def resolve_principal(
    *,
    header_value: str | None,
    identity: IdentityProvider,
    session: AsyncSession,
) -> Principal:
    # Credential checks fail with 401 before roles are ever read.
    token = parse_bearer_token(header_value)
    try:
        user = await identity.verify_token(token)
    except SQLAlchemyError as exc:
        logger.error("identity_verify_failed", exc_info=exc)
        raise DependencyFailure("Failed to verify credential") from exc
    if user is None:
        raise Unauthenticated("Invalid or expired token")

    try:
        roles = await load_roles(session, user.id)
    except SQLAlchemyError as exc:
        logger.error("role_lookup_failed user_id=%s", user.id, exc_info=exc)
        raise DependencyFailure("Failed to verify permissions") from exc
    return Principal(user_id=user.id, email=user.email, roles=roles)
