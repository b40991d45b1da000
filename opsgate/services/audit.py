from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsgate.domain.models import AuditLogEntry, Base, row_to_dict
from opsgate.persistence.repos import audit as audit_repo
from opsgate.services.identity import IdentityProvider
from opsgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"

AUDIT_WRITE_FAILED_COUNTER = "audit.write_failed"


@dataclass(frozen=True)
class AuditWriteFailed:
    """Side-channel result for a mutation that committed without its audit row."""

    action_type: str
    target_type: str | None
    target_id: str | None
    error: str


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def to_jsonable(value: Any) -> Any:
    # Normalize ORM rows, datetimes and decimals into plain JSON values.
    if isinstance(value, Base):
        return row_to_dict(value)
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def _prepare(value: Any) -> Any:
    if value is None:
        return None
    return sanitize_metadata(to_jsonable(value))


def entry_to_dict(entry: AuditLogEntry, *, actor_email: str | None = None) -> dict[str, Any]:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "actor_email": actor_email,
        "action_type": entry.action_type,
        "target_type": entry.target_type,
        "target_id": entry.target_id,
        "before_state": entry.before_state,
        "after_state": entry.after_state,
        "metadata": entry.metadata_json,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


class AuditTrail:
    """Append-only log of privileged mutations.

    Rows are written through a dedicated session after the business mutation
    has committed, so a failed write can never unwind the mutation itself.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        identity: IdentityProvider,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._identity = identity

    async def record(
        self,
        *,
        actor_id: str | None,
        action_type: str,
        target_type: str | None = None,
        target_id: str | None = None,
        before: Any = None,
        after: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry | AuditWriteFailed:
        entry = AuditLogEntry(
            actor_id=actor_id,
            action_type=action_type,
            target_type=target_type,
            target_id=target_id,
            before_state=_prepare(before),
            after_state=_prepare(after),
            metadata_json=_prepare(metadata),
        )
        try:
            async with self._sessionmaker() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning(
                "audit_write_failed action_type=%s target_type=%s target_id=%s",
                action_type,
                target_type,
                target_id,
                exc_info=exc,
            )
            increment_counter(AUDIT_WRITE_FAILED_COUNTER)
            return AuditWriteFailed(
                action_type=action_type,
                target_type=target_type,
                target_id=target_id,
                error=exc.__class__.__name__,
            )
        return entry

    async def list(
        self,
        session: AsyncSession,
        *,
        search: str | None = None,
        action_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        entries, total = await audit_repo.list_entries(
            session,
            search=search,
            action_type=action_type,
            offset=offset,
            limit=limit,
        )
        emails = await self._actor_emails({entry.actor_id for entry in entries if entry.actor_id})
        return [entry_to_dict(entry, actor_email=emails.get(entry.actor_id)) for entry in entries], total

    async def _actor_emails(self, actor_ids: set[str]) -> dict[str, str | None]:
        # Resolve at read time; a lookup failure only blanks the display email.
        emails: dict[str, str | None] = {}
        for actor_id in sorted(actor_ids):
            try:
                user = await self._identity.get_user(actor_id)
            except SQLAlchemyError as exc:
                logger.warning("audit_actor_lookup_failed actor_id=%s", actor_id, exc_info=exc)
                user = None
            emails[actor_id] = user.email if user is not None else None
        return emails
