from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.core.config import Settings
from opsgate.core.errors import NotFound, ValidationFailed
from opsgate.domain.models import AdminNote, EmailQueueItem, new_id, row_to_dict
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import IdentityProvider, Principal


logger = logging.getLogger(__name__)

NOTE_TARGET_TYPES = ("organization", "user")
# bcrypt only reads the first 72 bytes of a password.
PASSWORD_MAX_BYTES = 72


def _required(value: str | None, field: str, message: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationFailed(message, field=field)
    return cleaned


# Admin notes.


async def list_notes(
    session: AsyncSession,
    *,
    target_type: str | None,
    target_id: str | None,
    settings: Settings,
) -> list[dict[str, Any]]:
    stmt = select(AdminNote).order_by(AdminNote.created_at.desc(), AdminNote.id)
    if target_type:
        stmt = stmt.where(AdminNote.target_type == target_type)
    if target_id:
        stmt = stmt.where(AdminNote.target_id == target_id)
    rows = (await session.execute(stmt.limit(settings.admin_notes_limit))).scalars().all()
    return [row_to_dict(row) for row in rows]


async def create_note(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    target_type: str | None,
    target_id: str | None,
    note: str | None,
    actor: Principal,
) -> dict[str, Any]:
    resolved_type = (target_type or "").strip()
    if resolved_type not in NOTE_TARGET_TYPES:
        raise ValidationFailed("Invalid target type", field="target_type", allowed=list(NOTE_TARGET_TYPES))
    resolved_id = _required(target_id, "target_id", "Target ID is required")
    content = _required(note, "note", "Note content is required")

    row = AdminNote(
        id=new_id(),
        target_type=resolved_type,
        target_id=resolved_id,
        note=content,
        created_by=actor.user_id,
    )
    session.add(row)
    await session.commit()
    logger.info("admin_note_created note_id=%s target_type=%s", row.id, resolved_type)

    after = row_to_dict(row)
    await audit.record(
        actor_id=actor.user_id,
        action_type="create_admin_note",
        target_type=resolved_type,
        target_id=resolved_id,
        after=after,
    )
    return after


async def delete_note(
    session: AsyncSession,
    audit: AuditTrail,
    *,
    note_id: str,
    actor: Principal,
) -> dict[str, Any]:
    row = await session.get(AdminNote, note_id)
    if row is None:
        raise NotFound("Note not found", note_id=note_id)
    before = row_to_dict(row)
    await session.delete(row)
    await session.commit()
    await audit.record(
        actor_id=actor.user_id,
        action_type="delete_admin_note",
        target_type="admin_note",
        target_id=note_id,
        before=before,
        after=None,
    )
    return {"success": True}


# Outbound email and credential support.


async def list_email_queue(session: AsyncSession, *, limit: int) -> list[dict[str, Any]]:
    # Payloads carry link tokens and stay out of listings.
    rows = (
        await session.execute(
            select(
                EmailQueueItem.id,
                EmailQueueItem.to_email,
                EmailQueueItem.subject,
                EmailQueueItem.template,
                EmailQueueItem.status,
                EmailQueueItem.created_at,
            )
            .order_by(EmailQueueItem.created_at.desc())
            .limit(limit)
        )
    ).all()
    return [
        {
            "id": row.id,
            "to_email": row.to_email,
            "subject": row.subject,
            "template": row.template,
            "status": row.status,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]


async def resend_verification(
    audit: AuditTrail,
    identity: IdentityProvider,
    *,
    user_id: str | None,
    actor: Principal,
) -> dict[str, Any]:
    resolved_id = _required(user_id, "userId", "User ID is required")
    record = await identity.get_user(resolved_id)
    if record is None:
        raise NotFound("User not found", user_id=resolved_id)
    if not record.email:
        raise ValidationFailed("User has no email address", field="userId")

    await identity.send_verification_email(record.email)
    logger.info("verification_resent user_id=%s", resolved_id)
    await audit.record(
        actor_id=actor.user_id,
        action_type="resend_verification_email",
        target_type="user",
        target_id=resolved_id,
        before={
            "user_id": resolved_id,
            "email": record.email,
            "email_confirmed": record.email_confirmed_at is not None,
        },
        after={"email": record.email, "verification_sent": True},
    )
    return {"success": True, "email": record.email}


async def send_password_reset(
    audit: AuditTrail,
    identity: IdentityProvider,
    *,
    email: str | None,
    actor: Principal,
) -> dict[str, Any]:
    resolved_email = _required(email, "email", "Email is required")
    await identity.send_password_reset(resolved_email)
    await audit.record(
        actor_id=actor.user_id,
        action_type="send_password_reset",
        target_type="user",
        target_id=resolved_email,
        after={"email": resolved_email, "reset_sent": True},
    )
    return {"success": True, "email": resolved_email}


async def set_password(
    audit: AuditTrail,
    identity: IdentityProvider,
    *,
    user_id: str | None,
    new_password: str | None,
    actor: Principal,
    settings: Settings,
) -> dict[str, Any]:
    resolved_id = _required(user_id, "userId", "User ID is required")
    password = new_password or ""
    if len(password) < settings.password_min_length:
        raise ValidationFailed(
            f"Password must be at least {settings.password_min_length} characters", field="newPassword"
        )
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValidationFailed(f"Password must be at most {PASSWORD_MAX_BYTES} bytes", field="newPassword")

    await identity.set_password(resolved_id, password)
    logger.info("password_set user_id=%s", resolved_id)
    # The password itself never enters the audit trail.
    await audit.record(
        actor_id=actor.user_id,
        action_type="set_user_password",
        target_type="user",
        target_id=resolved_id,
        after={"password_updated": True},
    )
    return {"success": True, "userId": resolved_id}
