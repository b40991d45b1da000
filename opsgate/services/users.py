from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsgate.core.config import Settings
from opsgate.core.errors import NotFound, ValidationFailed
from opsgate.domain.models import Organization, OrganizationMember, UserRole, new_id, utc_now
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import DEVELOPER, KNOWN_ROLES, SUPER_ADMIN, IdentityProvider, Principal


logger = logging.getLogger(__name__)

BULK_ACTIONS = ("suspend", "unsuspend")
DEFAULT_SUSPEND_REASON = "Suspended by admin"


def _check_batch(user_ids: list[str], limit: int) -> list[str]:
    if not user_ids:
        raise ValidationFailed("userIds array is required", field="userIds")
    if len(user_ids) > limit:
        raise ValidationFailed(f"Maximum {limit} users per bulk action", field="userIds")
    return user_ids


async def _memberships(session: AsyncSession, user_ids: list[str]) -> dict[str, list[dict[str, Any]]]:
    rows = (
        await session.execute(
            select(
                OrganizationMember.user_id,
                OrganizationMember.organization_id,
                OrganizationMember.role,
                Organization.business_name,
            )
            .join(Organization, Organization.id == OrganizationMember.organization_id, isouter=True)
            .where(OrganizationMember.user_id.in_(user_ids))
        )
    ).all()
    grouped: dict[str, list[dict[str, Any]]] = {}
    for user_id, organization_id, role, name in rows:
        grouped.setdefault(user_id, []).append(
            {"organization_id": organization_id, "organization_name": name, "role": role}
        )
    return grouped


async def list_users(
    session: AsyncSession,
    identity: IdentityProvider,
    *,
    search: str | None = None,
    role: str | None = None,
    page: int = 0,
    page_size: int = 20,
) -> dict[str, Any]:
    conditions = []
    if search:
        conditions.append(func.lower(UserRole.user_id).contains(search.lower(), autoescape=True))
    if role and role != "all":
        conditions.append(UserRole.role == role)

    total = int(await session.scalar(select(func.count()).select_from(UserRole).where(*conditions)) or 0)
    rows = (
        await session.execute(
            select(UserRole)
            .where(*conditions)
            .order_by(UserRole.created_at.desc())
            .offset(page * page_size)
            .limit(page_size)
        )
    ).scalars().all()
    memberships = await _memberships(session, [row.user_id for row in rows]) if rows else {}

    users = []
    for row in rows:
        record = await identity.get_user(row.user_id)
        metadata = record.user_metadata if record is not None else {}
        users.append(
            {
                "id": row.user_id,
                "email": record.email if record is not None else None,
                "full_name": record.display_name if record is not None else None,
                "role": row.role,
                "created_at": row.created_at.isoformat() if row.created_at else None,
                "last_sign_in_at": (
                    record.last_sign_in_at.isoformat() if record is not None and record.last_sign_in_at else None
                ),
                "suspended": bool(metadata.get("suspended")),
                "organizations": memberships.get(row.user_id, []),
            }
        )
    return {"users": users, "total": total}


async def bulk_action(
    audit: AuditTrail,
    identity: IdentityProvider,
    *,
    user_ids: list[str],
    action: str,
    reason: str | None,
    actor: Principal,
    settings: Settings,
) -> dict[str, Any]:
    if action not in BULK_ACTIONS:
        raise ValidationFailed("Invalid action. Must be 'suspend' or 'unsuspend'", field="action")
    _check_batch(user_ids, settings.bulk_user_max_items)

    if action == "suspend":
        changes = {
            "suspended": True,
            "suspended_at": utc_now().isoformat(),
            "suspended_reason": (reason or "").strip() or DEFAULT_SUSPEND_REASON,
            "suspended_by": actor.user_id,
        }
    else:
        changes = {"suspended": False, "suspended_at": None, "suspended_reason": None, "suspended_by": None}

    results: list[dict[str, Any]] = []
    for user_id in user_ids:
        try:
            await identity.update_user_metadata(user_id, changes)
        except NotFound:
            results.append({"userId": user_id, "success": False, "error": "User not found"})
            continue
        except SQLAlchemyError as exc:
            logger.error("user_bulk_action_failed user_id=%s action=%s", user_id, action, exc_info=exc)
            results.append({"userId": user_id, "success": False, "error": f"Failed to {action} user"})
            continue

        await audit.record(
            actor_id=actor.user_id,
            action_type=f"{action}_user",
            target_type="user",
            target_id=user_id,
            after={"suspended": changes["suspended"]},
            metadata={"reason": reason, "bulk_action": True},
        )
        results.append({"userId": user_id, "success": True})

    success_count = sum(1 for result in results if result["success"])
    failed = len(results) - success_count
    message = f"{success_count} users {action}ed successfully"
    if failed:
        message += f", {failed} failed"
    logger.info("user_bulk_action action=%s succeeded=%s failed=%s", action, success_count, failed)
    return {"success": failed == 0, "message": message, "results": results}


async def delete_users(
    session: AsyncSession,
    audit: AuditTrail,
    identity: IdentityProvider,
    *,
    user_ids: list[str],
    actor: Principal,
    settings: Settings,
) -> dict[str, Any]:
    _check_batch(user_ids, settings.bulk_user_max_items)
    if actor.user_id in user_ids:
        raise ValidationFailed("Cannot delete your own account", field="userIds")

    results: list[dict[str, Any]] = []
    for user_id in user_ids:
        record = await identity.get_user(user_id)
        if record is None:
            results.append({"userId": user_id, "success": False, "error": "User not found"})
            continue
        try:
            await session.execute(delete(OrganizationMember).where(OrganizationMember.user_id == user_id))
            await session.execute(delete(UserRole).where(UserRole.user_id == user_id))
            await session.commit()
            await identity.delete_user(user_id)
        except (NotFound, SQLAlchemyError) as exc:
            await session.rollback()
            logger.error("user_delete_failed user_id=%s", user_id, exc_info=exc)
            results.append({"userId": user_id, "success": False, "error": "Failed to delete user"})
            continue

        logger.info("user_deleted user_id=%s", user_id)
        await audit.record(
            actor_id=actor.user_id,
            action_type="delete_user",
            target_type="user",
            target_id=user_id,
            before={"email": record.email},
            after=None,
            metadata={"deleted_user_email": record.email, "permanent": True},
        )
        results.append({"userId": user_id, "success": True})

    success_count = sum(1 for result in results if result["success"])
    return {
        "success": success_count == len(results),
        "message": f"{success_count} user(s) deleted permanently",
        "results": results,
    }


async def change_role(
    session: AsyncSession,
    audit: AuditTrail,
    identity: IdentityProvider,
    *,
    user_id: str,
    new_role: str,
    actor: Principal,
) -> dict[str, Any]:
    if not user_id or not new_role:
        raise ValidationFailed("userId and newRole are required", field="userId")
    if new_role not in KNOWN_ROLES:
        raise ValidationFailed("Invalid role", field="newRole", allowed=list(KNOWN_ROLES))
    if user_id == actor.user_id:
        raise ValidationFailed("Cannot change your own role", field="userId")

    record = await identity.get_user(user_id)
    if record is None:
        raise NotFound("User not found", user_id=user_id)

    existing = (
        await session.execute(select(UserRole.role).where(UserRole.user_id == user_id))
    ).scalars().first()
    previous_role = existing or "user"

    await session.execute(delete(UserRole).where(UserRole.user_id == user_id))
    session.add(UserRole(id=new_id(), user_id=user_id, role=new_role))
    # Platform roles act as admins inside their organizations.
    org_role = "admin" if new_role in (SUPER_ADMIN, DEVELOPER) else new_role
    await session.execute(
        update(OrganizationMember)
        .where(OrganizationMember.user_id == user_id)
        .values(role=org_role)
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    logger.info("user_role_changed user_id=%s previous=%s new=%s", user_id, previous_role, new_role)
    await audit.record(
        actor_id=actor.user_id,
        action_type="change_user_role",
        target_type="user",
        target_id=user_id,
        before={"role": previous_role},
        after={"role": new_role},
        metadata={"user_email": record.email},
    )
    return {
        "success": True,
        "message": f"User role changed from {previous_role} to {new_role}",
        "previousRole": previous_role,
        "newRole": new_role,
    }
