from __future__ import annotations

import pytest
from sqlalchemy import select

from opsgate.domain.models import IdentityUser, OrganizationMember, UserRole
from opsgate.tests.utils.auth import auth_headers, create_user, developer, super_admin
from opsgate.tests.utils.seed import add_member, audit_entries, create_org


@pytest.mark.asyncio
async def test_list_users_joins_identity_and_memberships(client, sessionmaker) -> None:
    _, headers = await developer(sessionmaker)
    org_id = await create_org(sessionmaker, name="Team Co")
    user_id = await create_user(
        sessionmaker, roles=["admin"], email="agent@example.test", user_metadata={"full_name": "Ada Agent"}
    )
    await add_member(sessionmaker, organization_id=org_id, user_id=user_id, role="admin")

    response = await client.get("/v1/users", headers=headers, params={"role": "admin"})
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    user = body["users"][0]
    assert user["email"] == "agent@example.test"
    assert user["full_name"] == "Ada Agent"
    assert user["suspended"] is False
    assert user["organizations"] == [{"organization_id": org_id, "organization_name": "Team Co", "role": "admin"}]


@pytest.mark.asyncio
async def test_bulk_suspend_and_unsuspend(client, sessionmaker) -> None:
    actor_id, headers = await super_admin(sessionmaker)
    target_id = await create_user(sessionmaker, roles=["user"])

    suspended = await client.post(
        "/v1/users/bulk-action",
        headers=headers,
        json={"userIds": [target_id, "missing-user"], "action": "suspend", "reason": "Chargeback"},
    )
    assert suspended.status_code == 200
    body = suspended.json()
    assert body["success"] is False
    assert body["message"] == "1 users suspended successfully, 1 failed"

    async with sessionmaker() as session:
        user = await session.get(IdentityUser, target_id)
    assert user.user_metadata["suspended"] is True
    assert user.user_metadata["suspended_reason"] == "Chargeback"
    assert user.user_metadata["suspended_by"] == actor_id

    restored = await client.post(
        "/v1/users/bulk-action", headers=headers, json={"userIds": [target_id], "action": "unsuspend"}
    )
    assert restored.json()["success"] is True
    listing = (await client.get("/v1/users", headers=headers, params={"role": "user"})).json()
    assert listing["users"][0]["suspended"] is False

    entries = await audit_entries(sessionmaker, target_id=target_id)
    assert [entry.action_type for entry in entries] == ["suspend_user", "unsuspend_user"]
    assert entries[0].metadata_json == {"reason": "Chargeback", "bulk_action": True}


@pytest.mark.asyncio
async def test_bulk_action_validates_payload(client, sessionmaker, settings) -> None:
    _, headers = await super_admin(sessionmaker)
    bad_action = await client.post(
        "/v1/users/bulk-action", headers=headers, json={"userIds": ["u"], "action": "ban"}
    )
    assert bad_action.status_code == 400
    empty = await client.post("/v1/users/bulk-action", headers=headers, json={"userIds": [], "action": "suspend"})
    assert empty.json()["error"] == "userIds array is required"
    too_many = await client.post(
        "/v1/users/bulk-action",
        headers=headers,
        json={"userIds": [f"u-{i}" for i in range(settings.bulk_user_max_items + 1)], "action": "suspend"},
    )
    assert too_many.status_code == 400


@pytest.mark.asyncio
async def test_delete_users_removes_identity_and_memberships(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    org_id = await create_org(sessionmaker)
    target_id = await create_user(sessionmaker, roles=["user"], email="leaving@example.test")
    await add_member(sessionmaker, organization_id=org_id, user_id=target_id)

    response = await client.post("/v1/users/delete", headers=headers, json={"userIds": [target_id]})
    assert response.status_code == 200
    assert response.json()["message"] == "1 user(s) deleted permanently"
    assert response.json()["success"] is True

    async with sessionmaker() as session:
        assert await session.get(IdentityUser, target_id) is None
        roles = (await session.execute(select(UserRole).where(UserRole.user_id == target_id))).scalars().all()
        members = (
            await session.execute(select(OrganizationMember).where(OrganizationMember.user_id == target_id))
        ).scalars().all()
    assert roles == [] and members == []

    entries = await audit_entries(sessionmaker, action_type="delete_user")
    assert entries[0].metadata_json == {"deleted_user_email": "leaving@example.test", "permanent": True}


@pytest.mark.asyncio
async def test_super_admin_cannot_delete_or_demote_self(client, sessionmaker) -> None:
    actor_id, headers = await super_admin(sessionmaker)
    delete_self = await client.post("/v1/users/delete", headers=headers, json={"userIds": [actor_id]})
    assert delete_self.status_code == 400
    assert delete_self.json()["error"] == "Cannot delete your own account"

    demote_self = await client.post(
        "/v1/users/change-role", headers=headers, json={"userId": actor_id, "newRole": "user"}
    )
    assert demote_self.status_code == 400
    assert demote_self.json()["error"] == "Cannot change your own role"


@pytest.mark.asyncio
async def test_change_role_updates_platform_and_membership_roles(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    org_id = await create_org(sessionmaker)
    target_id = await create_user(sessionmaker, roles=["user"])
    await add_member(sessionmaker, organization_id=org_id, user_id=target_id)

    response = await client.post(
        "/v1/users/change-role", headers=headers, json={"userId": target_id, "newRole": "developer"}
    )
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "User role changed from user to developer",
        "previousRole": "user",
        "newRole": "developer",
    }
    async with sessionmaker() as session:
        roles = (await session.execute(select(UserRole.role).where(UserRole.user_id == target_id))).scalars().all()
        member_role = (
            await session.execute(select(OrganizationMember.role).where(OrganizationMember.user_id == target_id))
        ).scalar_one()
    assert roles == ["developer"]
    assert member_role == "admin"

    invalid = await client.post(
        "/v1/users/change-role", headers=headers, json={"userId": target_id, "newRole": "owner"}
    )
    assert invalid.status_code == 400
    missing = await client.post(
        "/v1/users/change-role", headers=headers, json={"userId": "ghost", "newRole": "admin"}
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_role_change_takes_effect_on_next_request(client, sessionmaker) -> None:
    # Roles are resolved per request, so a promotion needs no new token.
    _, admin_headers = await super_admin(sessionmaker)
    target_id = await create_user(sessionmaker, roles=["user"])
    target_headers = await auth_headers(sessionmaker, target_id)
    assert (await client.get("/v1/flags", headers=target_headers)).status_code == 403

    await client.post("/v1/users/change-role", headers=admin_headers, json={"userId": target_id, "newRole": "developer"})
    assert (await client.get("/v1/flags", headers=target_headers)).status_code == 200
