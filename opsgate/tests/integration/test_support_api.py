from __future__ import annotations

import bcrypt
import pytest
from sqlalchemy import select

from opsgate.domain.models import EmailQueueItem, IdentityUser
from opsgate.tests.utils.auth import create_user, developer, super_admin
from opsgate.tests.utils.seed import audit_entries, create_org


@pytest.mark.asyncio
async def test_admin_notes_lifecycle(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    org_id = await create_org(sessionmaker)
    user_id = await create_user(sessionmaker)

    created = await client.post(
        "/v1/support/notes",
        headers=headers,
        json={"target_type": "organization", "target_id": org_id, "note": "  Called about invoice  "},
    )
    assert created.status_code == 200
    note = created.json()
    assert note["note"] == "Called about invoice"
    await client.post(
        "/v1/support/notes", headers=headers, json={"target_type": "user", "target_id": user_id, "note": "VIP"}
    )

    org_notes = (
        await client.get("/v1/support/notes", headers=headers, params={"target_type": "organization", "target_id": org_id})
    ).json()
    assert [item["id"] for item in org_notes] == [note["id"]]
    assert len((await client.get("/v1/support/notes", headers=headers)).json()) == 2

    assert (await client.delete(f"/v1/support/notes/{note['id']}", headers=headers)).json() == {"success": True}
    missing = await client.delete(f"/v1/support/notes/{note['id']}", headers=headers)
    assert missing.status_code == 404

    created_entries = await audit_entries(sessionmaker, action_type="create_admin_note", target_id=org_id)
    assert created_entries[0].target_type == "organization"
    assert created_entries[0].after_state["note"] == "Called about invoice"
    deleted = await audit_entries(sessionmaker, action_type="delete_admin_note")
    assert [entry.target_id for entry in deleted] == [note["id"]]
    assert deleted[0].before_state["target_id"] == org_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("body", "field"),
    [
        ({"target_type": "listing", "target_id": "x", "note": "n"}, "target_type"),
        ({"target_type": "user", "target_id": " ", "note": "n"}, "target_id"),
        ({"target_type": "user", "target_id": "x", "note": ""}, "note"),
    ],
)
async def test_admin_note_validation(client, sessionmaker, body, field) -> None:
    _, headers = await super_admin(sessionmaker)
    response = await client.post("/v1/support/notes", headers=headers, json=body)
    assert response.status_code == 400
    assert response.json()["field"] == field
    assert await audit_entries(sessionmaker, action_type="create_admin_note") == []


@pytest.mark.asyncio
async def test_developer_reads_support_data_but_cannot_mutate(client, sessionmaker) -> None:
    _, headers = await developer(sessionmaker)
    user_id = await create_user(sessionmaker)
    assert (await client.get("/v1/support/notes", headers=headers)).status_code == 200
    assert (await client.get("/v1/support/email-queue", headers=headers)).status_code == 200

    writes = [
        ("/v1/support/notes", {"target_type": "user", "target_id": user_id, "note": "n"}),
        ("/v1/support/resend-verification", {"userId": user_id}),
        ("/v1/support/password-reset", {"email": "someone@example.test"}),
        ("/v1/support/set-password", {"userId": user_id, "newPassword": "hunter22"}),
    ]
    for path, body in writes:
        assert (await client.post(path, headers=headers, json=body)).status_code == 403
    assert (await client.delete("/v1/support/notes/anything", headers=headers)).status_code == 403


@pytest.mark.asyncio
async def test_verification_and_reset_emails_are_queued(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    user_id = await create_user(sessionmaker, email="owner@example.test")

    resent = await client.post("/v1/support/resend-verification", headers=headers, json={"userId": user_id})
    assert resent.json() == {"success": True, "email": "owner@example.test"}
    reset = await client.post("/v1/support/password-reset", headers=headers, json={"email": "owner@example.test"})
    assert reset.json() == {"success": True, "email": "owner@example.test"}

    queue = (await client.get("/v1/support/email-queue", headers=headers)).json()
    assert sorted(item["template"] for item in queue) == ["password_reset", "signup_verification"]
    assert {item["status"] for item in queue} == {"pending"}
    # Listings never carry the link payload.
    assert all("payload" not in item for item in queue)

    entry = (await audit_entries(sessionmaker, action_type="resend_verification_email"))[0]
    assert entry.target_id == user_id
    assert entry.before_state["email_confirmed"] is False
    assert entry.after_state == {"email": "owner@example.test", "verification_sent": True}
    reset_entry = (await audit_entries(sessionmaker, action_type="send_password_reset"))[0]
    assert reset_entry.target_id == "owner@example.test"


@pytest.mark.asyncio
async def test_password_reset_for_unknown_email_queues_nothing(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    response = await client.post("/v1/support/password-reset", headers=headers, json={"email": "ghost@example.test"})
    assert response.status_code == 200
    assert response.json()["success"] is True
    async with sessionmaker() as session:
        assert (await session.execute(select(EmailQueueItem))).scalars().all() == []


@pytest.mark.asyncio
async def test_resend_verification_requires_known_user(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    missing = await client.post("/v1/support/resend-verification", headers=headers, json={"userId": "nobody"})
    assert missing.status_code == 404
    blank = await client.post("/v1/support/resend-verification", headers=headers, json={})
    assert blank.status_code == 400
    assert blank.json()["field"] == "userId"


@pytest.mark.asyncio
async def test_set_password_stores_a_bcrypt_hash(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    user_id = await create_user(sessionmaker)

    response = await client.post(
        "/v1/support/set-password", headers=headers, json={"userId": user_id, "newPassword": "correct horse"}
    )
    assert response.json() == {"success": True, "userId": user_id}
    async with sessionmaker() as session:
        stored = (await session.get(IdentityUser, user_id)).password_hash
    assert stored.startswith("$2")
    assert bcrypt.checkpw(b"correct horse", stored.encode("utf-8"))

    entry = (await audit_entries(sessionmaker, action_type="set_user_password"))[0]
    assert entry.after_state == {"password_updated": True}
    assert "correct horse" not in str(entry.after_state) + str(entry.before_state) + str(entry.metadata_json)


@pytest.mark.asyncio
async def test_set_password_validation(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    user_id = await create_user(sessionmaker)

    short = await client.post("/v1/support/set-password", headers=headers, json={"userId": user_id, "newPassword": "abc"})
    assert short.status_code == 400
    assert short.json()["field"] == "newPassword"
    too_long = await client.post(
        "/v1/support/set-password", headers=headers, json={"userId": user_id, "newPassword": "x" * 73}
    )
    assert too_long.status_code == 400
    unknown = await client.post(
        "/v1/support/set-password", headers=headers, json={"userId": "nobody", "newPassword": "long enough"}
    )
    assert unknown.status_code == 404
    assert await audit_entries(sessionmaker, action_type="set_user_password") == []
