from __future__ import annotations

import pytest

from opsgate.tests.utils.auth import create_user, super_admin
from opsgate.tests.utils.seed import add_listing, add_member, add_transaction, audit_entries, create_org


async def _create_request(client, headers, **payload) -> dict:
    response = await client.post("/v1/gdpr/requests", headers=headers, json=payload)
    assert response.status_code == 200, response.text
    return response.json()


@pytest.mark.asyncio
async def test_request_moves_to_terminal_state_once(client, sessionmaker) -> None:
    # A completed request can neither be completed again nor rejected.
    _, headers = await super_admin(sessionmaker)
    created = await _create_request(
        client, headers, request_type="data_deletion", target_type="user", target_email="gone@example.test"
    )
    assert created["status"] == "pending"

    done = await client.patch(f"/v1/gdpr/requests/{created['id']}", headers=headers, json={"action": "complete"})
    assert done.status_code == 200
    assert done.json()["status"] == "completed"

    for action in ("complete", "reject"):
        again = await client.patch(f"/v1/gdpr/requests/{created['id']}", headers=headers, json={"action": action})
        assert again.status_code == 409
        assert again.json()["code"] == "GDPR_REQUEST_CLOSED"

    listing = await client.get("/v1/gdpr/requests", headers=headers, params={"status": "completed"})
    assert [row["id"] for row in listing.json()["requests"]] == [created["id"]]


@pytest.mark.asyncio
async def test_reject_records_reason(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    created = await _create_request(
        client, headers, request_type="access_request", target_type="organization", target_id="org-x"
    )
    response = await client.patch(
        f"/v1/gdpr/requests/{created['id']}", headers=headers, json={"action": "reject", "reason": "Unverified"}
    )
    assert response.json()["status"] == "rejected"
    entries = await audit_entries(sessionmaker, action_type="reject_gdpr_request")
    assert entries[0].before_state == {"status": "pending"}
    assert entries[0].after_state["rejection_reason"] == "Unverified"


@pytest.mark.asyncio
async def test_create_validates_type_and_target(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    bad_type = await client.post(
        "/v1/gdpr/requests", headers=headers, json={"request_type": "erase", "target_type": "user", "target_id": "u"}
    )
    assert bad_type.status_code == 400
    no_target = await client.post(
        "/v1/gdpr/requests", headers=headers, json={"request_type": "data_export", "target_type": "user"}
    )
    assert no_target.status_code == 400
    bad_action = await client.patch("/v1/gdpr/requests/missing", headers=headers, json={"action": "archive"})
    assert bad_action.status_code == 400


@pytest.mark.asyncio
async def test_user_export_collects_memberships_and_activity(client, sessionmaker) -> None:
    # Exporting leaves the request pending and never includes credentials.
    actor_id, headers = await super_admin(sessionmaker)
    subject_id = await create_user(sessionmaker, email="subject@example.test")
    org_id = await create_org(sessionmaker)
    await add_member(sessionmaker, organization_id=org_id, user_id=subject_id, role="admin")

    created = await _create_request(
        client, headers, request_type="data_export", target_type="user", target_email="subject@example.test"
    )
    response = await client.post(f"/v1/gdpr/requests/{created['id']}/export", headers=headers)
    assert response.status_code == 200
    body = response.json()
    export = body["export_data"]
    assert body["filename"].startswith("gdpr_export_user_")
    assert export["organization_memberships"][0]["organization_id"] == org_id
    assert export["auth_metadata"]["email"] == "subject@example.test"
    assert "token_hash" not in str(export)

    listing = await client.get("/v1/gdpr/requests", headers=headers)
    assert listing.json()["requests"][0]["status"] == "pending"
    entries = await audit_entries(sessionmaker, action_type="generate_gdpr_export")
    assert entries[0].actor_id == actor_id


@pytest.mark.asyncio
async def test_organization_export_includes_ledger_and_listings(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    org_id = await create_org(sessionmaker, name="Export Co")
    await add_listing(sessionmaker, organization_id=org_id)
    await add_transaction(sessionmaker, organization_id=org_id, amount="12.00", type="purchase")

    created = await _create_request(
        client, headers, request_type="access_request", target_type="organization", target_id=org_id
    )
    export = (await client.post(f"/v1/gdpr/requests/{created['id']}/export", headers=headers)).json()["export_data"]
    assert export["organization"]["business_name"] == "Export Co"
    assert len(export["listings"]) == 1
    assert export["credit_ledger"][0]["amount"] == 12.0


@pytest.mark.asyncio
async def test_deletion_requests_cannot_be_exported(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    created = await _create_request(
        client, headers, request_type="data_deletion", target_type="user", target_id="someone"
    )
    response = await client.post(f"/v1/gdpr/requests/{created['id']}/export", headers=headers)
    assert response.status_code == 400
    missing = await client.post("/v1/gdpr/requests/nope/export", headers=headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_organization_export_requires_target_id(client, sessionmaker) -> None:
    # An email alone cannot identify an organization, so no empty export is produced.
    _, headers = await super_admin(sessionmaker)
    created = await _create_request(
        client, headers, request_type="data_export", target_type="organization", target_email="owner@example.test"
    )
    response = await client.post(f"/v1/gdpr/requests/{created['id']}/export", headers=headers)
    assert response.status_code == 400
    assert response.json()["field"] == "target_id"
    assert await audit_entries(sessionmaker, action_type="generate_gdpr_export") == []
