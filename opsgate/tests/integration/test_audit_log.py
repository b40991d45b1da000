from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from opsgate.persistence.db import build_sessionmaker
from opsgate.services import telemetry
from opsgate.services.audit import AUDIT_WRITE_FAILED_COUNTER, AuditTrail
from opsgate.tests.utils.auth import developer, super_admin
from opsgate.tests.utils.seed import create_org


@pytest.mark.asyncio
async def test_audit_failure_does_not_fail_the_mutation(app, client, sessionmaker, tmp_path) -> None:
    # Point the audit trail at a store without tables; the grant must still commit.
    broken_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'no-tables.db'}")
    original = app.state.audit
    app.state.audit = AuditTrail(build_sessionmaker(broken_engine), app.state.identity)
    try:
        _, headers = await super_admin(sessionmaker)
        org_id = await create_org(sessionmaker)
        response = await client.post(
            "/v1/credits/grant", headers=headers, json={"organization_id": org_id, "amount": 5}
        )
        assert response.status_code == 200
        assert response.json()["new_balance"] == 5.0
        assert telemetry.counters_snapshot()[AUDIT_WRITE_FAILED_COUNTER] == 1
    finally:
        app.state.audit = original
        await broken_engine.dispose()

    # The healthy trail never saw the failed entry.
    logs = (await client.get("/v1/audit-log", headers=headers)).json()
    assert logs["total"] == 0


@pytest.mark.asyncio
async def test_audit_log_lists_newest_first_with_actor_email(client, sessionmaker) -> None:
    actor_id, headers = await super_admin(sessionmaker)
    org_id = await create_org(sessionmaker)
    await client.post("/v1/credits/grant", headers=headers, json={"organization_id": org_id, "amount": 5})
    await client.patch(f"/v1/organizations/{org_id}/plan", headers=headers, json={"plan": "pro"})

    _, dev_headers = await developer(sessionmaker)
    response = await client.get("/v1/audit-log", headers=dev_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert [log["action_type"] for log in body["logs"]] == ["change_plan", "grant_credits"]
    assert body["logs"][0]["actor_id"] == actor_id
    assert body["logs"][0]["actor_email"].endswith("@example.test")
    assert body["limit"] == 50
    assert body["offset"] == 0


@pytest.mark.asyncio
async def test_audit_log_filters_and_clamps_limit(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    for plan in ("starter", "pro", "starter"):
        org_id = await create_org(sessionmaker)
        await client.patch(f"/v1/organizations/{org_id}/plan", headers=headers, json={"plan": plan})
    await client.post("/v1/flags", headers=headers, json={"name": "beta_search"})

    by_type = (await client.get("/v1/audit-log", headers=headers, params={"actionType": "change_plan"})).json()
    assert by_type["total"] == 3
    by_search = (await client.get("/v1/audit-log", headers=headers, params={"search": "feature_flag"})).json()
    assert [log["action_type"] for log in by_search["logs"]] == ["create_feature_flag"]

    page = (await client.get("/v1/audit-log", headers=headers, params={"limit": 2, "offset": 1})).json()
    assert len(page["logs"]) == 2
    assert page["total"] == 4
    clamped = (await client.get("/v1/audit-log", headers=headers, params={"limit": 100000})).json()
    assert clamped["limit"] == 500
