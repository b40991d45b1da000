from __future__ import annotations

from datetime import datetime, timezone

import pytest

from opsgate.domain.models import DiscountCode
from opsgate.tests.utils.auth import create_user, developer, super_admin
from opsgate.tests.utils.seed import add_transaction, create_org


@pytest.mark.asyncio
async def test_overview_aggregates_platform_counts(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    await create_org(sessionmaker, account_status="active")
    await create_org(sessionmaker)
    await create_user(sessionmaker, roles=["admin"])
    await client.post("/v1/discounts", headers=headers, json={"code": "A", "discount_value": 10})
    await client.post("/v1/discounts", headers=headers, json={"code": "B", "discount_value": 10, "is_active": False})
    await client.post("/v1/flags", headers=headers, json={"name": "x", "is_enabled": False})

    body = (await client.get("/v1/analytics/overview", headers=headers)).json()
    assert body["organizations"] == {"total": 2, "active": 1, "trial": 1}
    assert body["users"] == {"total": 2, "admins": 1}
    assert body["discounts"] == {"total": 2, "active": 1, "totalRedemptions": 0}
    assert body["features"] == {"total": 1, "enabled": 0}


@pytest.mark.asyncio
async def test_overview_credit_totals_for_super_admin(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    org_id = await create_org(sessionmaker)
    await add_transaction(sessionmaker, organization_id=org_id, amount="100", type="grant")
    await add_transaction(sessionmaker, organization_id=org_id, amount="20", type="purchase")
    await add_transaction(sessionmaker, organization_id=org_id, amount="-35.5", type="usage")

    credits = (await client.get("/v1/analytics/overview", headers=headers)).json()["credits"]
    assert credits == {"granted": 120.0, "used": 35.5, "balance": 84.5}


@pytest.mark.asyncio
async def test_overview_redacts_revenue_for_developers(client, sessionmaker) -> None:
    _, headers = await developer(sessionmaker)
    org_id = await create_org(sessionmaker)
    await add_transaction(sessionmaker, organization_id=org_id, amount="100", type="grant")
    body = (await client.get("/v1/analytics/overview", headers=headers)).json()
    assert body["credits"]["redacted"] is True
    assert body["organizations"]["total"] == 1


@pytest.mark.asyncio
async def test_recent_signups_are_newest_first(client, sessionmaker) -> None:
    _, headers = await developer(sessionmaker)
    older = await create_org(sessionmaker, name="Older", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    newer = await create_org(sessionmaker, name="Newer", created_at=datetime(2026, 3, 1, tzinfo=timezone.utc))

    body = (await client.get("/v1/analytics/signups", headers=headers)).json()
    assert [item["id"] for item in body] == [newer, older]
    assert body[0]["name"] == "Newer"
    assert set(body[0]) == {"id", "name", "account_status", "created_at"}

    limited = (await client.get("/v1/analytics/signups", headers=headers, params={"limit": 1})).json()
    assert [item["id"] for item in limited] == [newer]
    assert (await client.get("/v1/analytics/signups", headers=headers, params={"limit": 0})).status_code == 422


@pytest.mark.asyncio
async def test_feature_usage_groups_usage_rows(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    org_id = await create_org(sessionmaker)
    await add_transaction(sessionmaker, organization_id=org_id, amount="-2", type="usage", feature="ai_description")
    await add_transaction(sessionmaker, organization_id=org_id, amount="-3", type="usage", feature="ai_description")
    await add_transaction(sessionmaker, organization_id=org_id, amount="-1.5", type="usage", feature="photo_enhance")
    await add_transaction(sessionmaker, organization_id=org_id, amount="-1", type="usage")
    await add_transaction(sessionmaker, organization_id=org_id, amount="50", type="grant", feature="ai_description")

    body = (await client.get("/v1/analytics/features", headers=headers)).json()
    assert body == [
        {"feature": "ai_description", "count": 2, "totalCredits": 5.0},
        {"feature": "photo_enhance", "count": 1, "totalCredits": 1.5},
        {"feature": "unknown", "count": 1, "totalCredits": 1.0},
    ]


@pytest.mark.asyncio
async def test_feature_usage_hides_credits_from_developers(client, sessionmaker) -> None:
    _, headers = await developer(sessionmaker)
    org_id = await create_org(sessionmaker)
    await add_transaction(sessionmaker, organization_id=org_id, amount="-4", type="usage", feature="ai_description")

    body = (await client.get("/v1/analytics/features", headers=headers)).json()
    assert body == [{"feature": "ai_description", "count": 1, "totalCredits": None, "totalCreditsRedacted": True}]


@pytest.mark.asyncio
async def test_discount_stats_order_by_redemptions(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    quiet = (await client.post("/v1/discounts", headers=headers, json={"code": "QUIET", "discount_value": 5})).json()
    busy = (await client.post("/v1/discounts", headers=headers, json={"code": "BUSY", "discount_value": 10})).json()
    async with sessionmaker() as session:
        (await session.get(DiscountCode, busy["id"])).times_used = 7
        await session.commit()

    body = (await client.get("/v1/analytics/discounts", headers=headers)).json()
    assert [item["code"] for item in body] == ["BUSY", "QUIET"]
    assert body[0]["times_used"] == 7
    assert body[1]["id"] == quiet["id"]
    assert set(body[0]) == {
        "id",
        "code",
        "discount_type",
        "discount_value",
        "times_used",
        "max_uses",
        "is_active",
        "credit_grant_amount",
    }
