from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from opsgate.domain.models import UserRole
from opsgate.tests.utils.auth import auth_headers, create_principal, create_user, developer, super_admin


@pytest.mark.asyncio
async def test_protected_endpoint_requires_auth(client) -> None:
    # Missing credentials are rejected before any handler logic runs.
    response = await client.get("/v1/organizations")
    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "AUTH_UNAUTHENTICATED"
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_invalid_and_expired_tokens_are_rejected(client, sessionmaker) -> None:
    response = await client.get("/v1/users", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid or expired token"

    user_id = await create_user(sessionmaker, roles=["super_admin"])
    expired = await auth_headers(sessionmaker, user_id, ttl=timedelta(seconds=-1))
    response = await client.get("/v1/users", headers=expired)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_plain_user_is_forbidden_from_staff_routes(client, sessionmaker) -> None:
    # Organization admins hold no platform tier.
    _, headers = await create_principal(sessionmaker, roles=["admin"])
    response = await client.get("/v1/organizations", headers=headers)
    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "AUTH_FORBIDDEN"
    assert body["required_tier"] == "staff"


@pytest.mark.asyncio
async def test_developer_reads_but_cannot_mutate(client, sessionmaker) -> None:
    _, headers = await developer(sessionmaker)
    response = await client.get("/v1/flags", headers=headers)
    assert response.status_code == 200
    assert response.json() == []

    response = await client.post("/v1/flags", headers=headers, json={"name": "beta"})
    assert response.status_code == 403
    assert response.json()["required_tier"] == "super_admin"


@pytest.mark.asyncio
async def test_authorization_precedes_body_validation(client, sessionmaker) -> None:
    # A malformed body from an unauthorized caller still yields 403, not 400.
    _, headers = await developer(sessionmaker)
    response = await client.post("/v1/credits/grant", headers=headers, content=b"not json")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_health_is_public_and_echoes_request_id(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert "db_pool" in body
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_request_id_is_generated_when_absent(client) -> None:
    response = await client.get("/v1/organizations")
    assert response.status_code == 401
    assert response.headers.get("X-Request-Id")


@pytest.mark.asyncio
async def test_malformed_body_maps_to_validation_error(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    response = await client.post("/v1/gdpr/requests", headers=headers, json={"target_type": "user"})
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["field"] == "request_type"
    assert body["errors"][0]["loc"] == ["body", "request_type"]


@pytest.mark.asyncio
async def test_unversioned_alias_matches_v1(client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    versioned = await client.get("/v1/usage-rates", headers=headers)
    legacy = await client.get("/usage-rates", headers=headers)
    assert versioned.status_code == legacy.status_code == 200
    assert versioned.json() == legacy.json()


@pytest.mark.asyncio
async def test_unknown_route_uses_error_shape(client) -> None:
    response = await client.get("/v1/does-not-exist")
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_openapi_marks_gated_routes_with_bearer_auth(client) -> None:
    schema = (await client.get("/openapi.json")).json()
    assert schema["components"]["securitySchemes"]["BearerAuth"]["scheme"] == "bearer"
    assert "security" not in schema["paths"]["/v1/health"]["get"]
    assert schema["paths"]["/v1/credits/grant"]["post"]["security"] == [{"BearerAuth": []}]


@pytest.mark.asyncio
async def test_role_lookup_failure_is_a_dependency_failure(app, client, sessionmaker) -> None:
    # A store error while reading roles is a 500, never a 403 for "no roles".
    _, headers = await super_admin(sessionmaker)
    async with app.state.engine.begin() as conn:
        await conn.run_sync(UserRole.__table__.drop)

    response = await client.get("/v1/users", headers=headers)
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to verify permissions", "code": "DEPENDENCY_FAILURE"}


class _FailingIdentity:
    def __init__(self, inner) -> None:
        self._inner = inner

    async def verify_token(self, token: str):
        raise OperationalError("SELECT 1", {}, Exception("identity store unavailable"))

    def __getattr__(self, name: str):
        return getattr(self._inner, name)


@pytest.mark.asyncio
async def test_token_verification_failure_is_a_dependency_failure(app, client, sessionmaker) -> None:
    _, headers = await super_admin(sessionmaker)
    original = app.state.identity
    app.state.identity = _FailingIdentity(original)
    try:
        response = await client.get("/v1/users", headers=headers)
    finally:
        app.state.identity = original
    assert response.status_code == 500
    body = response.json()
    assert body["code"] == "DEPENDENCY_FAILURE"
    # Store error text never reaches the caller.
    assert "identity store unavailable" not in response.text
