"""Smoke tests: health endpoint and the shared error envelope."""
import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    r = await client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["app"] == "GRC Core"
    assert data["database"] == "connected"
    assert data["storage"] == "disabled"


@pytest.mark.asyncio
async def test_missing_principal_is_unauthorized(client: AsyncClient):
    r = await client.get("/api/v1/policies")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_unknown_role_is_forbidden(client: AsyncClient):
    r = await client.get("/api/v1/policies", headers={
        "X-User-Id": "u1", "X-Org-Id": "o1", "X-User-Role": "superuser",
    })
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_body_validation_uses_error_envelope(client: AsyncClient, auth):
    r = await client.post("/api/v1/policies", json={"title": "No identifier"}, headers=auth("ciso"))
    assert r.status_code == 400
    err = r.json()["error"]
    assert err["code"] == "VALIDATION_ERROR"
    assert err["message"]
