"""Functional tests: audit trail written after state-changing actions."""
import pytest
from httpx import AsyncClient


async def _policy(client: AsyncClient, headers: dict, identifier: str = "POL-001") -> dict:
    r = await client.post(
        "/api/v1/policies",
        json={"identifier": identifier, "title": "Acceptable Use", "category": "acceptable_use",
              "content": "<p>Be nice.</p>"},
        headers=headers,
    )
    assert r.status_code == 201
    return r.json()


@pytest.mark.asyncio
async def test_actions_are_logged(client: AsyncClient, auth, seed):
    p = await _policy(client, auth("security_engineer"))

    r = await client.get("/api/v1/audit-log", headers=auth("ciso"))
    assert r.status_code == 200
    actions = {e["action"] for e in r.json()["data"]}
    assert {"policy.created", "policy_version.created"} <= actions

    r = await client.get("/api/v1/audit-log", params={"action": "policy.created"}, headers=auth("ciso"))
    [entry] = r.json()["data"]
    assert entry["resource_type"] == "policy"
    assert entry["resource_id"] == p["id"]
    assert entry["actor_id"] == seed.users["security_engineer"].id
    assert entry["actor_name"] == seed.users["security_engineer"].display_name
    assert entry["metadata"]["identifier"] == "POL-001"


@pytest.mark.asyncio
async def test_status_change_metadata(client: AsyncClient, auth, seed):
    r = await client.post(
        "/api/v1/audits",
        json={"title": "Internal audit", "audit_type": "internal", "auditor_ids": [seed.users["auditor"].id]},
        headers=auth("ciso"),
    )
    audit_id = r.json()["id"]
    await client.put(f"/api/v1/audits/{audit_id}/status", json={"status": "fieldwork"}, headers=auth("ciso"))

    r = await client.get(
        "/api/v1/audit-log",
        params={"resource_type": "audit", "resource_id": audit_id, "action": "audit.status_changed"},
        headers=auth("auditor"),
    )
    [entry] = r.json()["data"]
    assert entry["metadata"]["from_status"] == "planning"
    assert entry["metadata"]["to_status"] == "fieldwork"


@pytest.mark.asyncio
async def test_failed_actions_are_not_logged(client: AsyncClient, auth, seed):
    await _policy(client, auth("ciso"))
    r = await client.post(
        "/api/v1/policies",
        json={"identifier": "POL-001", "title": "Dup", "category": "custom", "content": "<p>x</p>"},
        headers=auth("ciso"),
    )
    assert r.status_code == 409

    r = await client.get("/api/v1/audit-log", params={"action": "policy.created"}, headers=auth("ciso"))
    assert r.json()["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_filter_by_actor_and_org_scope(client: AsyncClient, auth, seed):
    await _policy(client, auth("ciso"))
    await _policy(client, auth("compliance_manager"), identifier="POL-002")
    await _policy(client, auth("outsider"))

    r = await client.get(
        "/api/v1/audit-log",
        params={"actor_id": seed.users["compliance_manager"].id, "action": "policy.created"},
        headers=auth("ciso"),
    )
    assert r.json()["pagination"]["total"] == 1

    r = await client.get("/api/v1/audit-log", params={"action": "policy.created"}, headers=auth("ciso"))
    assert r.json()["pagination"]["total"] == 2

    r = await client.get("/api/v1/audit-log", params={"action": "policy.created"}, headers=auth("outsider"))
    assert r.json()["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_audit_log_role_gate(client: AsyncClient, auth, seed):
    r = await client.get("/api/v1/audit-log", headers=auth("security_engineer"))
    assert r.status_code == 403


async def _audit_with_activity(client: AsyncClient, auth, title: str, auditor_ids: list[str]) -> dict:
    r = await client.post(
        "/api/v1/audits",
        json={"title": title, "audit_type": "internal", "auditor_ids": auditor_ids},
        headers=auth("ciso"),
    )
    audit_id = r.json()["id"]
    r = await client.post(
        f"/api/v1/audits/{audit_id}/requests", json={"title": f"{title} request"}, headers=auth("ciso"),
    )
    request_id = r.json()["id"]
    comments = {}
    for internal in (False, True):
        r = await client.post(
            f"/api/v1/audits/{audit_id}/comments",
            json={"target_type": "audit", "target_id": audit_id, "body": "note", "is_internal": internal},
            headers=auth("ciso"),
        )
        comments[internal] = r.json()["id"]
    return {"id": audit_id, "request_id": request_id, "public_comment": comments[False],
            "internal_comment": comments[True]}


@pytest.mark.asyncio
async def test_auditor_sees_only_assigned_engagements(client: AsyncClient, auth, seed):
    mine = await _audit_with_activity(client, auth, "SOC 2 fieldwork", [seed.users["auditor"].id])
    other = await _audit_with_activity(client, auth, "Board-only review", [])
    await _policy(client, auth("ciso"))

    r = await client.get("/api/v1/audit-log", params={"resource_id": other["id"]}, headers=auth("auditor"))
    assert r.status_code == 200
    assert r.json()["pagination"]["total"] == 0

    r = await client.get("/api/v1/audit-log", params={"resource_type": "audit"}, headers=auth("auditor"))
    assert {e["resource_id"] for e in r.json()["data"]} == {mine["id"]}

    r = await client.get("/api/v1/audit-log", params={"resource_type": "audit_request"}, headers=auth("auditor"))
    assert [e["resource_id"] for e in r.json()["data"]] == [mine["request_id"]]

    r = await client.get("/api/v1/audit-log", params={"resource_type": "audit_comment"}, headers=auth("auditor"))
    assert [e["resource_id"] for e in r.json()["data"]] == [mine["public_comment"]]

    r = await client.get("/api/v1/audit-log", params={"action": "policy.created"}, headers=auth("auditor"))
    assert r.json()["pagination"]["total"] == 1

    r = await client.get("/api/v1/audit-log", params={"resource_type": "audit_comment"}, headers=auth("ciso"))
    assert r.json()["pagination"]["total"] == 4
