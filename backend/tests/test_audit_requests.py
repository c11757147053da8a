"""Functional tests: Audit Hub: PBC requests, bulk/template creation, evidence submissions."""
import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.models import Audit, AuditRequest


def _artifact_body(**overrides) -> dict:
    base = {
        "title": "Access review export",
        "evidence_type": "access_list",
        "file_name": "access.csv",
        "file_size": 2048,
        "mime_type": "text/csv",
        "collection_date": "2026-01-15",
    }
    base.update(overrides)
    return base


async def _audit(client: AsyncClient, headers: dict, **overrides) -> dict:
    body = {"title": "ISO 27001 surveillance", "audit_type": "iso27001_surveillance"}
    body.update(overrides)
    r = await client.post("/api/v1/audits", json=body, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


async def _request(client: AsyncClient, headers: dict, audit_id: str, **overrides) -> dict:
    body = {"title": "Provide user access listing"}
    body.update(overrides)
    r = await client.post(f"/api/v1/audits/{audit_id}/requests", json=body, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


async def _artifact(client: AsyncClient, headers: dict, **overrides) -> dict:
    r = await client.post("/api/v1/evidence", json=_artifact_body(**overrides), headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


async def _counters(db: AsyncSession, audit_id: str) -> tuple[int, int]:
    a = (await db.execute(
        select(Audit).where(Audit.id == audit_id).execution_options(populate_existing=True)
    )).scalar_one()
    return a.total_requests, a.open_requests


# ═══ Create ═══


@pytest.mark.asyncio
async def test_create_request_defaults(client: AsyncClient, auth):
    h = auth("ciso")
    a = await _audit(client, h)
    r = await _request(client, h, a["id"], priority="urgent")
    assert r["status"] == "open"
    assert r["priority"] == "medium"
    assert r["evidence_count"] == 0
    assert r["requested_by"]


@pytest.mark.asyncio
async def test_create_with_assignee_starts_in_progress(client: AsyncClient, auth, seed, db):
    h = auth("ciso")
    a = await _audit(client, h)
    r = await _request(client, h, a["id"], assigned_to=seed.users["it_admin"].id, priority="critical")
    assert r["status"] == "in_progress"
    assert r["priority"] == "critical"
    assert await _counters(db, a["id"]) == (1, 1)


@pytest.mark.asyncio
async def test_create_request_unknown_control(client: AsyncClient, auth):
    h = auth("ciso")
    a = await _audit(client, h)
    r = await client.post(
        f"/api/v1/audits/{a['id']}/requests", json={"title": "x", "control_id": "missing"}, headers=h,
    )
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_create_request_other_org_control(client: AsyncClient, auth, seed):
    h = auth("ciso")
    a = await _audit(client, h)
    r = await client.post(
        f"/api/v1/audits/{a['id']}/requests",
        json={"title": "x", "control_id": seed.foreign_control.id}, headers=h,
    )
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_engineer_cannot_create_request(client: AsyncClient, auth):
    a = await _audit(client, auth("ciso"))
    r = await client.post(
        f"/api/v1/audits/{a['id']}/requests", json={"title": "x"}, headers=auth("security_engineer"),
    )
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_bulk_create_100_accepted(client: AsyncClient, auth, db):
    h = auth("ciso")
    a = await _audit(client, h)
    items = [{"title": f"PBC item {i}"} for i in range(100)]
    r = await client.post(f"/api/v1/audits/{a['id']}/requests/bulk", json={"requests": items}, headers=h)
    assert r.status_code == 201
    assert r.json()["created"] == 100
    assert await _counters(db, a["id"]) == (100, 100)


@pytest.mark.asyncio
async def test_bulk_create_101_rejected(client: AsyncClient, auth):
    h = auth("ciso")
    a = await _audit(client, h)
    items = [{"title": f"PBC item {i}"} for i in range(101)]
    r = await client.post(f"/api/v1/audits/{a['id']}/requests/bulk", json={"requests": items}, headers=h)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_bulk_create_is_best_effort(client: AsyncClient, auth, seed):
    h = auth("ciso")
    a = await _audit(client, h)
    items = [
        {"title": "Good one"},
        {"title": "Bad control", "control_id": "missing"},
        {"title": "Bad assignee", "assigned_to": seed.users["outsider"].id},
        {"title": "Another good one", "requirement_id": seed.requirement.id},
    ]
    r = await client.post(f"/api/v1/audits/{a['id']}/requests/bulk", json={"requests": items}, headers=h)
    assert r.status_code == 201
    body = r.json()
    assert body["created"] == 2
    assert body["skipped"] == 2
    assert [e["index"] for e in body["errors"]] == [1, 2]
    assert {e["code"] for e in body["errors"]} == {"NOT_FOUND", "VALIDATION_ERROR"}


@pytest.mark.asyncio
async def test_from_template_numbers_references(client: AsyncClient, auth, seed):
    h = auth("ciso")
    a = await _audit(client, h)
    await _request(client, h, a["id"], reference_number="PBC-007")
    ids = [t.id for t in seed.templates]
    r = await client.post(
        f"/api/v1/audits/{a['id']}/requests/from-template",
        json={"template_ids": ids + ["unknown"], "due_date": "2026-03-01"},
        headers=h,
    )
    assert r.status_code == 201
    body = r.json()
    assert body["created"] == 2
    assert body["skipped"] == 1
    assert body["errors"][0]["template_id"] == "unknown"
    refs = [d["reference_number"] for d in body["data"]]
    assert refs == ["PBC-008", "PBC-009"]
    first = body["data"][0]
    assert first["title"] == "User access listing"
    assert first["priority"] == "high"
    assert first["tags"] == ["access"]
    assert first["due_date"] == "2026-03-01"


@pytest.mark.asyncio
async def test_from_template_custom_prefix(client: AsyncClient, auth, seed):
    h = auth("ciso")
    a = await _audit(client, h)
    r = await client.post(
        f"/api/v1/audits/{a['id']}/requests/from-template",
        json={"template_ids": [seed.templates[0].id], "number_prefix": "REQ"},
        headers=h,
    )
    assert r.json()["data"][0]["reference_number"] == "REQ-001"


@pytest.mark.asyncio
async def test_list_templates(client: AsyncClient, auth):
    r = await client.get("/api/v1/audit-request-templates", params={"category": "access_control"}, headers=auth("ciso"))
    assert r.status_code == 200
    assert [t["title"] for t in r.json()["data"]] == ["User access listing"]


# ═══ Lifecycle ═══


@pytest.mark.asyncio
async def test_submission_gate_and_review(client: AsyncClient, auth, seed, db):
    h = auth("ciso")
    a = await _audit(client, h, auditor_ids=[seed.users["auditor"].id])
    req = await _request(client, h, a["id"])
    base = f"/api/v1/audits/{a['id']}/requests/{req['id']}"

    r = await client.put(f"{base}/submit", json={}, headers=h)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "AUDIT_NO_EVIDENCE"

    art = await _artifact(client, h)
    r = await client.post(f"{base}/evidence", json={"artifact_id": art["id"]}, headers=h)
    assert r.status_code == 201
    assert r.json()["status"] == "pending_review"
    assert r.json()["artifact_title"] == "Access review export"

    r = await client.put(f"{base}/submit", json={"notes": "All attached"}, headers=h)
    assert r.status_code == 200
    assert r.json()["status"] == "submitted"
    assert r.json()["submitted_at"] is not None
    assert r.json()["evidence_count"] == 1

    auditor = auth("auditor")
    r = await client.put(f"{base}/review", json={"status": "rejected"}, headers=auditor)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "AUDIT_REJECTION_REQUIRES_NOTES"

    r = await client.put(
        f"{base}/review", json={"status": "rejected", "reviewer_notes": "Export is truncated"}, headers=auditor,
    )
    assert r.status_code == 200
    assert r.json()["status"] == "rejected"
    assert r.json()["reviewer_notes"] == "Export is truncated"
    assert await _counters(db, a["id"]) == (1, 1)

    r = await client.put(f"{base}/submit", json={}, headers=h)
    assert r.json()["status"] == "submitted"
    r = await client.put(f"{base}/review", json={"status": "accepted"}, headers=auditor)
    assert r.json()["status"] == "accepted"
    assert await _counters(db, a["id"]) == (1, 0)

    r = await client.put(f"{base}/close", headers=h)
    assert r.status_code == 200
    assert r.json()["status"] == "closed"


@pytest.mark.asyncio
async def test_review_requires_auditor(client: AsyncClient, auth):
    h = auth("ciso")
    a = await _audit(client, h)
    req = await _request(client, h, a["id"])
    r = await client.put(
        f"/api/v1/audits/{a['id']}/requests/{req['id']}/review", json={"status": "accepted"}, headers=h,
    )
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_review_unknown_decision(client: AsyncClient, auth, seed):
    h = auth("ciso")
    a = await _audit(client, h, auditor_ids=[seed.users["auditor"].id])
    req = await _request(client, h, a["id"])
    r = await client.put(
        f"/api/v1/audits/{a['id']}/requests/{req['id']}/review",
        json={"status": "closed"}, headers=auth("auditor"),
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_review_before_submission_is_invalid(client: AsyncClient, auth, seed):
    h = auth("ciso")
    a = await _audit(client, h, auditor_ids=[seed.users["auditor"].id])
    req = await _request(client, h, a["id"])
    r = await client.put(
        f"/api/v1/audits/{a['id']}/requests/{req['id']}/review",
        json={"status": "accepted"}, headers=auth("auditor"),
    )
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "AUDIT_INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_assign_moves_open_to_in_progress(client: AsyncClient, auth, seed):
    h = auth("ciso")
    a = await _audit(client, h)
    req = await _request(client, h, a["id"])
    r = await client.put(
        f"/api/v1/audits/{a['id']}/requests/{req['id']}/assign",
        json={"assigned_to": seed.users["devops_engineer"].id}, headers=h,
    )
    assert r.status_code == 200
    assert r.json()["status"] == "in_progress"
    assert r.json()["assigned_to"] == seed.users["devops_engineer"].id

    r = await client.put(
        f"/api/v1/audits/{a['id']}/requests/{req['id']}/assign",
        json={"assigned_to": seed.users["inactive"].id}, headers=h,
    )
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_update_request(client: AsyncClient, auth, seed):
    h = auth("ciso")
    a = await _audit(client, h)
    req = await _request(client, h, a["id"])
    r = await client.put(
        f"/api/v1/audits/{a['id']}/requests/{req['id']}",
        json={"priority": "low", "control_id": seed.control2.id}, headers=h,
    )
    assert r.status_code == 200
    assert r.json()["priority"] == "low"
    assert r.json()["control_id"] == seed.control2.id


@pytest.mark.asyncio
async def test_list_requests_filters(client: AsyncClient, auth, seed):
    h = auth("ciso")
    a = await _audit(client, h)
    await _request(client, h, a["id"], title="Firewall rules", priority="high", due_date="2020-06-01")
    await _request(client, h, a["id"], title="Backups", assigned_to=seed.users["it_admin"].id, due_date="2099-01-01")

    base = f"/api/v1/audits/{a['id']}/requests"
    r = await client.get(base, params={"status": "in_progress"}, headers=h)
    assert [x["title"] for x in r.json()["data"]] == ["Backups"]

    r = await client.get(base, params={"overdue": True}, headers=h)
    data = r.json()["data"]
    assert [x["title"] for x in data] == ["Firewall rules"]
    assert data[0]["is_overdue"] is True

    r = await client.get(base, params={"sort": "priority"}, headers=h)
    assert r.json()["data"][0]["priority"] == "high"

    r = await client.get(base, params={"search": "backup"}, headers=h)
    assert r.json()["pagination"]["total"] == 1


# ═══ Evidence submissions ═══


@pytest.mark.asyncio
async def test_duplicate_evidence_rejected(client: AsyncClient, auth):
    h = auth("ciso")
    a = await _audit(client, h)
    req = await _request(client, h, a["id"])
    art = await _artifact(client, h)
    url = f"/api/v1/audits/{a['id']}/requests/{req['id']}/evidence"
    assert (await client.post(url, json={"artifact_id": art["id"]}, headers=h)).status_code == 201
    r = await client.post(url, json={"artifact_id": art["id"]}, headers=h)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "AUDIT_DUPLICATE_EVIDENCE"


@pytest.mark.asyncio
async def test_evidence_from_other_org_rejected(client: AsyncClient, auth):
    h = auth("ciso")
    a = await _audit(client, h)
    req = await _request(client, h, a["id"])
    foreign = await _artifact(client, auth("outsider"))
    r = await client.post(
        f"/api/v1/audits/{a['id']}/requests/{req['id']}/evidence",
        json={"artifact_id": foreign["id"]}, headers=h,
    )
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_evidence_review_requires_notes(client: AsyncClient, auth, seed):
    h = auth("ciso")
    a = await _audit(client, h, auditor_ids=[seed.users["auditor"].id])
    req = await _request(client, h, a["id"])
    art = await _artifact(client, h)
    r = await client.post(
        f"/api/v1/audits/{a['id']}/requests/{req['id']}/evidence", json={"artifact_id": art["id"]}, headers=h,
    )
    link_id = r.json()["id"]
    url = f"/api/v1/audits/{a['id']}/requests/{req['id']}/evidence/{link_id}/review"

    r = await client.put(url, json={"status": "needs_clarification"}, headers=auth("auditor"))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "AUDIT_REJECTION_REQUIRES_NOTES"

    r = await client.put(
        url, json={"status": "needs_clarification", "review_notes": "Which system?"}, headers=auth("auditor"),
    )
    assert r.status_code == 200
    assert r.json()["status"] == "needs_clarification"
    assert r.json()["reviewed_by"] == seed.users["auditor"].id

    r = await client.put(url, json={"status": "accepted"}, headers=auth("auditor"))
    assert r.json()["status"] == "accepted"


@pytest.mark.asyncio
async def test_remove_evidence_permissions(client: AsyncClient, auth):
    h = auth("ciso")
    a = await _audit(client, h)
    req = await _request(client, h, a["id"])
    art = await _artifact(client, auth("it_admin"))
    base = f"/api/v1/audits/{a['id']}/requests/{req['id']}/evidence"
    r = await client.post(base, json={"artifact_id": art["id"]}, headers=auth("it_admin"))
    link_id = r.json()["id"]

    r = await client.delete(f"{base}/{link_id}", headers=auth("security_engineer"))
    assert r.status_code == 403

    r = await client.delete(f"{base}/{link_id}", headers=auth("it_admin"))
    assert r.status_code == 204

    r = await client.get(base, headers=h)
    assert r.json() == []


@pytest.mark.asyncio
async def test_manager_can_remove_others_evidence(client: AsyncClient, auth):
    h = auth("ciso")
    a = await _audit(client, h)
    req = await _request(client, h, a["id"])
    art = await _artifact(client, auth("security_engineer"))
    base = f"/api/v1/audits/{a['id']}/requests/{req['id']}/evidence"
    r = await client.post(base, json={"artifact_id": art["id"]}, headers=auth("security_engineer"))
    r = await client.delete(f"{base}/{r.json()['id']}", headers=auth("compliance_manager"))
    assert r.status_code == 204


@pytest.mark.asyncio
async def test_request_counters_match_rows(client: AsyncClient, auth, db):
    h = auth("ciso")
    a = await _audit(client, h)
    for i in range(3):
        await _request(client, h, a["id"], title=f"PBC {i}")
    rows = (await db.execute(select(AuditRequest).where(AuditRequest.audit_id == a["id"]))).scalars().all()
    assert await _counters(db, a["id"]) == (len(rows), 3)


@pytest.mark.asyncio
async def test_submitted_request_keeps_its_evidence(client: AsyncClient, auth):
    h = auth("ciso")
    a = await _audit(client, h)
    req = await _request(client, h, a["id"])
    art = await _artifact(client, h)
    base = f"/api/v1/audits/{a['id']}/requests/{req['id']}"
    r = await client.post(f"{base}/evidence", json={"artifact_id": art["id"]}, headers=h)
    link_id = r.json()["id"]
    r = await client.put(f"{base}/submit", json={}, headers=h)
    assert r.json()["status"] == "submitted"

    r = await client.delete(f"{base}/evidence/{link_id}", headers=h)
    assert r.status_code == 400

    r = await client.get(f"{base}/evidence", headers=h)
    assert len(r.json()) == 1
    r = await client.get(base, headers=h)
    assert r.json()["evidence_count"] == 1
