"""Functional tests: Evidence store: artifacts, versions, links, evaluations, files."""
from datetime import timedelta

import pytest
from httpx import AsyncClient

from grc_core.config import settings
from grc_core.models.base import utcnow
from grc_core.services.evidence import freshness_status


def _today():
    return utcnow().date()


def _body(**overrides) -> dict:
    base = {
        "title": "Q3 access review",
        "description": "Quarterly review of privileged accounts",
        "evidence_type": "access_list",
        "file_name": "access-review-q3.xlsx",
        "file_size": 48213,
        "mime_type": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "collection_date": _today().isoformat(),
        "freshness_period_days": 90,
        "tags": ["access", "quarterly"],
    }
    base.update(overrides)
    return base


async def _create(client: AsyncClient, headers: dict, **overrides) -> dict:
    r = await client.post("/api/v1/evidence", json=_body(**overrides), headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


async def _to_review(client: AsyncClient, auth, artifact_id: str) -> None:
    r = await client.put(
        f"/api/v1/evidence/{artifact_id}/status", json={"status": "pending_review"}, headers=auth("ciso"),
    )
    assert r.status_code == 200, r.text


# ── Create ──


@pytest.mark.asyncio
async def test_create_stages_draft(client: AsyncClient, auth, seed):
    a = await _create(client, auth("devops_engineer"))
    assert a["status"] == "draft"
    assert a["version"] == 1
    assert a["is_current"] is True
    assert a["uploaded_by"] == seed.users["devops_engineer"].id
    assert a["object_key"] == f"{seed.org.id}/{a['id']}/1/access-review-q3.xlsx"
    assert a["expires_at"] is not None
    assert a["freshness_status"] == "fresh"
    assert a["upload"] is None


@pytest.mark.asyncio
async def test_create_returns_upload_url_when_storage_configured(client: AsyncClient, auth, seed, storage):
    a = await _create(client, auth("ciso"))
    assert a["upload"]["method"] == "PUT"
    assert a["upload"]["expires_in"] == 900
    assert a["upload"]["presigned_url"].startswith("https://storage.test/evidence/")


@pytest.mark.asyncio
async def test_create_role_gate(client: AsyncClient, auth, seed):
    r = await client.post("/api/v1/evidence", json=_body(), headers=auth("auditor"))
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_file_size_bounds(client: AsyncClient, auth, seed):
    r = await client.post("/api/v1/evidence", json=_body(file_size=104857600), headers=auth("ciso"))
    assert r.status_code == 201
    r = await client.post("/api/v1/evidence", json=_body(file_size=104857601), headers=auth("ciso"))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_collection_date_cannot_be_future(client: AsyncClient, auth, seed):
    tomorrow = (_today() + timedelta(days=1)).isoformat()
    r = await client.post("/api/v1/evidence", json=_body(collection_date=tomorrow), headers=auth("ciso"))
    assert r.status_code == 422


@pytest.mark.asyncio
@pytest.mark.parametrize("days,expected", [(1, 201), (3650, 201), (0, 400), (3651, 400)])
async def test_freshness_period_bounds(client: AsyncClient, auth, seed, days, expected):
    r = await client.post("/api/v1/evidence", json=_body(freshness_period_days=days), headers=auth("ciso"))
    assert r.status_code == expected


@pytest.mark.asyncio
async def test_disallowed_mime(client: AsyncClient, auth, seed):
    r = await client.post(
        "/api/v1/evidence", json=_body(mime_type="application/x-msdownload", file_name="x.exe"), headers=auth("ciso"),
    )
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_file_name_is_sanitized(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"), file_name="../../etc/passwd.txt", mime_type="text/plain")
    assert "/" not in a["file_name"]
    assert a["object_key"].endswith("/1/" + a["file_name"])


@pytest.mark.asyncio
async def test_other_org_cannot_read(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    r = await client.get(f"/api/v1/evidence/{a['id']}", headers=auth("outsider"))
    assert r.status_code == 404


# ── Upload confirmation & download ──


@pytest.mark.asyncio
async def test_confirm_without_storage(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    r = await client.post(f"/api/v1/evidence/{a['id']}/confirm", json={}, headers=auth("ciso"))
    assert r.status_code == 200
    assert r.json()["file_verified"] is False
    assert r.json()["file_size_actual"] == 48213


@pytest.mark.asyncio
async def test_confirm_checks_storage_and_checksum(client: AsyncClient, auth, seed, storage):
    a = await _create(client, auth("ciso"))
    url = f"/api/v1/evidence/{a['id']}/confirm"

    r = await client.post(url, json={}, headers=auth("ciso"))
    assert r.status_code == 422

    storage.objects[a["object_key"]] = 50000
    r = await client.post(url, json={"checksum_sha256": "xyz"}, headers=auth("ciso"))
    assert r.status_code == 400

    checksum = "AB" * 32
    r = await client.post(url, json={"checksum_sha256": checksum}, headers=auth("ciso"))
    assert r.status_code == 200
    body = r.json()
    assert body["file_verified"] is True
    assert body["file_size_actual"] == 50000
    assert body["checksum_sha256"] == checksum.lower()

    r = await client.post(url, json={}, headers=auth("ciso"))
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_download_requires_storage(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    r = await client.get(f"/api/v1/evidence/{a['id']}/download", headers=auth("auditor"))
    assert r.status_code == 503


@pytest.mark.asyncio
async def test_download_url(client: AsyncClient, auth, seed, storage):
    a = await _create(client, auth("ciso"))
    r = await client.get(f"/api/v1/evidence/{a['id']}/download", headers=auth("auditor"))
    assert r.status_code == 422

    storage.objects[a["object_key"]] = 48213
    r = await client.get(f"/api/v1/evidence/{a['id']}/download", headers=auth("auditor"))
    assert r.status_code == 200
    assert r.json()["method"] == "GET"
    assert r.json()["expires_in"] == 3600
    assert r.json()["presigned_url"].endswith("?method=GET")


# ── Versions ──


@pytest.mark.asyncio
async def test_new_version_supersedes_and_copies_links(client: AsyncClient, auth, seed):
    v1 = await _create(client, auth("ciso"))
    r = await client.post(
        f"/api/v1/evidence/{v1['id']}/links",
        json={"links": [
            {"target_type": "control", "target_id": seed.control.id},
            {"target_type": "requirement", "target_id": seed.requirement.id, "strength": "supporting"},
        ]},
        headers=auth("security_engineer"),
    )
    assert r.status_code == 201
    assert r.json()["created"] == 2

    r = await client.post(
        f"/api/v1/evidence/{v1['id']}/versions",
        json={"file_name": "access-review-q4.xlsx", "file_size": 51000,
              "mime_type": "text/csv", "collection_date": _today().isoformat()},
        headers=auth("ciso"),
    )
    assert r.status_code == 201, r.text
    v2 = r.json()
    assert v2["version"] == 2
    assert v2["parent_artifact_id"] == v1["id"]
    assert v2["title"] == v1["title"]
    assert v2["freshness_period_days"] == 90
    assert v2["links_count"] == 2
    assert v2["object_key"] == f"{seed.org.id}/{v1['id']}/2/access-review-q4.xlsx"

    old = (await client.get(f"/api/v1/evidence/{v1['id']}", headers=auth("ciso"))).json()
    assert old["status"] == "superseded"
    assert old["is_current"] is False

    r = await client.get(f"/api/v1/evidence/{v2['id']}/versions", headers=auth("ciso"))
    assert [v["version"] for v in r.json()["data"]] == [2, 1]
    assert r.json()["root_id"] == v1["id"]

    r = await client.post(
        f"/api/v1/evidence/{v1['id']}/versions",
        json={"file_name": "x.csv", "file_size": 1, "mime_type": "text/csv",
              "collection_date": _today().isoformat()},
        headers=auth("ciso"),
    )
    assert r.status_code == 422

    r = await client.get("/api/v1/evidence", headers=auth("ciso"))
    assert [a["id"] for a in r.json()["data"]] == [v2["id"]]
    r = await client.get("/api/v1/evidence", params={"include_versions": True}, headers=auth("ciso"))
    assert r.json()["pagination"]["total"] == 2


# ── Links ──


@pytest.mark.asyncio
async def test_links_reject_duplicates_and_unknown_targets(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    url = f"/api/v1/evidence/{a['id']}/links"

    r = await client.post(url, json={"target_type": "control", "target_id": seed.control.id}, headers=auth("ciso"))
    assert r.status_code == 201

    r = await client.post(
        url,
        json={"links": [
            {"target_type": "control", "target_id": seed.control2.id},
            {"target_type": "control", "target_id": seed.control.id},
        ]},
        headers=auth("ciso"),
    )
    assert r.status_code == 409
    r = await client.get(url, headers=auth("ciso"))
    assert len(r.json()["data"]) == 1

    r = await client.post(
        url, json={"target_type": "control", "target_id": seed.foreign_control.id}, headers=auth("ciso"),
    )
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_links_batch_limit(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    links = [{"target_type": "control", "target_id": f"c-{i}"} for i in range(51)]
    r = await client.post(f"/api/v1/evidence/{a['id']}/links", json={"links": links}, headers=auth("ciso"))
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_link_listing_and_removal(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    r = await client.post(
        f"/api/v1/evidence/{a['id']}/links",
        json={"target_type": "control", "target_id": seed.control.id},
        headers=auth("ciso"),
    )
    link = r.json()["data"][0]
    assert link["target"]["identifier"] == "AC-001"

    r = await client.delete(f"/api/v1/evidence/{a['id']}/links/{link['id']}", headers=auth("auditor"))
    assert r.status_code == 403
    r = await client.delete(f"/api/v1/evidence/{a['id']}/links/{link['id']}", headers=auth("compliance_manager"))
    assert r.status_code == 204
    r = await client.get(f"/api/v1/evidence/{a['id']}/links", headers=auth("ciso"))
    assert r.json()["data"] == []


# ── Status & evaluations ──


@pytest.mark.asyncio
async def test_status_transitions(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    url = f"/api/v1/evidence/{a['id']}/status"

    r = await client.put(url, json={"status": "approved"}, headers=auth("ciso"))
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"

    r = await client.put(url, json={"status": "pending_review"}, headers=auth("security_engineer"))
    assert r.status_code == 403

    await _to_review(client, auth, a["id"])
    r = await client.put(url, json={"status": "approved"}, headers=auth("compliance_manager"))
    assert r.json()["status"] == "approved"
    r = await client.put(url, json={"status": "expired"}, headers=auth("compliance_manager"))
    assert r.json()["status"] == "expired"


@pytest.mark.asyncio
async def test_sufficient_evaluation_approves_pending_artifact(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    await _to_review(client, auth, a["id"])

    r = await client.post(
        f"/api/v1/evidence/{a['id']}/evaluations",
        json={"verdict": "sufficient", "confidence": "high", "comments": "Covers all privileged accounts."},
        headers=auth("auditor"),
    )
    assert r.status_code == 201
    body = r.json()
    assert body["artifact_status"] == "approved"
    assert body["status_changed"] is True
    assert body["evaluation"]["evaluated_by"] == seed.users["auditor"].id

    r = await client.post(
        f"/api/v1/evidence/{a['id']}/evaluations",
        json={"verdict": "insufficient", "comments": "Second look"},
        headers=auth("auditor"),
    )
    assert r.json()["artifact_status"] == "approved"
    assert r.json()["status_changed"] is False

    r = await client.get(f"/api/v1/evidence/{a['id']}/evaluations", headers=auth("ciso"))
    data = r.json()["data"]
    assert len(data) == 2
    assert data[0]["evaluator_name"] == seed.users["auditor"].display_name

    r = await client.get(f"/api/v1/evidence/{a['id']}", headers=auth("ciso"))
    assert r.json()["evaluations_count"] == 2
    assert r.json()["latest_evaluation"]["verdict"] == "insufficient"


@pytest.mark.asyncio
async def test_insufficient_evaluation_rejects(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    await _to_review(client, auth, a["id"])
    r = await client.post(
        f"/api/v1/evidence/{a['id']}/evaluations",
        json={"verdict": "insufficient", "comments": "Missing service accounts", "missing_elements": ["svc accounts"]},
        headers=auth("compliance_manager"),
    )
    assert r.json()["artifact_status"] == "rejected"


@pytest.mark.asyncio
async def test_partial_evaluation_keeps_status(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    await _to_review(client, auth, a["id"])
    r = await client.post(
        f"/api/v1/evidence/{a['id']}/evaluations",
        json={"verdict": "partial", "comments": "Half the systems"},
        headers=auth("auditor"),
    )
    assert r.json()["artifact_status"] == "pending_review"
    assert r.json()["status_changed"] is False


@pytest.mark.asyncio
async def test_evaluation_link_must_belong_to_artifact(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    b = await _create(client, auth("ciso"), title="Other")
    r = await client.post(
        f"/api/v1/evidence/{b['id']}/links",
        json={"target_type": "control", "target_id": seed.control.id},
        headers=auth("ciso"),
    )
    foreign_link = r.json()["data"][0]["id"]
    r = await client.post(
        f"/api/v1/evidence/{a['id']}/evaluations",
        json={"verdict": "partial", "comments": "x", "evidence_link_id": foreign_link},
        headers=auth("auditor"),
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_evaluation_role_gate(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    r = await client.post(
        f"/api/v1/evidence/{a['id']}/evaluations",
        json={"verdict": "partial", "comments": "x"},
        headers=auth("security_engineer"),
    )
    assert r.status_code == 403


# ── Update & delete ──


@pytest.mark.asyncio
async def test_update_recomputes_expiry(client: AsyncClient, auth, seed):
    a = await _create(client, auth("it_admin"))
    r = await client.put(
        f"/api/v1/evidence/{a['id']}", json={"freshness_period_days": 10}, headers=auth("it_admin"),
    )
    assert r.status_code == 200
    assert r.json()["freshness_status"] == "expiring_soon"

    r = await client.put(f"/api/v1/evidence/{a['id']}", json={"title": "Mine now"}, headers=auth("devops_engineer"))
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_soft_delete(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    r = await client.delete(f"/api/v1/evidence/{a['id']}", headers=auth("compliance_manager"))
    assert r.status_code == 204
    r = await client.get(f"/api/v1/evidence/{a['id']}", headers=auth("ciso"))
    assert r.json()["status"] == "superseded"
    assert r.json()["is_current"] is False
    r = await client.get("/api/v1/evidence", headers=auth("ciso"))
    assert r.json()["data"] == []


# ── Reports & lookups ──


@pytest.mark.asyncio
async def test_freshness_reports(client: AsyncClient, auth, seed):
    old = (_today() - timedelta(days=100)).isoformat()
    stale = await _create(client, auth("ciso"), title="Old firewall export", collection_date=old, freshness_period_days=30)
    soon = await _create(client, auth("ciso"), title="Pen test", collection_date=old, freshness_period_days=110)
    await _create(client, auth("ciso"), title="No expiry", freshness_period_days=None)
    for a in (stale, soon):
        await _to_review(client, auth, a["id"])

    r = await client.get("/api/v1/evidence", params={"freshness": "expired"}, headers=auth("ciso"))
    assert [a["id"] for a in r.json()["data"]] == [stale["id"]]

    r = await client.get("/api/v1/evidence/freshness-summary", headers=auth("ciso"))
    body = r.json()
    assert body["freshness"] == {"fresh": 1, "expiring_soon": 1, "expired": 1}
    assert body["by_status"] == {"pending_review": 2, "draft": 1}

    r = await client.get("/api/v1/evidence/staleness", headers=auth("ciso"))
    body = r.json()
    assert body["summary"]["expired"] == 1
    assert body["summary"]["expiring_soon"] == 1
    assert [a["alert_level"] for a in body["data"]] == ["expired", "expiring_soon"]


@pytest.mark.asyncio
async def test_search(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"), title="Firewall ruleset", tags=["network"], source_system="palo-alto")
    await _create(client, auth("ciso"), title="Training records", evidence_type="training_record")
    await client.post(
        f"/api/v1/evidence/{a['id']}/links",
        json={"target_type": "control", "target_id": seed.control.id},
        headers=auth("ciso"),
    )

    r = await client.get("/api/v1/evidence/search", params={"q": "palo"}, headers=auth("ciso"))
    assert [x["id"] for x in r.json()["data"]] == [a["id"]]
    assert r.json()["search_meta"] == {"query": "palo", "total_results": 1}

    r = await client.get("/api/v1/evidence/search", params={"q": "network"}, headers=auth("ciso"))
    assert r.json()["search_meta"]["total_results"] == 1

    r = await client.get(
        "/api/v1/evidence/search", params={"q": "r", "has_links": True}, headers=auth("ciso"),
    )
    assert [x["id"] for x in r.json()["data"]] == [a["id"]]

    r = await client.get(
        "/api/v1/evidence/search", params={"q": "r", "framework_id": seed.framework.id}, headers=auth("ciso"),
    )
    assert [x["id"] for x in r.json()["data"]] == [a["id"]]


@pytest.mark.asyncio
async def test_control_and_requirement_lookup(client: AsyncClient, auth, seed):
    a = await _create(client, auth("ciso"))
    await client.post(
        f"/api/v1/evidence/{a['id']}/links",
        json={"links": [
            {"target_type": "control", "target_id": seed.control.id, "strength": "supporting"},
            {"target_type": "requirement", "target_id": seed.requirement2.id},
        ]},
        headers=auth("ciso"),
    )
    r = await client.get(f"/api/v1/controls/{seed.control.id}/evidence", headers=auth("auditor"))
    assert r.json()["control"]["identifier"] == "AC-001"
    assert [(x["id"], x["strength"]) for x in r.json()["data"]] == [(a["id"], "supporting")]

    r = await client.get(f"/api/v1/requirements/{seed.requirement2.id}/evidence", headers=auth("auditor"))
    assert r.json()["requirement"]["identifier"] == "CC7.2"
    assert len(r.json()["data"]) == 1

    r = await client.get(f"/api/v1/controls/{seed.foreign_control.id}/evidence", headers=auth("ciso"))
    assert r.status_code == 404


def test_freshness_boundaries():
    now = utcnow()
    soon = now + timedelta(days=settings.FRESHNESS_WARNING_DAYS)
    assert freshness_status(now, now=now) == "expired"
    assert freshness_status(now - timedelta(seconds=1), now=now) == "expired"
    assert freshness_status(now + timedelta(seconds=1), now=now) == "expiring_soon"
    assert freshness_status(soon, now=now) == "expiring_soon"
    assert freshness_status(soon + timedelta(seconds=1), now=now) == "fresh"
    assert freshness_status(None, now=now) == "fresh"
