"""Functional tests: Policy Management: policies, versions, templates, coverage."""
import pytest
from httpx import AsyncClient


HTML = (
    "<h1>Access Control Policy</h1>"
    "<p>All access is granted on a least privilege basis.</p>"
    "<script>alert('x')</script>"
)


def _body(**overrides) -> dict:
    base = {
        "identifier": "POL-001",
        "title": "Access Control Policy",
        "description": "Who gets access to what",
        "category": "access_control",
        "content": HTML,
        "tags": ["iam"],
    }
    base.update(overrides)
    return base


async def _create(client: AsyncClient, headers: dict, **overrides) -> dict:
    r = await client.post("/api/v1/policies", json=_body(**overrides), headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


# ── Create & update ──


@pytest.mark.asyncio
async def test_create_policy_with_first_version(client: AsyncClient, auth, seed):
    p = await _create(client, auth("compliance_manager"))
    assert p["status"] == "draft"
    assert p["owner_id"] == seed.users["compliance_manager"].id
    assert p["owner"]["name"] == seed.users["compliance_manager"].display_name
    assert p["review_status"] == "no_schedule"

    v = p["current_version"]
    assert v["version_number"] == 1
    assert v["change_type"] == "initial"
    assert "<script>" not in v["content"]
    assert "alert" not in v["content"]
    assert "<h1>Access Control Policy</h1>" in v["content"]
    assert v["word_count"] == 12
    assert p["current_version_id"] == v["id"]


@pytest.mark.asyncio
async def test_markdown_content_kept_verbatim(client: AsyncClient, auth, seed):
    md = "# Encryption\n\nUse <b>AES-256</b> at rest."
    p = await _create(client, auth("ciso"), identifier="POL-002", content=md, content_format="markdown")
    assert p["current_version"]["content"] == md


@pytest.mark.asyncio
async def test_duplicate_identifier(client: AsyncClient, auth, seed):
    await _create(client, auth("ciso"))
    r = await client.post("/api/v1/policies", json=_body(title="Again"), headers=auth("ciso"))
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "DUPLICATE_IDENTIFIER"

    r = await client.post("/api/v1/policies", json=_body(), headers=auth("outsider"))
    assert r.status_code == 201


@pytest.mark.asyncio
async def test_content_size_limit(client: AsyncClient, auth, seed):
    r = await client.post(
        "/api/v1/policies", json=_body(content="a" * (1024 * 1024 + 1)), headers=auth("ciso"),
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "CONTENT_TOO_LARGE"


@pytest.mark.asyncio
async def test_create_role_gate(client: AsyncClient, auth, seed):
    r = await client.post("/api/v1/policies", json=_body(), headers=auth("it_admin"))
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_update_policy(client: AsyncClient, auth, seed):
    p = await _create(client, auth("security_engineer"))
    url = f"/api/v1/policies/{p['id']}"

    r = await client.put(url, json={"title": "Nope"}, headers=auth("it_admin"))
    assert r.status_code == 403

    r = await client.put(
        url,
        json={"owner_id": seed.users["ciso"].id, "review_frequency_days": 180, "next_review_at": "2020-01-01"},
        headers=auth("security_engineer"),
    )
    assert r.status_code == 200
    assert r.json()["owner_id"] == seed.users["ciso"].id
    assert r.json()["review_status"] == "overdue"

    r = await client.put(url, json={"owner_id": seed.users["outsider"].id}, headers=auth("ciso"))
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_archived_policy_is_read_only(client: AsyncClient, auth, seed):
    p = await _create(client, auth("ciso"))
    r = await client.post(f"/api/v1/policies/{p['id']}/archive", headers=auth("security_engineer"))
    assert r.status_code == 403

    r = await client.post(f"/api/v1/policies/{p['id']}/archive", headers=auth("ciso"))
    assert r.status_code == 200
    assert r.json()["status"] == "archived"

    r = await client.put(f"/api/v1/policies/{p['id']}", json={"title": "Revived"}, headers=auth("ciso"))
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "POLICY_ARCHIVED"

    r = await client.post(
        f"/api/v1/policies/{p['id']}/versions",
        json={"content": "<p>x</p>", "change_summary": "x"},
        headers=auth("ciso"),
    )
    assert r.json()["error"]["code"] == "POLICY_ARCHIVED"


# ── Versions ──


@pytest.mark.asyncio
async def test_versions_and_compare(client: AsyncClient, auth, seed):
    p = await _create(client, auth("ciso"))
    r = await client.post(
        f"/api/v1/policies/{p['id']}/versions",
        json={
            "content": "<p>All access is reviewed quarterly by system owners and security.</p>",
            "change_summary": "Add review cadence",
            "change_type": "major",
        },
        headers=auth("ciso"),
    )
    assert r.status_code == 201
    v2 = r.json()
    assert v2["version_number"] == 2
    assert v2["is_current"] is True

    r = await client.get(f"/api/v1/policies/{p['id']}/versions", headers=auth("auditor"))
    data = r.json()["data"]
    assert [v["version_number"] for v in data] == [2, 1]
    assert all(v["content"] is None for v in data)
    assert data[1]["is_current"] is False

    r = await client.get(f"/api/v1/policies/{p['id']}/versions/1", headers=auth("auditor"))
    assert r.json()["version_number"] == 1
    assert r.json()["signoffs"] == []

    r = await client.get(
        f"/api/v1/policies/{p['id']}/versions/compare", params={"v1": 1, "v2": 2}, headers=auth("auditor"),
    )
    body = r.json()
    assert body["word_count_delta"] == body["v2"]["word_count"] - body["v1"]["word_count"]

    r = await client.get(f"/api/v1/policies/{p['id']}/versions/9", headers=auth("auditor"))
    assert r.status_code == 404


# ── Templates ──


@pytest.mark.asyncio
async def test_clone_template(client: AsyncClient, auth, seed):
    tpl = await _create(
        client, auth("ciso"),
        identifier="TPL-AC", title="Access Control Template", is_template=True,
        tags=["template", "iam"], review_frequency_days=365,
        template_framework_id=seed.framework.id,
    )
    r = await client.get("/api/v1/policy-templates", headers=auth("security_engineer"))
    assert [t["id"] for t in r.json()["data"]] == [tpl["id"]]

    r = await client.post(
        f"/api/v1/policy-templates/{tpl['id']}/clone",
        json={"identifier": "POL-AC", "title": "Acme Access Control"},
        headers=auth("security_engineer"),
    )
    assert r.status_code == 201
    clone = r.json()
    assert clone["status"] == "draft"
    assert clone["is_template"] is False
    assert clone["cloned_from_policy_id"] == tpl["id"]
    assert clone["tags"] == ["iam"]
    assert clone["review_frequency_days"] == 365
    assert clone["owner_id"] == seed.users["security_engineer"].id

    detail = (await client.get(f"/api/v1/policies/{clone['id']}", headers=auth("ciso"))).json()
    assert detail["current_version"]["content"] == tpl["current_version"]["content"]
    assert detail["current_version"]["version_number"] == 1

    r = await client.post(
        f"/api/v1/policy-templates/{tpl['id']}/clone", json={"identifier": "POL-AC"}, headers=auth("ciso"),
    )
    assert r.status_code == 409

    r = await client.post(
        f"/api/v1/policy-templates/{clone['id']}/clone", json={"identifier": "POL-X"}, headers=auth("ciso"),
    )
    assert r.status_code == 404


# ── Control coverage & gap analysis ──


@pytest.mark.asyncio
async def test_control_links(client: AsyncClient, auth, seed):
    p = await _create(client, auth("ciso"))
    url = f"/api/v1/policies/{p['id']}/controls"

    r = await client.post(url, json={"control_id": seed.control.id}, headers=auth("ciso"))
    assert r.status_code == 201
    assert r.json()["control_identifier"] == "AC-001"
    assert r.json()["coverage"] == "full"

    r = await client.post(url, json={"control_id": seed.control.id}, headers=auth("ciso"))
    assert r.status_code == 409

    r = await client.post(url, json={"control_id": seed.foreign_control.id}, headers=auth("ciso"))
    assert r.status_code == 404

    r = await client.post(
        f"{url}/bulk",
        json={"links": [
            {"control_id": seed.control.id},
            {"control_id": seed.control2.id, "coverage": "partial"},
            {"control_id": "missing"},
        ]},
        headers=auth("ciso"),
    )
    assert r.status_code == 201
    body = r.json()
    assert [c["control_id"] for c in body["created"]] == [seed.control2.id]
    assert body["skipped"] == [{"index": 0, "control_id": seed.control.id, "reason": "already_linked"}]
    assert body["errors"][0]["index"] == 2

    r = await client.get(url, headers=auth("auditor"))
    assert [c["control_identifier"] for c in r.json()["data"]] == ["AC-001", "LM-001"]

    r = await client.delete(f"{url}/{seed.control2.id}", headers=auth("ciso"))
    assert r.status_code == 204
    r = await client.delete(f"{url}/{seed.control2.id}", headers=auth("ciso"))
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_policy_gap(client: AsyncClient, auth, seed):
    r = await client.get("/api/v1/policy-gap", headers=auth("auditor"))
    assert r.status_code == 200
    body = r.json()
    assert body["summary"]["total_active_controls"] == 2
    assert body["summary"]["controls_without_coverage"] == 2
    assert body["summary"]["coverage_percentage"] == 0.0
    assert [g["control"]["identifier"] for g in body["data"]] == ["AC-001", "LM-001"]
    first = body["data"][0]
    assert first["mapped_frameworks"] == ["SOC 2"]
    assert first["mapped_requirements_count"] == 1
    assert first["control"]["owner"]["id"] == seed.users["security_engineer"].id
    assert first["suggested_categories"] == ["information_security"]

    p = await _create(client, auth("ciso"))
    await client.post(f"/api/v1/policies/{p['id']}/controls", json={"control_id": seed.control.id}, headers=auth("ciso"))
    await client.post(
        f"/api/v1/policies/{p['id']}/controls",
        json={"control_id": seed.control2.id, "coverage": "partial"},
        headers=auth("ciso"),
    )

    body = (await client.get("/api/v1/policy-gap", headers=auth("ciso"))).json()
    assert body["summary"]["controls_with_full_coverage"] == 1
    assert body["summary"]["controls_with_partial_coverage"] == 1
    assert body["summary"]["coverage_percentage"] == 100.0
    assert body["data"] == []

    body = (await client.get("/api/v1/policy-gap", params={"include_partial": True}, headers=auth("ciso"))).json()
    assert [(g["control"]["identifier"], g["policy_coverage"]) for g in body["data"]] == [("LM-001", "partial")]

    body = (await client.get(
        "/api/v1/policy-gap", params={"framework_id": seed.framework.id}, headers=auth("ciso"),
    )).json()
    assert body["summary"]["total_active_controls"] == 1


@pytest.mark.asyncio
async def test_policy_gap_role_gate(client: AsyncClient, auth, seed):
    r = await client.get("/api/v1/policy-gap", headers=auth("it_admin"))
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_policy_gap_by_framework(client: AsyncClient, auth, seed):
    p = await _create(client, auth("ciso"))
    await client.post(f"/api/v1/policies/{p['id']}/controls", json={"control_id": seed.control.id}, headers=auth("ciso"))
    r = await client.get("/api/v1/policy-gap/by-framework", headers=auth("compliance_manager"))
    [row] = r.json()["data"]
    assert row["framework"]["name"] == "SOC 2"
    assert row["total_requirements"] == 2
    assert row["requirements_with_controls"] == 1
    assert row["mapped_controls"] == 1
    assert row["controls_with_policy_coverage"] == 1
    assert row["policy_coverage_percentage"] == 100.0
    assert row["gap_count"] == 0


# ── Lists, search, stats ──


@pytest.mark.asyncio
async def test_list_and_search(client: AsyncClient, auth, seed):
    await _create(client, auth("ciso"))
    await _create(
        client, auth("ciso"), identifier="POL-010", title="Incident Response Plan",
        category="incident_response", content="<p>Page the on-call engineer within 15 minutes.</p>",
        tags=["ir"],
    )

    r = await client.get("/api/v1/policies", params={"category": "incident_response"}, headers=auth("auditor"))
    assert [p["identifier"] for p in r.json()["data"]] == ["POL-010"]

    r = await client.get("/api/v1/policies", params={"tags": "iam,none"}, headers=auth("auditor"))
    assert [p["identifier"] for p in r.json()["data"]] == ["POL-001"]

    r = await client.get("/api/v1/policies", params={"sort": "bogus"}, headers=auth("auditor"))
    assert [p["identifier"] for p in r.json()["data"]] == ["POL-001", "POL-010"]

    r = await client.get("/api/v1/policies/search", params={"q": "on-call", "scope": "content"}, headers=auth("auditor"))
    assert [p["identifier"] for p in r.json()["data"]] == ["POL-010"]
    r = await client.get("/api/v1/policies/search", params={"q": "on-call", "scope": "metadata"}, headers=auth("auditor"))
    assert r.json()["search_meta"]["total_results"] == 0


@pytest.mark.asyncio
async def test_stats(client: AsyncClient, auth, seed):
    await _create(client, auth("ciso"))
    p = await _create(client, auth("ciso"), identifier="POL-002")
    await client.post(f"/api/v1/policies/{p['id']}/archive", headers=auth("ciso"))
    await _create(client, auth("ciso"), identifier="TPL-1", is_template=True)

    r = await client.get("/api/v1/policies/stats", headers=auth("auditor"))
    body = r.json()
    assert body["total_policies"] == 2
    assert body["by_status"]["draft"] == 1
    assert body["by_status"]["archived"] == 1
    assert body["review_status"]["no_schedule"] == 1
    assert body["signoffs"] == {"pending": 0, "overdue": 0}
