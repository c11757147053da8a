"""
Shared test fixtures: in-memory SQLite async database + FastAPI AsyncClient.

Strategy:
1. Set DATABASE_URL to SQLite before anything loads
2. Inject a mock grc_core.database module into sys.modules before grc_core.main imports
3. Object storage is swapped for an in-memory fake through a dependency override
"""
import os
import sys
import types
from collections.abc import AsyncGenerator
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# ── 1. Environment ──
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DEBUG"] = "false"
os.environ["S3_ENDPOINT_URL"] = ""

# ── 2. Test engine (SQLite in-memory, one shared connection) ──
TEST_ENGINE = create_async_engine(
    "sqlite+aiosqlite://",
    echo=False,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)

TestSession = async_sessionmaker(
    TEST_ENGINE,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── 3. Replace grc_core.database module BEFORE grc_core.main is imported ──
async def _test_get_session() -> AsyncGenerator[AsyncSession, None]:
    async with TestSession() as session:
        yield session


async def _test_check_db() -> bool:
    return True


_fake_db = types.ModuleType("grc_core.database")
_fake_db.engine = TEST_ENGINE
_fake_db.async_session = TestSession
_fake_db.get_session = _test_get_session
_fake_db.check_db_connection = _test_check_db
sys.modules["grc_core.database"] = _fake_db

# ── 4. Now import the app: all routers will see our fake database ──
from grc_core.main import app as fastapi_app  # noqa: E402
from grc_core.models import (  # noqa: E402
    AuditRequestTemplate,
    Base,
    Control,
    ControlMapping,
    Framework,
    FrameworkVersion,
    Organization,
    OrgFramework,
    Requirement,
    User,
)
from grc_core.services.storage import get_storage  # noqa: E402


# ── Fake object storage ──

class FakeStorage:
    """Presigns deterministic URLs; ``objects`` maps key -> size of uploaded files."""

    upload_ttl = 900
    download_ttl = 3600

    def __init__(self):
        self.objects: dict[str, int] = {}

    def generate_upload_url(self, key: str, mime_type: str) -> tuple[str, int]:
        return f"https://storage.test/evidence/{key}?method=PUT", self.upload_ttl

    def generate_download_url(self, key: str, file_name: str) -> tuple[str, int]:
        return f"https://storage.test/evidence/{key}?method=GET", self.download_ttl

    async def verify_object_exists(self, key: str) -> int | None:
        return self.objects.get(key)


# ── Fixtures ──

@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create all tables before each test, drop after."""
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSession() as session:
        yield session


@pytest.fixture
def storage():
    fake = FakeStorage()
    fastapi_app.dependency_overrides[get_storage] = lambda: fake
    yield fake
    fastapi_app.dependency_overrides.pop(get_storage, None)


# ── Seed data helpers ──

ROLES = (
    "ciso", "compliance_manager", "security_engineer", "it_admin",
    "devops_engineer", "auditor", "vendor_manager",
)


@pytest_asyncio.fixture
async def seed(db: AsyncSession) -> SimpleNamespace:
    """One organization with a user per role, a second auditor, a catalog slice and templates."""
    org = Organization(name="Acme Corp")
    other_org = Organization(name="Globex")
    db.add_all([org, other_org])
    await db.flush()

    users = {}
    for role in ROLES:
        users[role] = User(
            org_id=org.id, email=f"{role}@acme.test",
            first_name=role.replace("_", " ").title(), last_name="Tester", role=role,
        )
    users["auditor2"] = User(org_id=org.id, email="auditor2@acme.test", first_name="Second", last_name="Auditor", role="auditor")
    users["inactive"] = User(org_id=org.id, email="gone@acme.test", role="security_engineer", status="inactive")
    users["outsider"] = User(org_id=other_org.id, email="ciso@globex.test", role="ciso")
    db.add_all(users.values())

    fw = Framework(identifier="soc2", name="SOC 2")
    db.add(fw)
    await db.flush()
    fv = FrameworkVersion(framework_id=fw.id, version="2017", status="active")
    db.add(fv)
    await db.flush()
    req = Requirement(framework_version_id=fv.id, identifier="CC6.1", title="Logical access security")
    req2 = Requirement(framework_version_id=fv.id, identifier="CC7.2", title="System monitoring")
    org_fw = OrgFramework(org_id=org.id, framework_id=fw.id, framework_version_id=fv.id, status="active")
    db.add_all([req, req2, org_fw])
    await db.flush()

    access = Control(
        org_id=org.id, identifier="AC-001", title="Access reviews",
        category="access_control", status="active", owner_id=users["security_engineer"].id,
    )
    logging_ctl = Control(
        org_id=org.id, identifier="LM-001", title="Central logging",
        category="logging_monitoring", status="active",
    )
    foreign = Control(org_id=other_org.id, identifier="AC-001", title="Their control", category="access_control", status="active")
    db.add_all([access, logging_ctl, foreign])
    await db.flush()
    db.add(ControlMapping(org_id=org.id, control_id=access.id, requirement_id=req.id))

    templates = [
        AuditRequestTemplate(
            title="User access listing", description="Export of active accounts",
            audit_type="soc2_type2", framework="soc2", category="access_control",
            default_priority="high", tags=["access"],
        ),
        AuditRequestTemplate(
            title="Change management tickets", description="Sample of production changes",
            audit_type="soc2_type2", framework="soc2", category="change_management",
            default_priority="medium", tags=["change"],
        ),
    ]
    db.add_all(templates)
    await db.commit()

    return SimpleNamespace(
        org=org,
        other_org=other_org,
        users=users,
        framework=fw,
        framework_version=fv,
        org_framework=org_fw,
        requirement=req,
        requirement2=req2,
        control=access,
        control2=logging_ctl,
        foreign_control=foreign,
        templates=templates,
    )


@pytest.fixture
def auth(seed):
    """``auth("ciso")`` -> principal headers for that seeded user."""
    def _headers(key: str) -> dict[str, str]:
        u = seed.users[key]
        return {"X-User-Id": u.id, "X-Org-Id": u.org_id, "X-User-Role": u.role}
    return _headers
