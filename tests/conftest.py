"""
Shared fixtures for the Report Ledger tests.

Every test gets a fresh in-memory SQLite database seeded with one
organization, an admin user and a job that has a risk score of 55.
"""

import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-entropy")

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from report_ledger.core.database import get_session
from report_ledger.core.dependencies import get_storage
from report_ledger.core.security import create_access_token
from report_ledger.models import (
    AuditLog,
    Base,
    Document,
    Job,
    JobRiskScore,
    MitigationItem,
    Organization,
    OrganizationMember,
    User,
)
from report_ledger.services.errors import StorageError

SIGNATURE_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 200 60">'
    '<path d="M10 40 C 40 10, 65 10, 95 40 S 150 70, 190 20" stroke="black" fill="none"/>'
    "</svg>"
)

ATTESTATION = "I attest this report is accurate and complete."


# =============================================================================
# FAKES
# =============================================================================


class InMemoryStorage:
    """Object storage kept in a dict."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.put_calls = 0

    async def put(self, path: str, data: bytes, content_type: str = "application/pdf") -> None:
        self.put_calls += 1
        self.objects[path] = data

    async def get(self, path: str) -> bytes | None:
        return self.objects.get(path)

    async def sign_url(self, path: str, ttl_seconds: int) -> str:
        return f"https://files.example.test/{path}?ttl={ttl_seconds}"


class FailingStorage(InMemoryStorage):
    """Fails the first ``failures`` uploads."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def put(self, path: str, data: bytes, content_type: str = "application/pdf") -> None:
        self.put_calls += 1
        if self.put_calls <= self.failures:
            raise StorageError("storage unavailable")
        self.objects[path] = data


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Let SQLAlchemy own BEGIN so SAVEPOINTs behave as on PostgreSQL
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


# =============================================================================
# SEED DATA
# =============================================================================


@pytest.fixture
async def organization(session: AsyncSession) -> Organization:
    org = Organization(
        name="Summit Roofing",
        logo_url="https://cdn.example.test/summit.png",
        accent_color="#0f766e",
        subscription_tier="pro",
    )
    session.add(org)
    await session.commit()
    return org


@pytest.fixture
async def admin_user(session: AsyncSession, organization: Organization) -> User:
    user = User(email="dana@summit.example", name="Dana Reyes")
    session.add(user)
    await session.flush()
    session.add(OrganizationMember(organization_id=organization.id, user_id=user.id, role="admin"))
    await session.commit()
    return user


@pytest.fixture
async def member_user(session: AsyncSession, organization: Organization) -> User:
    user = User(email="sam@summit.example", name="Sam Ortiz")
    session.add(user)
    await session.flush()
    session.add(OrganizationMember(organization_id=organization.id, user_id=user.id, role="member"))
    await session.commit()
    return user


@pytest.fixture
async def other_organization(session: AsyncSession) -> Organization:
    org = Organization(name="Harbor Electric")
    session.add(org)
    await session.commit()
    return org


@pytest.fixture
async def job(session: AsyncSession, organization: Organization, admin_user: User) -> Job:
    job = Job(
        organization_id=organization.id,
        client_name="Lakeview Apartments",
        location="1200 Shore Rd, Duluth MN",
        job_type="roof_replacement",
        status="active",
        description="Full tear-off and replacement of building B roof.",
        start_date=datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc),
    )
    session.add(job)
    await session.flush()

    session.add(JobRiskScore(
        job_id=job.id,
        overall_score=55,
        risk_level="medium",
        factors=[
            {"code": "fall", "name": "Work at height", "severity": "high"},
            {"code": "weather", "name": "High wind forecast", "severity": "medium"},
        ],
    ))
    session.add_all([
        MitigationItem(job_id=job.id, title="Guardrails installed", done=True,
                       completed_at=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)),
        MitigationItem(job_id=job.id, title="Harness inspection", done=False),
    ])
    session.add_all([
        Document(
            organization_id=organization.id,
            job_id=job.id,
            name="roof-before.jpg",
            type="photo",
            file_path=f"{organization.id}/{job.id}/roof-before.jpg",
            mime_type="image/jpeg",
            category="before",
            uploaded_by=admin_user.id,
        ),
        Document(
            organization_id=organization.id,
            job_id=job.id,
            name="permit.pdf",
            type="document",
            file_path=f"{organization.id}/{job.id}/permit.pdf",
            mime_type="application/pdf",
            uploaded_by=admin_user.id,
        ),
    ])
    session.add(AuditLog(
        organization_id=organization.id,
        user_id=admin_user.id,
        job_id=job.id,
        action="job.created",
        resource_type="job",
        resource_id=job.id,
        details={"client_name": "Lakeview Apartments"},
        created_at=datetime.now(timezone.utc) - timedelta(hours=1),
    ))
    await session.commit()
    return job


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def signature_svg() -> str:
    return SIGNATURE_SVG


# =============================================================================
# API CLIENT
# =============================================================================


def auth_headers(user: User, organization: Organization) -> dict[str, str]:
    token = create_access_token(user.id, organization.id)
    return {
        "Authorization": f"Bearer {token}",
        "X-Organization-ID": str(organization.id),
    }


@pytest.fixture
async def client(session_factory, storage):
    from report_ledger.main import app

    async def override_get_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_storage] = lambda: storage

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
