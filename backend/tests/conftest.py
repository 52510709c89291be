"""
Shared fixtures: an in-memory SQLite database per test and a scripted fake
of the Google client so no test touches the network.
"""

import asyncio
import os
import uuid
from datetime import timedelta

# Must be set before gsc_core.database builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from gsc_core.crypto import encrypt_value
from gsc_core.database import Base
from gsc_core.errors import ProviderError
from gsc_core.models import GscConnection, GscSite
from gsc_core.services.provider_models import (
    AnalyticsRow,
    IndexStatusResult,
    InspectionResult,
    PublishResponse,
    SiteEntry,
    TokenResponse,
    UrlNotificationMetadata,
)
from gsc_core.utils import utcnow


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory():
    # One shared connection; no reset-on-return so one session closing
    # cannot roll back another's uncommitted statement
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        pool_reset_on_return=None,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


class FakeSearchConsoleClient:
    """Records calls and replays scripted responses or errors."""

    client_id = "test-client-id"

    def __init__(self):
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.refresh_error: ProviderError | None = None
        self.refreshed_tokens = TokenResponse(access_token="fresh-access-token", expires_in=3600)

        self.exchange_error: ProviderError | None = None
        self.exchanged_tokens = TokenResponse(
            access_token="new-access-token", expires_in=3600, refresh_token="new-refresh-token"
        )
        self.email = "owner@example.com"
        self.sites = [SiteEntry(siteUrl="https://shop.example.com/", permissionLevel="siteOwner")]
        self.sites_error: ProviderError | None = None

        self.published: list[str] = []
        self.publish_errors: dict[str, ProviderError] = {}
        self.inspections: dict[str, object] = {}
        self.inspected: list[str] = []
        # keyed by window length in days
        self.analytics: dict[int, list[AnalyticsRow]] = {}

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        return f"https://accounts.example/auth?state={state}&redirect_uri={redirect_uri}"

    async def exchange_code(self, code, redirect_uri):
        if self.exchange_error:
            raise self.exchange_error
        return self.exchanged_tokens

    async def refresh_access_token(self, refresh_token):
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error
        return self.refreshed_tokens

    async def fetch_email(self, access_token):
        return self.email

    async def list_sites(self, access_token):
        if self.sites_error:
            raise self.sites_error
        return list(self.sites)

    async def inspect_url(self, access_token, inspection_url, site_url):
        self.inspected.append(inspection_url)
        outcome = self.inspections.get(inspection_url, "PASS")
        if isinstance(outcome, ProviderError):
            raise outcome
        return InspectionResult(
            indexStatusResult=IndexStatusResult(verdict=outcome, coverageState="Submitted and indexed")
        )

    async def publish_url(self, access_token, url, action="URL_UPDATED"):
        self.published.append(url)
        if url in self.publish_errors:
            raise self.publish_errors[url]
        return PublishResponse(urlNotificationMetadata=UrlNotificationMetadata(url=url))

    async def search_analytics(self, access_token, site_url, start_date, end_date, dimensions=None, row_limit=5000):
        return list(self.analytics.get((end_date - start_date).days, []))


@pytest.fixture
def fake_client():
    return FakeSearchConsoleClient()


async def seed_connection(
    session_factory,
    tenant_id: uuid.UUID | None = None,
    expires_in: int = 3600,
    refresh_token: str | None = "stored-refresh-token",
    site_url: str = "https://shop.example.com/",
    is_active: bool = True,
) -> tuple[uuid.UUID, GscSite]:
    """A connected tenant with one site; the stored access token is 'stored-access-token'."""
    tenant_id = tenant_id or uuid.uuid4()
    async with session_factory() as db:
        conn = GscConnection(
            tenant_id=tenant_id,
            access_token_encrypted=encrypt_value("stored-access-token"),
            refresh_token_encrypted=encrypt_value(refresh_token),
            token_expires_at=utcnow() + timedelta(seconds=expires_in),
            email="owner@example.com",
            is_active=is_active,
        )
        db.add(conn)
        await db.flush()
        site = GscSite(connection_id=conn.id, tenant_id=tenant_id, site_url=site_url, permission_level="siteOwner")
        db.add(site)
        await db.commit()
    return tenant_id, site
