"""
Endpoint tests: tenant auth, OAuth callback redirects, indexation, opportunities, cron.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from httpx import AsyncClient, ASGITransport

from conftest import seed_connection
from gsc_core.auth import create_access_token
from gsc_core.config import get_settings
from gsc_core.database import get_db
from gsc_core.errors import ProviderError
from gsc_core.main import app
from gsc_core.routers.gsc_oauth import get_connection_manager
from gsc_core.routers.indexation import get_scheduler, get_sitemap_sync
from gsc_core.routers.opportunities import get_scorer
from gsc_core.services.connection_service import ConnectionManager
from gsc_core.services.indexation_service import IndexationScheduler
from gsc_core.services.opportunity_service import OpportunityScorer
from gsc_core.services.provider_models import AnalyticsRow
from gsc_core.services.quota_service import QuotaLedger
from gsc_core.services.sitemap_service import SitemapSync
from gsc_core.services.token_service import CredentialVault


@pytest.fixture
async def client(session_factory, fake_client):
    vault = CredentialVault(session_factory=session_factory, client=fake_client)
    scheduler = IndexationScheduler(
        vault=vault,
        client=fake_client,
        ledger=QuotaLedger(session_factory, daily_limit=2),
        session_factory=session_factory,
    )

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_connection_manager] = lambda: ConnectionManager(vault=vault, client=fake_client, session_factory=session_factory)
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    app.dependency_overrides[get_scorer] = lambda: OpportunityScorer(vault=vault, client=fake_client, session_factory=session_factory)
    app.dependency_overrides[get_sitemap_sync] = lambda: SitemapSync(scheduler=scheduler, session_factory=session_factory)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def _auth(tenant_id):
    return {"Authorization": f"Bearer {create_access_token(tenant_id)}"}


def _redirect_params(response):
    assert response.status_code == 307
    location = urlparse(response.headers["location"])
    assert location.path == "/app/overview"
    return {k: v[0] for k, v in parse_qs(location.query).items()}


# ── OAuth ────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_authorize_requires_tenant(client):
    response = await client.get("/api/gsc/oauth/authorize")
    assert response.status_code == 401


@pytest.mark.anyio
async def test_connect_flow_redirects_to_dashboard(client, session_factory):
    import uuid
    tenant_id = uuid.uuid4()

    response = await client.get("/api/gsc/oauth/authorize", headers=_auth(tenant_id))
    assert response.status_code == 200
    state = parse_qs(urlparse(response.json()["url"]).query)["state"][0]

    response = await client.get(
        "/api/gsc/oauth/callback", params={"code": "auth-code", "state": state}, headers=_auth(tenant_id)
    )
    assert _redirect_params(response) == {"gsc_status": "connected"}

    # Replaying the same state fails
    response = await client.get(
        "/api/gsc/oauth/callback", params={"code": "auth-code", "state": state}, headers=_auth(tenant_id)
    )
    assert _redirect_params(response) == {"gsc_status": "error", "gsc_error": "invalid_state"}

    status = (await client.get("/api/gsc/connection", headers=_auth(tenant_id))).json()
    assert status["connected"] is True
    assert [s["site_url"] for s in status["sites"]] == ["https://shop.example.com/"]


@pytest.mark.anyio
async def test_callback_reports_site_warning(client, fake_client):
    import uuid
    tenant_id = uuid.uuid4()
    fake_client.sites_error = ProviderError.from_status(500, "Backend error")

    response = await client.get("/api/gsc/oauth/authorize", headers=_auth(tenant_id))
    state = parse_qs(urlparse(response.json()["url"]).query)["state"][0]
    response = await client.get(
        "/api/gsc/oauth/callback", params={"code": "auth-code", "state": state}, headers=_auth(tenant_id)
    )
    assert _redirect_params(response) == {"gsc_status": "connected", "gsc_warning": "sites_fetch_failed"}


@pytest.mark.anyio
async def test_callback_error_paths(client):
    import uuid
    tenant_id = uuid.uuid4()

    response = await client.get("/api/gsc/oauth/callback", params={"error": "access_denied"})
    assert _redirect_params(response) == {"gsc_status": "error", "gsc_error": "access_denied"}

    response = await client.get("/api/gsc/oauth/callback", params={"code": "c", "state": "s"})
    assert _redirect_params(response) == {"gsc_status": "error", "gsc_error": "unauthorized"}

    response = await client.get("/api/gsc/oauth/callback", params={"code": "c"}, headers=_auth(tenant_id))
    assert _redirect_params(response) == {"gsc_status": "error", "gsc_error": "missing_params"}


@pytest.mark.anyio
async def test_authorize_without_client_id_is_server_error(client, fake_client):
    import uuid
    fake_client.client_id = ""

    response = await client.get("/api/gsc/oauth/authorize", headers=_auth(uuid.uuid4()))

    assert response.status_code == 500
    assert response.json()["detail"] == "Search Console OAuth is not configured"


async def _start_connect(client, tenant_id) -> str:
    response = await client.get("/api/gsc/oauth/authorize", headers=_auth(tenant_id))
    return parse_qs(urlparse(response.json()["url"]).query)["state"][0]


@pytest.mark.anyio
async def test_callback_exchange_failure_redirects(client, fake_client):
    import uuid
    tenant_id = uuid.uuid4()
    fake_client.exchange_error = ProviderError.from_status(400, "invalid_grant")

    state = await _start_connect(client, tenant_id)
    response = await client.get(
        "/api/gsc/oauth/callback", params={"code": "auth-code", "state": state}, headers=_auth(tenant_id)
    )
    assert _redirect_params(response) == {"gsc_status": "error", "gsc_error": "token_exchange_failed"}


@pytest.mark.anyio
async def test_callback_unexpected_error_redirects(client, monkeypatch):
    import uuid
    tenant_id = uuid.uuid4()

    async def boom(self, db, code, state, tenant_id):
        raise RuntimeError("unexpected")

    state = await _start_connect(client, tenant_id)
    monkeypatch.setattr(ConnectionManager, "handle_callback", boom)
    response = await client.get(
        "/api/gsc/oauth/callback", params={"code": "auth-code", "state": state}, headers=_auth(tenant_id)
    )
    assert _redirect_params(response) == {"gsc_status": "error", "gsc_error": "callback_failed"}


@pytest.mark.anyio
async def test_callback_survives_malformed_store_directory(client, monkeypatch):
    import uuid
    tenant_id = uuid.uuid4()
    real_client = httpx.AsyncClient
    directory = httpx.MockTransport(lambda request: httpx.Response(200, json={"stores": ["shop.example.com"]}))
    monkeypatch.setattr(get_settings(), "store_directory_url", "https://stores.example/api/stores")
    monkeypatch.setattr(httpx, "AsyncClient", lambda **kwargs: real_client(transport=directory, **kwargs))

    state = await _start_connect(client, tenant_id)
    response = await client.get(
        "/api/gsc/oauth/callback", params={"code": "auth-code", "state": state}, headers=_auth(tenant_id)
    )
    assert _redirect_params(response) == {"gsc_status": "connected"}

    status = (await client.get("/api/gsc/connection", headers=_auth(tenant_id))).json()
    assert [s["site_url"] for s in status["sites"]] == ["https://shop.example.com/"]


@pytest.mark.anyio
async def test_disconnect_without_connection_is_conflict(client):
    import uuid
    response = await client.delete("/api/gsc/connection", headers=_auth(uuid.uuid4()))
    assert response.status_code == 409
    assert response.json()["code"] == "not_connected"


# ── Indexation ───────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_submit_endpoint_reports_counts(client, session_factory):
    tenant_id, site = await seed_connection(session_factory)
    urls = [f"https://shop.example.com/p/{i}" for i in range(3)]

    response = await client.post(
        "/api/gsc/indexation/submit", json={"siteId": str(site.id), "urls": urls}, headers=_auth(tenant_id)
    )

    assert response.status_code == 200
    assert response.json() == {"submitted": 2, "queued": 1, "failed": 0, "quota_remaining": 0}

    queue = (await client.get(
        "/api/gsc/indexation/queue", params={"siteId": str(site.id)}, headers=_auth(tenant_id)
    )).json()
    assert queue["pending"] == 1
    assert queue["submitted"] == 2


@pytest.mark.anyio
async def test_submit_with_revoked_connection_is_unauthorized(client, session_factory):
    tenant_id, site = await seed_connection(session_factory, is_active=False)
    response = await client.post(
        "/api/gsc/indexation/submit",
        json={"siteId": str(site.id), "urls": ["https://shop.example.com/a"]},
        headers=_auth(tenant_id),
    )
    assert response.status_code == 401
    assert response.json()["code"] == "reauth_required"


@pytest.mark.anyio
async def test_other_tenants_site_is_not_found(client, session_factory):
    import uuid
    _, site = await seed_connection(session_factory)
    response = await client.get(
        "/api/gsc/indexation/overview", params={"siteId": str(site.id)}, headers=_auth(uuid.uuid4())
    )
    assert response.status_code == 404


@pytest.mark.anyio
async def test_indexation_settings_round_trip(client, session_factory):
    tenant_id, site = await seed_connection(session_factory)
    path = f"/api/gsc/indexation/settings/{site.id}"

    assert (await client.get(path, headers=_auth(tenant_id))).json()["auto_index_new"] is False
    response = await client.put(
        path, json={"auto_index_new": True, "auto_index_updated": False}, headers=_auth(tenant_id)
    )
    assert response.status_code == 200
    data = (await client.get(path, headers=_auth(tenant_id))).json()
    assert data["auto_index_new"] is True
    assert data["auto_index_updated"] is False


# ── Opportunities ────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_opportunities_endpoint(client, session_factory, fake_client):
    tenant_id, site = await seed_connection(session_factory)
    fake_client.analytics = {
        28: [AnalyticsRow(keys=["blue shoes", "https://shop.example.com/blue"], impressions=120, position=12)],
    }

    response = await client.post(
        "/api/gsc/opportunities",
        json={"siteId": str(site.id), "dateRange": "last_28_days"},
        headers=_auth(tenant_id),
    )

    assert response.status_code == 200
    data = response.json()
    assert [o["query"] for o in data["quick_wins"]] == ["blue shoes"]
    assert data["quick_wins"][0]["trend"] == "new"
    assert data["low_ctr"] == []
    assert [o["query"] for o in data["no_clicks"]] == ["blue shoes"]


@pytest.mark.anyio
async def test_opportunities_rejects_unknown_range(client, session_factory):
    tenant_id, site = await seed_connection(session_factory)
    response = await client.post(
        "/api/gsc/opportunities",
        json={"siteId": str(site.id), "dateRange": "last_year"},
        headers=_auth(tenant_id),
    )
    assert response.status_code == 422


# ── Cron ─────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_cron_requires_secret(client):
    response = await client.post("/api/cron/gsc/drain")
    assert response.status_code == 401


@pytest.mark.anyio
async def test_cron_drain_runs_per_tenant(client, session_factory):
    tenant_id, site = await seed_connection(session_factory)
    await client.post(
        "/api/gsc/indexation/submit",
        json={"siteId": str(site.id), "urls": [f"https://shop.example.com/c/{i}" for i in range(3)]},
        headers=_auth(tenant_id),
    )

    response = await client.post("/api/cron/gsc/drain", headers={"X-Cron-Secret": "test-cron-secret"})

    assert response.status_code == 200
    result = response.json()["tenants"][str(tenant_id)]
    # Same day: quota is still spent, the item stays queued
    assert result["submitted"] == 0
    assert result["still_pending"] == 1
