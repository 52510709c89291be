"""
Tests for the OAuth connect flow: single-use state, code exchange, site
discovery warnings, auto-linking and disconnect.
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import seed_connection
from gsc_core.crypto import decrypt_value
from gsc_core.errors import ExpiredState, InvalidState, ProviderError
from gsc_core.models import GscConnection, GscSite, OAuthState, QueueItem, SiteStoreLink, Store
from gsc_core.services.connection_service import (
    ConnectionManager,
    FlowState,
    WARNING_NO_SITES,
    WARNING_SITES_FETCH_FAILED,
    generate_state_token,
)
from gsc_core.services.token_service import CredentialVault
from gsc_core.utils import utcnow


def _manager(session_factory, fake_client):
    vault = CredentialVault(session_factory=session_factory, client=fake_client)
    return ConnectionManager(vault=vault, client=fake_client, session_factory=session_factory)


async def _issue_state(manager, db, tenant_id) -> str:
    url = await manager.begin_authorization(db, tenant_id)
    await db.commit()
    return url.split("state=")[1].split("&")[0]


def test_state_tokens_are_unique_and_long():
    tokens = {generate_state_token() for _ in range(100)}
    assert len(tokens) == 100
    assert all(len(t) >= 43 for t in tokens)


@pytest.mark.anyio
async def test_begin_authorization_persists_state(session_factory, fake_client):
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        state = await _issue_state(manager, db, tenant_id)
        row = (await db.execute(select(OAuthState).where(OAuthState.state == state))).scalar_one()
        assert row.tenant_id == tenant_id
        assert utcnow() < row.expires_at <= utcnow() + timedelta(minutes=5)


@pytest.mark.anyio
async def test_callback_connects_and_stores_encrypted_tokens(session_factory, fake_client):
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        state = await _issue_state(manager, db, tenant_id)
        result = await manager.handle_callback(db, "auth-code", state, tenant_id)

    assert result.status == FlowState.CONNECTED
    assert result.warning is None
    assert result.email == "owner@example.com"
    assert result.site_urls == ["https://shop.example.com/"]

    async with session_factory() as db:
        conn = (await db.execute(select(GscConnection).where(GscConnection.tenant_id == tenant_id))).scalar_one()
        assert conn.is_active is True
        assert conn.access_token_encrypted != "new-access-token"
        assert decrypt_value(conn.access_token_encrypted) == "new-access-token"
        assert decrypt_value(conn.refresh_token_encrypted) == "new-refresh-token"
        assert (await db.scalar(select(func.count()).select_from(OAuthState))) == 0


@pytest.mark.anyio
async def test_state_is_single_use(session_factory, fake_client):
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        state = await _issue_state(manager, db, tenant_id)
        await manager.handle_callback(db, "auth-code", state, tenant_id)
        with pytest.raises(InvalidState):
            await manager.handle_callback(db, "auth-code", state, tenant_id)


@pytest.mark.anyio
async def test_state_bound_to_issuing_tenant(session_factory, fake_client):
    manager = _manager(session_factory, fake_client)
    issuer = uuid.uuid4()
    async with session_factory() as db:
        state = await _issue_state(manager, db, issuer)
        with pytest.raises(InvalidState):
            await manager.handle_callback(db, "auth-code", state, uuid.uuid4())

        # Only an exact (state, tenant) match consumes the row
        assert await db.scalar(select(func.count()).select_from(OAuthState)) == 1
        result = await manager.handle_callback(db, "auth-code", state, issuer)
        assert result.status == FlowState.CONNECTED
        assert await db.scalar(select(func.count()).select_from(OAuthState)) == 0


@pytest.mark.anyio
async def test_expired_state_is_rejected_and_consumed(session_factory, fake_client):
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        db.add(OAuthState(state="stale-state", tenant_id=tenant_id, expires_at=utcnow() - timedelta(seconds=1)))
        await db.commit()

        with pytest.raises(ExpiredState):
            await manager.handle_callback(db, "auth-code", "stale-state", tenant_id)
        assert (await db.scalar(select(func.count()).select_from(OAuthState))) == 0
        assert (await db.scalar(select(func.count()).select_from(GscConnection))) == 0


@pytest.mark.anyio
async def test_failed_code_exchange_stores_nothing(session_factory, fake_client):
    fake_client.exchange_error = ProviderError.from_status(400, "Bad code", reason="invalid_grant")
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        state = await _issue_state(manager, db, tenant_id)
        with pytest.raises(ProviderError):
            await manager.handle_callback(db, "bad-code", state, tenant_id)
        assert (await db.scalar(select(func.count()).select_from(GscConnection))) == 0


@pytest.mark.anyio
async def test_site_discovery_failure_is_a_warning(session_factory, fake_client):
    fake_client.sites_error = ProviderError.from_status(503, "Unavailable")
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        state = await _issue_state(manager, db, tenant_id)
        result = await manager.handle_callback(db, "auth-code", state, tenant_id)

        assert result.status == FlowState.CONNECTED_WITH_WARNING
        assert result.warning == WARNING_SITES_FETCH_FAILED
        assert (await db.scalar(select(func.count()).select_from(GscConnection))) == 1


@pytest.mark.anyio
async def test_no_verified_sites_is_a_warning(session_factory, fake_client):
    fake_client.sites = []
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        state = await _issue_state(manager, db, tenant_id)
        result = await manager.handle_callback(db, "auth-code", state, tenant_id)
    assert result.warning == WARNING_NO_SITES
    assert result.site_urls == []


@pytest.mark.anyio
async def test_sites_auto_link_to_matching_store(session_factory, fake_client):
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        store = Store(tenant_id=tenant_id, name="Shop", url="https://www.shop.example.com")
        other = Store(tenant_id=tenant_id, name="Blog", url="https://blog.example.org")
        db.add_all([store, other])
        await db.commit()

        state = await _issue_state(manager, db, tenant_id)
        result = await manager.handle_callback(db, "auth-code", state, tenant_id)

        assert result.link.tier == "local"
        assert result.link.linked == 1
        links = (await db.execute(select(SiteStoreLink))).scalars().all()
        assert [link.store_id for link in links] == [store.id]


@pytest.mark.anyio
async def test_auto_link_failure_does_not_fail_callback(session_factory, fake_client, monkeypatch):
    async def broken_link(db, tenant_id, sites):
        raise AttributeError("'str' object has no attribute 'get'")

    monkeypatch.setattr("gsc_core.services.connection_service.link_sites_to_stores", broken_link)
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        state = await _issue_state(manager, db, tenant_id)
        result = await manager.handle_callback(db, "auth-code", state, tenant_id)

        assert result.status == FlowState.CONNECTED
        assert result.link is None
        assert result.site_urls == ["https://shop.example.com/"]
        site = (await db.execute(select(GscSite))).scalar_one()
        assert site.is_active is True


@pytest.mark.anyio
async def test_reconnect_updates_sites_and_keeps_one_connection(session_factory, fake_client):
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        state = await _issue_state(manager, db, tenant_id)
        await manager.handle_callback(db, "auth-code", state, tenant_id)

        fake_client.sites = [fake_client.sites[0].model_copy(update={"siteUrl": "sc-domain:example.com"})]
        state = await _issue_state(manager, db, tenant_id)
        await manager.handle_callback(db, "auth-code", state, tenant_id)

        assert (await db.scalar(select(func.count()).select_from(GscConnection))) == 1
        sites = {s.site_url: s.is_active for s in (await db.execute(select(GscSite))).scalars().all()}
        assert sites == {"https://shop.example.com/": False, "sc-domain:example.com": True}


@pytest.mark.anyio
async def test_soft_disconnect_keeps_history(session_factory, fake_client):
    tenant_id, site = await seed_connection(session_factory)
    manager = _manager(session_factory, fake_client)
    async with session_factory() as db:
        assert await manager.disconnect(db, tenant_id) == "disconnected"
        await db.commit()

    async with session_factory() as db:
        status = await manager.get_status(db, tenant_id)
        assert status["connected"] is False
        assert [s["site_url"] for s in status["sites"]] == [site.site_url]


@pytest.mark.anyio
async def test_hard_disconnect_deletes_everything(session_factory, fake_client):
    tenant_id, site = await seed_connection(session_factory)
    manager = _manager(session_factory, fake_client)
    async with session_factory() as db:
        db.add(QueueItem(site_id=site.id, tenant_id=tenant_id, url="https://shop.example.com/a"))
        await db.commit()

        assert await manager.disconnect(db, tenant_id, hard=True) == "deleted"
        await db.commit()

        for model in (GscConnection, GscSite, QueueItem):
            assert (await db.scalar(select(func.count()).select_from(model))) == 0


@pytest.mark.anyio
async def test_purge_expired_states(session_factory, fake_client):
    manager = _manager(session_factory, fake_client)
    tenant_id = uuid.uuid4()
    async with session_factory() as db:
        db.add_all([
            OAuthState(state="old", tenant_id=tenant_id, expires_at=utcnow() - timedelta(minutes=1)),
            OAuthState(state="live", tenant_id=tenant_id, expires_at=utcnow() + timedelta(minutes=1)),
        ])
        await db.commit()

        assert await manager.purge_expired_states(db) == 1
        await db.commit()
        remaining = (await db.execute(select(OAuthState.state))).scalars().all()
        assert remaining == ["live"]
