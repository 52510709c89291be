"""
Token Service — the credential vault for Search Console OAuth tokens.

Stores tokens encrypted, hands out a valid access token and refreshes it
before expiry. Concurrent refreshes for the same tenant are coalesced into a
single exchange: Google may reject a refresh token that is replayed while the
first exchange is still in flight.

This is the only module that writes token columns.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gsc_core.config import get_settings
from gsc_core.crypto import decrypt_value, encrypt_value
from gsc_core.database import async_session
from gsc_core.errors import NotConnected, NotFound, PersistenceError, ProviderError, ReauthRequired
from gsc_core.models import GscConnection, GscSite
from gsc_core.services.provider_client import SearchConsoleClient
from gsc_core.services.provider_models import TokenResponse
from gsc_core.utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

# Provider answers meaning the refresh token itself is dead
_REVOKED_REASONS = {"invalid_grant", "unauthorized_client", "invalid_client"}


def _is_revocation(exc: ProviderError) -> bool:
    if exc.retryable:
        return False
    return exc.reason in _REVOKED_REASONS or exc.status_code in (400, 401)


async def load_connection(db: AsyncSession, tenant_id: uuid.UUID) -> Optional[GscConnection]:
    result = await db.execute(select(GscConnection).where(GscConnection.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def load_site(db: AsyncSession, site_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> GscSite:
    """An active site, optionally scoped to the calling tenant. Raises NotFound."""
    site = await db.get(GscSite, site_id)
    if site is None or not site.is_active or (tenant_id is not None and site.tenant_id != tenant_id):
        raise NotFound("Site not found")
    return site


class CredentialVault:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        client: Optional[SearchConsoleClient] = None,
        refresh_margin: Optional[timedelta] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory or async_session
        self._client = client or SearchConsoleClient()
        self._margin = refresh_margin if refresh_margin is not None else timedelta(
            seconds=settings.token_refresh_margin_seconds
        )
        # tenant_id -> in-flight refresh; entries are removed when the task finishes
        self._inflight: dict[uuid.UUID, asyncio.Task] = {}

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def needs_refresh(self, expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        if expires_at is None:
            return True
        now = now or utcnow()
        return now >= as_naive_utc(expires_at) - self._margin

    # ── Reads ────────────────────────────────────────────────────────

    async def get_valid_access_token(self, tenant_id: uuid.UUID) -> str:
        """
        Return a decrypted access token valid for at least the safety margin.
        Raises NotConnected, ReauthRequired or CorruptCredential; transient
        provider failures during refresh surface as ProviderError.
        """
        async with self._session_factory() as db:
            conn = await self._load_active(db, tenant_id)
            if not self.needs_refresh(conn.token_expires_at):
                return decrypt_value(conn.access_token_encrypted)
        return await self._coalesced_refresh(tenant_id)

    async def _load_active(self, db: AsyncSession, tenant_id: uuid.UUID) -> GscConnection:
        try:
            conn = await load_connection(db, tenant_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load connection: {exc.__class__.__name__}") from exc
        if conn is None:
            raise NotConnected("No Search Console connection for this tenant")
        if not conn.is_active:
            raise ReauthRequired("Search Console connection is inactive; reconnect required")
        return conn

    # ── Refresh ──────────────────────────────────────────────────────

    async def _coalesced_refresh(self, tenant_id: uuid.UUID) -> str:
        task = self._inflight.get(tenant_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._refresh(tenant_id))
            self._inflight[tenant_id] = task
            task.add_done_callback(lambda t: self._forget(tenant_id, t))
        else:
            logger.debug(f"Joining in-flight token refresh for tenant {tenant_id}")
        # Shielded so one cancelled caller does not cancel the refresh for the others
        return await asyncio.shield(task)

    def _forget(self, tenant_id: uuid.UUID, task: asyncio.Task) -> None:
        if self._inflight.get(tenant_id) is task:
            del self._inflight[tenant_id]
        if not task.cancelled():
            task.exception()  # mark retrieved; awaiting callers re-raise it

    async def _refresh(self, tenant_id: uuid.UUID) -> str:
        async with self._session_factory() as db:
            conn = await self._load_active(db, tenant_id)
            # A refresh that completed just before this one started already did the work
            if not self.needs_refresh(conn.token_expires_at):
                return decrypt_value(conn.access_token_encrypted)
            if not conn.refresh_token_encrypted:
                conn.is_active = False
                await db.commit()
                raise ReauthRequired("No refresh token stored; reconnect required")
            refresh_token = decrypt_value(conn.refresh_token_encrypted)

        logger.info(f"Access token expiring for tenant {tenant_id}, refreshing...")
        try:
            tokens = await self._client.refresh_access_token(refresh_token)
        except ProviderError as exc:
            if _is_revocation(exc):
                logger.warning(f"Refresh token rejected for tenant {tenant_id}: {exc.reason or exc.status_code}")
                await self.deactivate(tenant_id)
                raise ReauthRequired("Refresh token was rejected; reconnect required") from exc
            logger.error(f"Token refresh failed for tenant {tenant_id}: {exc.message}")
            raise

        async with self._session_factory() as db:
            conn = await self._load_active(db, tenant_id)
            self._apply_tokens(conn, tokens)
            try:
                await db.commit()
            except SQLAlchemyError as exc:
                raise PersistenceError("Could not persist refreshed token") from exc
        logger.info(f"Token refreshed for tenant {tenant_id}, expires in {tokens.expires_in}s")
        return tokens.access_token

    # ── Writes ───────────────────────────────────────────────────────

    @staticmethod
    def _apply_tokens(conn: GscConnection, tokens: TokenResponse) -> None:
        conn.access_token_encrypted = encrypt_value(tokens.access_token)
        conn.token_expires_at = utcnow() + timedelta(seconds=tokens.expires_in)
        # Google only returns a new refresh token on some exchanges
        if tokens.refresh_token:
            conn.refresh_token_encrypted = encrypt_value(tokens.refresh_token)
        conn.updated_at = utcnow()

    async def store_tokens(
        self,
        db: AsyncSession,
        tenant_id: uuid.UUID,
        tokens: TokenResponse,
        email: Optional[str],
    ) -> GscConnection:
        """
        Upsert the tenant's connection with freshly exchanged tokens inside the
        caller's transaction. Keyed on tenant_id: at most one row per tenant.
        """
        conn = await load_connection(db, tenant_id)
        if conn is None:
            conn = GscConnection(tenant_id=tenant_id, access_token_encrypted="")
            db.add(conn)
        self._apply_tokens(conn, tokens)
        conn.email = email
        conn.is_active = True
        await db.flush()
        return conn

    async def deactivate(self, tenant_id: uuid.UUID) -> None:
        async with self._session_factory() as db:
            conn = await load_connection(db, tenant_id)
            if conn is not None and conn.is_active:
                conn.is_active = False
                conn.updated_at = utcnow()
                await db.commit()


_default_vault: Optional[CredentialVault] = None


def get_credential_vault() -> CredentialVault:
    """Process-wide vault; its in-flight registry is the only shared state."""
    global _default_vault
    if _default_vault is None:
        _default_vault = CredentialVault()
    return _default_vault
