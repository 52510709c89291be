"""
Connection Service — OAuth authorization-code flow for Search Console.

Flow: begin_authorization issues a single-use state and the Google consent
URL; handle_callback consumes the state, exchanges the code, discovers the
account's verified sites and persists connection + sites for the tenant.
Site discovery problems downgrade the result to a warning rather than an
error so the user does not have to authorize twice.
"""

import enum
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gsc_core.config import get_settings
from gsc_core.database import async_session, dialect_insert
from gsc_core.errors import (
    ConfigurationError,
    ExpiredState,
    InvalidState,
    NotConnected,
    PersistenceError,
    ProviderError,
)
from gsc_core.models import (
    GscConnection,
    GscSite,
    IndexationSettings,
    IndexationUrl,
    OAuthState,
    QueueItem,
    SiteStoreLink,
)
from gsc_core.services.provider_client import SearchConsoleClient
from gsc_core.services.provider_models import SiteEntry
from gsc_core.services.store_links import LinkOutcome, link_sites_to_stores
from gsc_core.services.token_service import CredentialVault, get_credential_vault, load_connection
from gsc_core.utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

WARNING_SITES_FETCH_FAILED = "sites_fetch_failed"
WARNING_NO_SITES = "no_sites"


class FlowState(str, enum.Enum):
    NOT_STARTED = "not_started"
    STATE_PENDING = "state_pending"
    CONNECTED = "connected"
    CONNECTED_WITH_WARNING = "connected_with_warning"
    ERROR = "error"


@dataclass
class ConnectionResult:
    status: FlowState
    connection_id: uuid.UUID
    email: Optional[str] = None
    site_urls: list[str] = field(default_factory=list)
    warning: Optional[str] = None
    link: Optional[LinkOutcome] = None


def generate_state_token() -> str:
    """256 bits from the OS CSPRNG, URL-safe."""
    return secrets.token_urlsafe(32)


class ConnectionManager:
    def __init__(
        self,
        vault: Optional[CredentialVault] = None,
        client: Optional[SearchConsoleClient] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.vault = vault or get_credential_vault()
        self.client = client or SearchConsoleClient()
        self._session_factory = session_factory or async_session

    # ── Authorization ────────────────────────────────────────────────

    async def begin_authorization(self, db: AsyncSession, tenant_id: uuid.UUID) -> str:
        settings = get_settings()
        if not self.client.client_id:
            raise ConfigurationError("GOOGLE_CLIENT_ID is not configured")

        state = generate_state_token()
        now = utcnow()
        db.add(OAuthState(
            state=state,
            tenant_id=tenant_id,
            created_at=now,
            expires_at=now + timedelta(minutes=settings.oauth_state_ttl_minutes),
        ))
        await db.flush()
        logger.info(f"Issued OAuth state for tenant {tenant_id}")
        return self.client.authorization_url(state, settings.oauth_redirect_uri)

    async def consume_state(self, db: AsyncSession, state: str, tenant_id: uuid.UUID) -> None:
        """
        Verify and delete the state in one statement, so two callbacks racing
        on the same token cannot both succeed. Commits immediately: the row is
        gone whatever happens to the rest of the callback.
        """
        result = await db.execute(
            delete(OAuthState)
            .where(OAuthState.state == state, OAuthState.tenant_id == tenant_id)
            .returning(OAuthState.expires_at)
        )
        expires_at = result.scalar_one_or_none()
        await db.commit()
        if expires_at is None:
            raise InvalidState("Unknown or already used OAuth state")
        if as_naive_utc(expires_at) < utcnow():
            raise ExpiredState("OAuth state expired")

    async def purge_expired_states(self, db: AsyncSession) -> int:
        result = await db.execute(delete(OAuthState).where(OAuthState.expires_at < utcnow()))
        purged = result.rowcount or 0
        if purged:
            logger.info(f"Purged {purged} expired OAuth state(s)")
        return purged

    async def handle_callback(
        self,
        db: AsyncSession,
        code: str,
        state: str,
        tenant_id: uuid.UUID,
    ) -> ConnectionResult:
        """
        Raises StateError for a bad state, ProviderError when the code
        exchange fails, PersistenceError when the connection cannot be saved.
        """
        await self.consume_state(db, state, tenant_id)

        settings = get_settings()
        tokens = await self.client.exchange_code(code, settings.oauth_redirect_uri)
        email = await self.client.fetch_email(tokens.access_token)

        warning = None
        entries: list[SiteEntry] = []
        try:
            entries = await self.client.list_sites(tokens.access_token)
            if not entries:
                warning = WARNING_NO_SITES
        except ProviderError as exc:
            logger.error(f"Site discovery failed for tenant {tenant_id}: {exc.message}")
            warning = WARNING_SITES_FETCH_FAILED

        try:
            conn = await self.vault.store_tokens(db, tenant_id, tokens, email)
            sites = await self._upsert_sites(db, conn, entries)
            connection_id = conn.id
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceError(f"Could not save connection: {exc.__class__.__name__}") from exc

        link = await self._auto_link(tenant_id, sites)

        logger.info(
            f"Search Console connected for tenant {tenant_id}: {len(sites)} site(s)"
            + (f", warning={warning}" if warning else "")
        )
        return ConnectionResult(
            status=FlowState.CONNECTED_WITH_WARNING if warning else FlowState.CONNECTED,
            connection_id=connection_id,
            email=email,
            site_urls=[s.site_url for s in sites],
            warning=warning,
            link=link,
        )

    # ── Sites ────────────────────────────────────────────────────────

    async def _upsert_sites(self, db: AsyncSession, conn: GscConnection, entries: list[SiteEntry]) -> list[GscSite]:
        if not entries:
            return []
        now = utcnow()
        rows = [
            {
                "id": uuid.uuid4(),
                "connection_id": conn.id,
                "tenant_id": conn.tenant_id,
                "site_url": e.siteUrl,
                "permission_level": e.permissionLevel,
                "is_active": True,
                "created_at": now,
                "updated_at": now,
            }
            for e in entries
        ]
        stmt = dialect_insert(db, GscSite).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["connection_id", "site_url"],
            set_={
                "permission_level": stmt.excluded.permission_level,
                "is_active": True,
                "updated_at": now,
            },
        )
        await db.execute(stmt)

        discovered = [e.siteUrl for e in entries]
        # Properties the account lost access to stay on file, inactive
        await db.execute(
            update(GscSite)
            .where(GscSite.connection_id == conn.id, GscSite.site_url.not_in(discovered))
            .values(is_active=False, updated_at=now)
        )
        result = await db.execute(
            select(GscSite)
            .where(GscSite.connection_id == conn.id, GscSite.site_url.in_(discovered))
            .order_by(GscSite.site_url)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _auto_link(self, tenant_id: uuid.UUID, sites: list[GscSite]) -> Optional[LinkOutcome]:
        """Best-effort: a failure here never fails the callback.

        Runs in its own session so a rollback leaves the caller's sites loaded.
        """
        if not sites:
            return None
        try:
            async with self._session_factory() as db:
                outcome = await link_sites_to_stores(db, tenant_id, sites)
                await db.commit()
            return outcome
        except Exception as exc:
            logger.warning(f"Auto-linking sites to stores failed for tenant {tenant_id}: {exc.__class__.__name__}: {exc}")
            return None
        try:
            outcome = await link_sites_to_stores(db, tenant_id, sites)
            await db.commit()
            return outcome
        except Exception as exc:
            await db.rollback()
            logger.warning(f"Auto-linking sites to stores failed for tenant {tenant_id}: {exc.__class__.__name__}: {exc}")
            return None

    async def refresh_sites(self, db: AsyncSession, tenant_id: uuid.UUID) -> list[GscSite]:
        """Re-run site discovery for an existing connection."""
        conn = await load_connection(db, tenant_id)
        if conn is None or not conn.is_active:
            raise NotConnected("No active Search Console connection")
        access_token = await self.vault.get_valid_access_token(tenant_id)
        entries = await self.client.list_sites(access_token)
        sites = await self._upsert_sites(db, conn, entries)
        await db.commit()
        await self._auto_link(tenant_id, sites)
        return sites

    # ── Status / disconnect ──────────────────────────────────────────

    async def get_status(self, db: AsyncSession, tenant_id: uuid.UUID) -> dict:
        conn = await load_connection(db, tenant_id)
        if conn is None:
            return {"connected": False, "is_active": False, "email": None, "sites": []}

        result = await db.execute(
            select(GscSite).where(GscSite.connection_id == conn.id).order_by(GscSite.site_url)
        )
        sites = result.scalars().all()
        links_result = await db.execute(
            select(SiteStoreLink.site_id, SiteStoreLink.store_id)
            .where(SiteStoreLink.site_id.in_([s.id for s in sites]))
        )
        links: dict[uuid.UUID, list[str]] = {}
        for site_id, store_id in links_result.all():
            links.setdefault(site_id, []).append(str(store_id))

        return {
            "connected": conn.is_active,
            "is_active": conn.is_active,
            "email": conn.email,
            "token_expires_at": conn.token_expires_at.isoformat() if conn.token_expires_at else None,
            "sites": [
                {
                    "id": str(s.id),
                    "site_url": s.site_url,
                    "permission_level": s.permission_level,
                    "is_active": s.is_active,
                    "linked_store_ids": links.get(s.id, []),
                }
                for s in sites
            ],
        }

    async def disconnect(self, db: AsyncSession, tenant_id: uuid.UUID, hard: bool = False) -> str:
        conn = await load_connection(db, tenant_id)
        if conn is None:
            raise NotConnected("No Search Console connection")

        if not hard:
            conn.is_active = False
            conn.updated_at = utcnow()
            await db.flush()
            logger.info(f"Search Console connection deactivated for tenant {tenant_id}")
            return "disconnected"

        site_ids = select(GscSite.id).where(GscSite.connection_id == conn.id)
        for model in (QueueItem, IndexationUrl, IndexationSettings, SiteStoreLink):
            await db.execute(delete(model).where(model.site_id.in_(site_ids)))
        await db.execute(delete(GscSite).where(GscSite.connection_id == conn.id))
        await db.execute(delete(GscConnection).where(GscConnection.id == conn.id))
        logger.info(f"Search Console connection deleted for tenant {tenant_id}")
        return "deleted"
