"""
Sitemap Service — keep a site's tracked URLs in step with its sitemap.

Fetches /sitemap.xml (following sitemap indexes), upserts every <loc> into
gsc_indexation_urls, marks sitemap URLs that disappeared as inactive and,
when the site's auto-index switches are on, submits new or lastmod-updated
URLs through the IndexationScheduler.

URLs are only retired after a walk with no fetch errors.
"""

import logging
import uuid
from dataclasses import dataclass, field, asdict
from typing import Optional

import httpx
from bs4 import BeautifulSoup
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gsc_core.config import get_settings
from gsc_core.database import async_session, dialect_insert
from gsc_core.errors import AuthError, PersistenceError
from gsc_core.models import GscSite, IndexationSettings, IndexationUrl, UrlSource, Verdict
from gsc_core.services.indexation_service import IndexationScheduler
from gsc_core.utils import utcnow

logger = logging.getLogger(__name__)

BATCH_SIZE = 500


@dataclass
class SitemapEntry:
    url: str
    lastmod: Optional[str] = None


@dataclass
class SitemapSyncResult:
    site_url: str
    total: int = 0
    new: int = 0
    updated: int = 0
    removed: int = 0
    submitted: int = 0
    queued: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def sitemap_base_url(site_url: str) -> str:
    """Domain properties (sc-domain:example.com) have no scheme; assume https."""
    if site_url.startswith("sc-domain:"):
        return f"https://{site_url[len('sc-domain:'):]}"
    return site_url.rstrip("/")


def parse_sitemap_xml(content: str) -> tuple[list[SitemapEntry], list[str]]:
    """Returns (page entries, child sitemap locations)."""
    soup = BeautifulSoup(content, "html.parser")
    children = []
    for sitemap in soup.find_all("sitemap"):
        loc = sitemap.find("loc")
        if loc and loc.get_text(strip=True):
            children.append(loc.get_text(strip=True))

    entries = []
    for url in soup.find_all("url"):
        loc = url.find("loc")
        if not loc or not loc.get_text(strip=True):
            continue
        lastmod = url.find("lastmod")
        entries.append(SitemapEntry(
            url=loc.get_text(strip=True),
            lastmod=lastmod.get_text(strip=True) if lastmod else None,
        ))
    return entries, children


class SitemapFetcher:
    def __init__(self, http: Optional[httpx.AsyncClient] = None, max_urls: int = 5000, max_depth: int = 3):
        self._http = http
        self.max_urls = max_urls
        self.max_depth = max_depth

    async def fetch(self, site_url: str) -> tuple[list[SitemapEntry], list[str]]:
        """All unique entries reachable from the site's /sitemap.xml, plus fetch errors."""
        errors: list[str] = []
        seen: dict[str, SitemapEntry] = {}
        timeout = get_settings().provider_timeout_seconds
        if self._http is not None:
            await self._walk(self._http, f"{sitemap_base_url(site_url)}/sitemap.xml", 0, seen, errors)
        else:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as http:
                await self._walk(http, f"{sitemap_base_url(site_url)}/sitemap.xml", 0, seen, errors)
        return list(seen.values()), errors

    async def _walk(
        self,
        http: httpx.AsyncClient,
        location: str,
        depth: int,
        seen: dict[str, SitemapEntry],
        errors: list[str],
    ) -> None:
        if depth > self.max_depth or len(seen) >= self.max_urls:
            return
        try:
            response = await http.get(location, headers={"Accept": "application/xml,text/xml,*/*"})
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch sitemap {location}: {e}")
            errors.append(f"{location}: {e.__class__.__name__}")
            return

        entries, children = parse_sitemap_xml(response.text)
        for entry in entries:
            if len(seen) >= self.max_urls:
                break
            # The same URL can appear in several child sitemaps; first one wins
            seen.setdefault(entry.url, entry)
        for child in children:
            await self._walk(http, child, depth + 1, seen, errors)


class SitemapSync:
    def __init__(
        self,
        scheduler: Optional[IndexationScheduler] = None,
        fetcher: Optional[SitemapFetcher] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self._session_factory = session_factory or async_session
        self.scheduler = scheduler or IndexationScheduler(session_factory=self._session_factory)
        self.fetcher = fetcher or SitemapFetcher()

    async def sync_site(self, site_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> SitemapSyncResult:
        site = await self.scheduler.get_site(site_id, tenant_id)
        result = SitemapSyncResult(site_url=site.site_url)

        entries, errors = await self.fetcher.fetch(site.site_url)
        result.errors.extend(errors)
        result.total = len(entries)

        # A partial walk cannot tell removed URLs from unreachable ones
        new_urls, updated_urls = await self._store_entries(site, entries, result, retire_missing=not errors)

        async with self._session_factory() as db:
            settings = await db.scalar(select(IndexationSettings).where(IndexationSettings.site_id == site.id))
            if settings is None:
                settings = IndexationSettings(site_id=site.id, tenant_id=site.tenant_id)
                db.add(settings)
            settings.last_sitemap_check_at = utcnow()
            auto_new, auto_updated = bool(settings.auto_index_new), bool(settings.auto_index_updated)
            await db.commit()

        to_submit = (new_urls if auto_new else []) + (updated_urls if auto_updated else [])
        if to_submit:
            try:
                submitted = await self.scheduler.submit(site.id, to_submit)
                result.submitted = submitted.submitted
                result.queued = submitted.queued
            except AuthError as exc:
                logger.warning(f"Auto-index skipped for {site.site_url}: {exc.code}")
                result.errors.append(exc.code)

        logger.info(
            f"Sitemap sync for {site.site_url}: total={result.total} new={result.new} "
            f"updated={result.updated} removed={result.removed} submitted={result.submitted}"
        )
        return result

    async def _store_entries(
        self,
        site: GscSite,
        entries: list[SitemapEntry],
        result: SitemapSyncResult,
        retire_missing: bool = True,
    ) -> tuple[list[str], list[str]]:
        now = utcnow()
        async with self._session_factory() as db:
            try:
                rows = await db.execute(
                    select(IndexationUrl.url, IndexationUrl.lastmod, IndexationUrl.source)
                    .where(IndexationUrl.site_id == site.id)
                )
                existing = {url: (lastmod, source) for url, lastmod, source in rows.all()}

                new_urls = [e.url for e in entries if e.url not in existing]
                updated_urls = [
                    e.url for e in entries
                    if e.url in existing and e.lastmod and existing[e.url][0] and e.lastmod != existing[e.url][0]
                ]

                for i in range(0, len(entries), BATCH_SIZE):
                    batch = entries[i:i + BATCH_SIZE]
                    stmt = dialect_insert(db, IndexationUrl).values([
                        {
                            "id": uuid.uuid4(),
                            "site_id": site.id,
                            "tenant_id": site.tenant_id,
                            "url": e.url,
                            "source": UrlSource.SITEMAP.value,
                            "lastmod": e.lastmod,
                            "verdict": Verdict.UNKNOWN.value,
                            "is_active": True,
                            "first_seen_at": now,
                            "last_seen_at": now,
                        }
                        for e in batch
                    ])
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["site_id", "url"],
                        set_={
                            "lastmod": stmt.excluded.lastmod,
                            "source": UrlSource.SITEMAP.value,
                            "is_active": True,
                            "last_seen_at": now,
                        },
                    )
                    await db.execute(stmt)

                # Manually tracked URLs are not the sitemap's to retire
                current = {e.url for e in entries}
                disappeared = [
                    url for url, (_, source) in existing.items()
                    if source == UrlSource.SITEMAP.value and url not in current
                ] if retire_missing else []
                for i in range(0, len(disappeared), BATCH_SIZE):
                    await db.execute(
                        update(IndexationUrl)
                        .where(IndexationUrl.site_id == site.id, IndexationUrl.url.in_(disappeared[i:i + BATCH_SIZE]))
                        .values(is_active=False)
                    )
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError(f"Sitemap upsert failed: {exc.__class__.__name__}") from exc

        result.new = len(new_urls)
        result.updated = len(updated_urls)
        result.removed = len(disappeared)
        return new_urls, updated_urls


async def active_site_ids(db: AsyncSession) -> list[uuid.UUID]:
    result = await db.execute(
        select(GscSite.id).where(GscSite.is_active.is_(True)).order_by(GscSite.created_at)
    )
    return list(result.scalars().all())
