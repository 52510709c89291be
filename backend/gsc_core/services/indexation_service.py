"""
Indexation Service — URL inspection and Indexing API submission.

submit() reserves one quota slot per URL before calling the Indexing API.
URLs that find the day's quota spent are queued and picked up by
drain_queue() once the quota resets. A reserved slot is consumed as soon as
the call is attempted, whether it succeeds or not.

Per-URL provider errors are collected in the result; only credential errors
abort a whole operation.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import date, timedelta
from typing import Callable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gsc_core.config import get_settings
from gsc_core.database import async_session, dialect_insert
from gsc_core.errors import PersistenceError, ProviderError
from gsc_core.models import (
    GscSite,
    IndexationUrl,
    QueueItem,
    QueueStatus,
    QuotaKind,
    SubmitAction,
    UrlSource,
    Verdict,
)
from gsc_core.services.provider_client import SearchConsoleClient, map_inspection_to_verdict
from gsc_core.services.quota_service import QuotaLedger
from gsc_core.services.token_service import CredentialVault, get_credential_vault, load_site
from gsc_core.utils import utc_today, utcnow

logger = logging.getLogger(__name__)

# Inspection results older than this are due for a re-check
STALE_AFTER = timedelta(days=7)

OUTCOME_SUBMITTED = "submitted"
OUTCOME_QUEUED = "queued"
OUTCOME_FAILED = "failed"


@dataclass
class UrlVerdict:
    url: str
    verdict: str
    success: bool
    coverage_state: Optional[str] = None
    error: Optional[str] = None


@dataclass
class InspectResult:
    inspected: int = 0
    failed: int = 0
    quota_remaining: int = 0
    verdicts: list[UrlVerdict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "inspected": self.inspected,
            "failed": self.failed,
            "quota_remaining": self.quota_remaining,
            "verdicts": [asdict(v) for v in self.verdicts],
        }


@dataclass
class SubmitResult:
    submitted: int = 0
    queued: int = 0
    failed: int = 0
    quota_remaining: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {
            "submitted": self.submitted,
            "queued": self.queued,
            "failed": self.failed,
            "quota_remaining": self.quota_remaining,
        }
        if self.errors:
            data["errors"] = self.errors
        return data


@dataclass
class DrainResult:
    submitted: int = 0
    failed: int = 0
    retrying: int = 0
    still_pending: int = 0
    quota_remaining: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _dedupe(urls: list[str]) -> list[str]:
    seen = set()
    ordered = []
    for url in urls:
        url = url.strip()
        if url and url not in seen:
            seen.add(url)
            ordered.append(url)
    return ordered


class IndexationScheduler:
    def __init__(
        self,
        vault: Optional[CredentialVault] = None,
        client: Optional[SearchConsoleClient] = None,
        ledger: Optional[QuotaLedger] = None,
        inspect_ledger: Optional[QuotaLedger] = None,
        session_factory: Optional[async_sessionmaker] = None,
        max_attempts: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory or async_session
        self.vault = vault or get_credential_vault()
        self.client = client or SearchConsoleClient()
        self.ledger = ledger or QuotaLedger(self._session_factory)
        self.inspect_ledger = inspect_ledger or QuotaLedger(self._session_factory, kind=QuotaKind.INSPECT)
        self.max_attempts = max_attempts or settings.queue_max_attempts
        self.concurrency = max(1, concurrency or settings.submit_concurrency)

    # ── Helpers ──────────────────────────────────────────────────────

    async def get_site(self, site_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> GscSite:
        async with self._session_factory() as db:
            return await load_site(db, site_id, tenant_id)

    async def _update_queue_item(
        self,
        site: GscSite,
        url: str,
        mutate: Callable[[QueueItem, bool], None],
    ) -> None:
        """Load-or-create the queue row for (site, url), apply ``mutate``, commit."""
        for attempt in range(2):
            async with self._session_factory() as db:
                try:
                    result = await db.execute(
                        select(QueueItem).where(QueueItem.site_id == site.id, QueueItem.url == url)
                    )
                    item = result.scalar_one_or_none()
                    created = item is None
                    if created:
                        item = QueueItem(
                            site_id=site.id,
                            tenant_id=site.tenant_id,
                            url=url,
                            action=SubmitAction.URL_UPDATED.value,
                            status=QueueStatus.PENDING.value,
                            attempts=0,
                            enqueued_at=utcnow(),
                        )
                        db.add(item)
                    mutate(item, created)
                    item.updated_at = utcnow()
                    await db.commit()
                    return
                except IntegrityError:
                    # Another worker created the row first; retry as an update
                    await db.rollback()
                    if attempt:
                        raise
                except SQLAlchemyError as exc:
                    await db.rollback()
                    raise PersistenceError(f"Queue update failed: {exc.__class__.__name__}") from exc

    def _record_attempt(self, error: Optional[ProviderError]) -> Callable[[QueueItem, bool], None]:
        max_attempts = self.max_attempts

        def mutate(item: QueueItem, created: bool) -> None:
            if error is None:
                # The ceiling counts consecutive failures only
                item.attempts = 0
                item.status = QueueStatus.SUBMITTED.value
                item.submitted_at = utcnow()
                item.last_error = None
                return
            item.attempts = (item.attempts or 0) + 1
            item.last_error = error.message[:1000]
            if error.retryable and item.attempts < max_attempts:
                item.status = QueueStatus.PENDING.value
            else:
                item.status = QueueStatus.FAILED.value

        return mutate

    @staticmethod
    def _mark_queued(item: QueueItem, created: bool) -> None:
        if created or item.status == QueueStatus.PENDING.value:
            return  # keep its place in line
        item.status = QueueStatus.PENDING.value
        item.enqueued_at = utcnow()

    # ── Inspect ──────────────────────────────────────────────────────

    async def inspect(
        self,
        site_id: uuid.UUID,
        urls: Optional[list[str]] = None,
        *,
        tenant_id: Optional[uuid.UUID] = None,
        limit: int = 50,
        day: Optional[date] = None,
    ) -> InspectResult:
        """
        Inspect the given URLs, or the stalest tracked ones. Bounded by the
        tenant's daily inspection quota; one slot is taken per inspection call.
        """
        site = await self.get_site(site_id, tenant_id)
        day = day or utc_today()
        access_token = await self.vault.get_valid_access_token(site.tenant_id)
        remaining = await self.inspect_ledger.remaining(site.tenant_id, day)
        limit = max(1, limit)

        if urls:
            urls = _dedupe(urls)
            await self._track_urls(site, urls[:limit], UrlSource.MANUAL)
            targets = urls[:min(limit, remaining)]
        else:
            targets = await self._stale_urls(site, min(limit, remaining)) if remaining else []

        result = InspectResult(quota_remaining=remaining)
        if not targets:
            if not remaining:
                logger.info(f"Daily inspection quota spent for tenant {site.tenant_id}")
            return result

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _inspect_one(url: str) -> UrlVerdict:
            async with semaphore:
                if not await self.inspect_ledger.try_reserve(site.tenant_id, day):
                    return UrlVerdict(url=url, verdict=Verdict.UNKNOWN.value, success=False, error="quota_exceeded")
                try:
                    inspection = await self.client.inspect_url(access_token, url, site.site_url)
                except ProviderError as exc:
                    await self._save_inspection(site, url, error=exc.message)
                    return UrlVerdict(url=url, verdict=Verdict.UNKNOWN.value, success=False, error=exc.message)
                verdict = map_inspection_to_verdict(inspection)
                idx = inspection.indexStatusResult
                coverage = idx.coverageState if idx else None
                await self._save_inspection(
                    site, url,
                    verdict=verdict,
                    coverage_state=coverage,
                    last_crawl_time=idx.lastCrawlTime if idx else None,
                )
                return UrlVerdict(url=url, verdict=verdict.value, success=True, coverage_state=coverage)

        for verdict in await asyncio.gather(*(_inspect_one(u) for u in targets)):
            result.verdicts.append(verdict)
            if verdict.success:
                result.inspected += 1
            else:
                result.failed += 1
        result.quota_remaining = await self.inspect_ledger.remaining(site.tenant_id, day)
        logger.info(f"Inspected {result.inspected}/{len(targets)} URL(s) for {site.site_url}")
        return result

    async def _track_urls(self, site: GscSite, urls: list[str], source: UrlSource) -> None:
        if not urls:
            return
        now = utcnow()
        async with self._session_factory() as db:
            stmt = dialect_insert(db, IndexationUrl).values([
                {
                    "id": uuid.uuid4(),
                    "site_id": site.id,
                    "tenant_id": site.tenant_id,
                    "url": url,
                    "source": source.value,
                    "verdict": Verdict.UNKNOWN.value,
                    "is_active": True,
                    "first_seen_at": now,
                    "last_seen_at": now,
                }
                for url in urls
            ]).on_conflict_do_nothing(index_elements=["site_id", "url"])
            try:
                await db.execute(stmt)
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError(f"Could not track URLs: {exc.__class__.__name__}") from exc

    async def _stale_urls(self, site: GscSite, limit: int) -> list[str]:
        """Never inspected or unknown first, then the oldest inspections."""
        cutoff = utcnow() - STALE_AFTER
        async with self._session_factory() as db:
            result = await db.execute(
                select(IndexationUrl.url)
                .where(
                    IndexationUrl.site_id == site.id,
                    IndexationUrl.is_active.is_(True),
                    or_(
                        IndexationUrl.verdict == Verdict.UNKNOWN.value,
                        IndexationUrl.last_inspected_at.is_(None),
                        IndexationUrl.last_inspected_at < cutoff,
                    ),
                )
                .order_by(
                    IndexationUrl.last_inspected_at.is_(None).desc(),
                    IndexationUrl.last_inspected_at.asc(),
                    IndexationUrl.url,
                )
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _save_inspection(
        self,
        site: GscSite,
        url: str,
        verdict: Optional[Verdict] = None,
        coverage_state: Optional[str] = None,
        last_crawl_time: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(IndexationUrl).where(IndexationUrl.site_id == site.id, IndexationUrl.url == url)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return
            if error is not None:
                row.last_error = error[:1000]
            else:
                row.verdict = verdict.value
                row.coverage_state = coverage_state
                row.last_crawl_time = last_crawl_time
                row.last_error = None
                row.last_inspected_at = utcnow()
            await db.commit()

    # ── Submit ───────────────────────────────────────────────────────

    async def submit(
        self,
        site_id: uuid.UUID,
        urls: list[str],
        *,
        tenant_id: Optional[uuid.UUID] = None,
        day: Optional[date] = None,
    ) -> SubmitResult:
        site = await self.get_site(site_id, tenant_id)
        day = day or utc_today()
        targets = _dedupe(urls)
        result = SubmitResult()
        if not targets:
            result.quota_remaining = await self.ledger.remaining(site.tenant_id, day)
            return result

        access_token = await self.vault.get_valid_access_token(site.tenant_id)
        await self._track_urls(site, targets, UrlSource.MANUAL)
        exhausted = await self._exhausted_urls(site, targets)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _submit_one(url: str) -> tuple[str, Optional[ProviderError]]:
            if url in exhausted:
                return OUTCOME_FAILED, None
            async with semaphore:
                if not await self.ledger.try_reserve(site.tenant_id, day):
                    await self._update_queue_item(site, url, self._mark_queued)
                    return OUTCOME_QUEUED, None
                try:
                    await self.client.publish_url(access_token, url, SubmitAction.URL_UPDATED.value)
                except ProviderError as exc:
                    await self._update_queue_item(site, url, self._record_attempt(exc))
                    return OUTCOME_FAILED, exc
                await self._update_queue_item(site, url, self._record_attempt(None))
                return OUTCOME_SUBMITTED, None

        outcomes = await asyncio.gather(*(_submit_one(u) for u in targets))
        for url, (outcome, error) in zip(targets, outcomes):
            if outcome == OUTCOME_SUBMITTED:
                result.submitted += 1
            elif outcome == OUTCOME_QUEUED:
                result.queued += 1
            else:
                result.failed += 1
                result.errors.append({
                    "url": url,
                    "error": error.message if error else "max_attempts_exceeded",
                    "retryable": bool(error and error.retryable),
                })

        result.quota_remaining = await self.ledger.remaining(site.tenant_id, day)
        logger.info(
            f"Submit for {site.site_url}: submitted={result.submitted} queued={result.queued} "
            f"failed={result.failed} quota_remaining={result.quota_remaining}"
        )
        return result

    async def _exhausted_urls(self, site: GscSite, urls: list[str]) -> set[str]:
        """URLs that already failed permanently at the attempt ceiling."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(QueueItem.url).where(
                    QueueItem.site_id == site.id,
                    QueueItem.url.in_(urls),
                    QueueItem.status == QueueStatus.FAILED.value,
                    QueueItem.attempts >= self.max_attempts,
                )
            )
            return set(result.scalars().all())

    # ── Drain ────────────────────────────────────────────────────────

    async def drain_queue(self, tenant_id: uuid.UUID, day: Optional[date] = None) -> DrainResult:
        """
        Re-attempt pending queue items oldest-first, at most as many as the
        day's remaining quota allows.
        """
        day = day or utc_today()
        result = DrainResult()
        remaining = await self.ledger.remaining(tenant_id, day)
        if remaining > 0:
            items = await self._pending_items(tenant_id, remaining)
            if items:
                access_token = await self.vault.get_valid_access_token(tenant_id)
                for item_id, site, url, attempts in items:
                    if attempts >= self.max_attempts:
                        await self._update_queue_item(site, url, self._give_up)
                        result.failed += 1
                        continue
                    if not await self.ledger.try_reserve(tenant_id, day):
                        break
                    try:
                        await self.client.publish_url(access_token, url, SubmitAction.URL_UPDATED.value)
                    except ProviderError as exc:
                        await self._update_queue_item(site, url, self._record_attempt(exc))
                        if exc.retryable and attempts + 1 < self.max_attempts:
                            result.retrying += 1
                        else:
                            result.failed += 1
                        continue
                    await self._update_queue_item(site, url, self._record_attempt(None))
                    result.submitted += 1

        result.still_pending = await self._pending_count(tenant_id)
        result.quota_remaining = await self.ledger.remaining(tenant_id, day)
        logger.info(f"Drained queue for tenant {tenant_id}: {result.to_dict()}")
        return result

    @staticmethod
    def _give_up(item: QueueItem, created: bool) -> None:
        item.status = QueueStatus.FAILED.value

    async def _pending_items(self, tenant_id: uuid.UUID, limit: int) -> list[tuple[uuid.UUID, GscSite, str, int]]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(QueueItem.id, GscSite, QueueItem.url, QueueItem.attempts)
                .join(GscSite, GscSite.id == QueueItem.site_id)
                .where(
                    QueueItem.tenant_id == tenant_id,
                    QueueItem.status == QueueStatus.PENDING.value,
                    GscSite.is_active.is_(True),
                )
                .order_by(QueueItem.enqueued_at, QueueItem.id)
                .limit(limit)
            )
            return [tuple(row) for row in result.all()]

    async def _pending_count(self, tenant_id: uuid.UUID) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(QueueItem).where(
                    QueueItem.tenant_id == tenant_id,
                    QueueItem.status == QueueStatus.PENDING.value,
                )
            )
            return result.scalar() or 0


async def tenants_with_pending_items(db: AsyncSession) -> list[uuid.UUID]:
    result = await db.execute(
        select(QueueItem.tenant_id)
        .where(QueueItem.status == QueueStatus.PENDING.value)
        .group_by(QueueItem.tenant_id)
        .order_by(func.min(QueueItem.enqueued_at))
    )
    return list(result.scalars().all())


# ── Read models for the dashboard ─────────────────────────────────────

async def list_urls(
    db: AsyncSession,
    site_id: uuid.UUID,
    verdict: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    filters = [IndexationUrl.site_id == site_id, IndexationUrl.is_active.is_(True)]
    if verdict:
        filters.append(IndexationUrl.verdict == verdict)
    if search:
        filters.append(IndexationUrl.url.ilike(f"%{search}%"))

    total = (await db.execute(select(func.count()).select_from(IndexationUrl).where(*filters))).scalar() or 0
    result = await db.execute(
        select(IndexationUrl).where(*filters).order_by(IndexationUrl.url).limit(limit).offset(offset)
    )
    return {
        "total": total,
        "urls": [
            {
                "id": str(u.id),
                "url": u.url,
                "source": u.source,
                "verdict": u.verdict,
                "coverage_state": u.coverage_state,
                "last_crawl_time": u.last_crawl_time,
                "last_inspected_at": u.last_inspected_at.isoformat() if u.last_inspected_at else None,
                "lastmod": u.lastmod,
                "last_error": u.last_error,
            }
            for u in result.scalars().all()
        ],
    }


async def verdict_overview(db: AsyncSession, site_id: uuid.UUID) -> dict:
    result = await db.execute(
        select(IndexationUrl.verdict, func.count())
        .where(IndexationUrl.site_id == site_id, IndexationUrl.is_active.is_(True))
        .group_by(IndexationUrl.verdict)
    )
    counts = {v.value: 0 for v in Verdict}
    for verdict, count in result.all():
        counts[verdict] = count
    counts["total"] = sum(counts[v.value] for v in Verdict)
    return counts


async def queue_stats(db: AsyncSession, site: GscSite, ledger: QuotaLedger) -> dict:
    result = await db.execute(
        select(QueueItem.status, func.count())
        .where(QueueItem.site_id == site.id)
        .group_by(QueueItem.status)
    )
    stats = {s.value: 0 for s in QueueStatus}
    for status, count in result.all():
        stats[status] = count
    stats["total"] = sum(stats[s.value] for s in QueueStatus)
    stats["daily_quota_used"] = await ledger.used(site.tenant_id)
    stats["daily_quota_limit"] = ledger.daily_limit
    return stats
