"""
Indexation Router — inspect and submit URLs, browse tracked URLs and the queue.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gsc_core.auth import require_tenant
from gsc_core.database import get_db
from gsc_core.models import IndexationSettings, Verdict
from gsc_core.services.indexation_service import (
    IndexationScheduler,
    list_urls,
    queue_stats,
    verdict_overview,
)
from gsc_core.services.sitemap_service import SitemapSync
from gsc_core.utils import parse_uuid, utcnow

router = APIRouter()


def get_scheduler() -> IndexationScheduler:
    return IndexationScheduler()


def get_sitemap_sync() -> SitemapSync:
    return SitemapSync()


# ── Schemas ──────────────────────────────────────────────────────────
class _SiteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: uuid.UUID = Field(alias="siteId")


class InspectRequest(_SiteRequest):
    urls: Optional[list[str]] = None
    limit: int = Field(default=50, ge=1, le=2000)


class SubmitRequest(_SiteRequest):
    urls: list[str] = Field(min_length=1, max_length=1000)


class IndexationSettingsUpdate(BaseModel):
    auto_index_new: bool
    auto_index_updated: bool


# ── Endpoints ────────────────────────────────────────────────────────
@router.post("/inspect")
async def inspect_urls(
    payload: InspectRequest,
    tenant_id: uuid.UUID = Depends(require_tenant),
    scheduler: IndexationScheduler = Depends(get_scheduler),
):
    """Inspect the given URLs, or the stalest tracked ones when none are given."""
    result = await scheduler.inspect(payload.site_id, payload.urls, tenant_id=tenant_id, limit=payload.limit)
    return result.to_dict()


@router.post("/submit")
async def submit_urls(
    payload: SubmitRequest,
    tenant_id: uuid.UUID = Depends(require_tenant),
    scheduler: IndexationScheduler = Depends(get_scheduler),
):
    result = await scheduler.submit(payload.site_id, payload.urls, tenant_id=tenant_id)
    return result.to_dict()


@router.get("/urls")
async def get_urls(
    site_id: str = Query(alias="siteId"),
    verdict: Optional[Verdict] = None,
    search: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    scheduler: IndexationScheduler = Depends(get_scheduler),
):
    site = await scheduler.get_site(parse_uuid(site_id, "siteId"), tenant_id)
    return await list_urls(db, site.id, verdict.value if verdict else None, search, limit, offset)


@router.get("/overview")
async def get_overview(
    site_id: str = Query(alias="siteId"),
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    scheduler: IndexationScheduler = Depends(get_scheduler),
):
    site = await scheduler.get_site(parse_uuid(site_id, "siteId"), tenant_id)
    return await verdict_overview(db, site.id)


@router.get("/queue")
async def get_queue(
    site_id: str = Query(alias="siteId"),
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    scheduler: IndexationScheduler = Depends(get_scheduler),
):
    site = await scheduler.get_site(parse_uuid(site_id, "siteId"), tenant_id)
    return await queue_stats(db, site, scheduler.ledger)


@router.post("/sitemap")
async def sync_sitemap(
    payload: _SiteRequest,
    tenant_id: uuid.UUID = Depends(require_tenant),
    sync: SitemapSync = Depends(get_sitemap_sync),
):
    result = await sync.sync_site(payload.site_id, tenant_id)
    return result.to_dict()


# ── Settings ─────────────────────────────────────────────────────────
def _settings_to_response(row: Optional[IndexationSettings]) -> dict:
    return {
        "auto_index_new": bool(row and row.auto_index_new),
        "auto_index_updated": bool(row and row.auto_index_updated),
        "last_sitemap_check_at": row.last_sitemap_check_at.isoformat() if row and row.last_sitemap_check_at else None,
    }


@router.get("/settings/{site_id}")
async def get_indexation_settings(
    site_id: str,
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    scheduler: IndexationScheduler = Depends(get_scheduler),
):
    site = await scheduler.get_site(parse_uuid(site_id, "site_id"), tenant_id)
    row = await db.scalar(select(IndexationSettings).where(IndexationSettings.site_id == site.id))
    return _settings_to_response(row)


@router.put("/settings/{site_id}")
async def update_indexation_settings(
    site_id: str,
    payload: IndexationSettingsUpdate,
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    scheduler: IndexationScheduler = Depends(get_scheduler),
):
    site = await scheduler.get_site(parse_uuid(site_id, "site_id"), tenant_id)
    row = await db.scalar(select(IndexationSettings).where(IndexationSettings.site_id == site.id))
    if row is None:
        row = IndexationSettings(site_id=site.id, tenant_id=site.tenant_id)
        db.add(row)
    row.auto_index_new = payload.auto_index_new
    row.auto_index_updated = payload.auto_index_updated
    row.updated_at = utcnow()
    await db.flush()
    return _settings_to_response(row)
