"""
Cron / Scheduled Jobs — Endpoints for Upstash QStash or external cron.

These endpoints verify CRON_SECRET and run the background work of the
integration: draining the submission queue once the daily quota resets,
syncing sitemaps, and purging expired OAuth states.

Set CRON_SECRET in the environment. Callers send either
  X-Cron-Secret: <CRON_SECRET>
  or Authorization: Bearer <CRON_SECRET>
Schedule /gsc/drain shortly after 00:00 UTC.
"""

import logging
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from gsc_core.config import get_settings
from gsc_core.database import get_db
from gsc_core.errors import GscError
from gsc_core.services.connection_service import ConnectionManager
from gsc_core.services.indexation_service import IndexationScheduler, tenants_with_pending_items
from gsc_core.services.sitemap_service import SitemapSync, active_site_ids
from gsc_core.routers.indexation import get_scheduler, get_sitemap_sync
from gsc_core.routers.gsc_oauth import get_connection_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify request came from QStash or cron with valid secret."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != secret:
        raise HTTPException(401, "Invalid cron secret")


@router.post("/gsc/drain")
async def cron_drain_queue(
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
    scheduler: IndexationScheduler = Depends(get_scheduler),
):
    """
    Drain every tenant's pending submissions. Call from QStash:
    POST https://your-app/api/cron/gsc/drain
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    tenants = await tenants_with_pending_items(db)
    results = {}
    for tenant_id in tenants:
        try:
            results[str(tenant_id)] = (await scheduler.drain_queue(tenant_id)).to_dict()
        except GscError as e:
            # One tenant's revoked credentials must not stop the others
            logger.warning(f"Cron drain skipped tenant {tenant_id}: {e.code}")
            results[str(tenant_id)] = {"error": e.code}
    logger.info(f"Cron drain completed for {len(tenants)} tenant(s)")
    return {"status": "ok", "tenants": results}


@router.post("/gsc/sitemaps")
async def cron_sync_sitemaps(
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
    sync: SitemapSync = Depends(get_sitemap_sync),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    purged = await manager.purge_expired_states(db)
    results = {}
    for site_id in await active_site_ids(db):
        try:
            result = await sync.sync_site(site_id)
            results[result.site_url] = result.to_dict()
        except GscError as e:
            logger.warning(f"Cron sitemap sync failed for site {site_id}: {e.code}")
            results[str(site_id)] = {"error": e.code}
    logger.info(f"Cron sitemap sync completed for {len(results)} site(s)")
    return {"status": "ok", "purged_states": purged, "sites": results}
