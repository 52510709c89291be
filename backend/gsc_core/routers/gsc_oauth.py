"""
Search Console Connection Router — OAuth connect flow, status, disconnect.

The callback is a browser navigation from Google, so it never returns JSON:
every outcome is a redirect to the dashboard with gsc_status / gsc_error /
gsc_warning query parameters.
"""

import logging
import uuid
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from gsc_core.auth import optional_tenant, require_tenant
from gsc_core.config import get_settings
from gsc_core.database import get_db
from gsc_core.errors import ConfigurationError, PersistenceError, ProviderError, StateError
from gsc_core.services.connection_service import ConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter()

DASHBOARD_PATH = "/app/overview"


def get_connection_manager() -> ConnectionManager:
    return ConnectionManager()


def _dashboard_redirect(status: str, error: Optional[str] = None, warning: Optional[str] = None) -> RedirectResponse:
    params = {"gsc_status": status}
    if error:
        params["gsc_error"] = error
    if warning:
        params["gsc_warning"] = warning
    base = get_settings().app_base_url.rstrip("/")
    return RedirectResponse(f"{base}{DASHBOARD_PATH}?{urlencode(params)}", status_code=307)


# ── OAuth ────────────────────────────────────────────────────────────
@router.get("/oauth/authorize")
async def authorize(
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Issue a single-use state and return the Google consent URL."""
    try:
        url = await manager.begin_authorization(db, tenant_id)
    except ConfigurationError as e:
        logger.error(f"OAuth authorize failed: {e.message}")
        raise HTTPException(status_code=500, detail="Search Console OAuth is not configured")
    return {"url": url}


@router.get("/oauth/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    tenant_id: Optional[uuid.UUID] = Depends(optional_tenant),
    db: AsyncSession = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    if error:
        # e.g. access_denied when the user cancels the consent screen
        return _dashboard_redirect("error", error=error)
    if tenant_id is None:
        return _dashboard_redirect("error", error="unauthorized")
    if not code or not state:
        return _dashboard_redirect("error", error="missing_params")

    try:
        result = await manager.handle_callback(db, code, state, tenant_id)
    except StateError as e:
        logger.warning(f"OAuth callback rejected for tenant {tenant_id}: {e.code}")
        return _dashboard_redirect("error", error=e.code)
    except ProviderError as e:
        logger.error(f"OAuth code exchange failed for tenant {tenant_id}: {e.message}")
        return _dashboard_redirect("error", error="token_exchange_failed")
    except PersistenceError as e:
        logger.error(f"Saving connection failed for tenant {tenant_id}: {e.message}")
        return _dashboard_redirect("error", error="save_failed")
    except Exception as e:
        logger.error(f"OAuth callback failed for tenant {tenant_id}: {e}", exc_info=True)
        return _dashboard_redirect("error", error="callback_failed")

    return _dashboard_redirect("connected", warning=result.warning)


# ── Connection ───────────────────────────────────────────────────────
@router.get("/connection")
async def connection_status(
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    return await manager.get_status(db, tenant_id)


@router.delete("/connection")
async def disconnect(
    hard: bool = False,
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Soft disconnect keeps history; ?hard=true deletes sites, URLs and queue."""
    return {"status": await manager.disconnect(db, tenant_id, hard=hard)}


@router.post("/sites/refresh")
async def refresh_sites(
    tenant_id: uuid.UUID = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    sites = await manager.refresh_sites(db, tenant_id)
    return {
        "sites": [
            {"id": str(s.id), "site_url": s.site_url, "permission_level": s.permission_level}
            for s in sites
        ]
    }
