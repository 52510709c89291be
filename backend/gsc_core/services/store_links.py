"""
Store linking — match Search Console properties to the tenant's stores by domain.

Store domains come from two tiers, tried in order:
  1. the remote store directory (STORE_DIRECTORY_URL), when configured;
  2. the local ``stores`` table.
The result records which tier answered, so callers never have to infer it
from an exception.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

import httpx
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gsc_core.config import get_settings
from gsc_core.database import dialect_insert
from gsc_core.models import GscSite, SiteStoreLink, Store
from gsc_core.services.provider_models import StoreDirectoryEntry, StoreDirectoryResponse
from gsc_core.utils import extract_domain

logger = logging.getLogger(__name__)

TIER_REMOTE = "remote"
TIER_LOCAL = "local"


@dataclass
class StoreDomainsResult:
    tier: str
    domains: dict[str, uuid.UUID] = field(default_factory=dict)  # domain -> store id
    error: Optional[str] = None  # why the remote tier was skipped


@dataclass
class LinkOutcome:
    tier: str
    linked: int = 0
    fallback_reason: Optional[str] = None


async def _remote_store_domains(tenant_id: uuid.UUID) -> dict[str, uuid.UUID]:
    settings = get_settings()
    async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
        response = await client.get(settings.store_directory_url, params={"tenant_id": str(tenant_id)})
        response.raise_for_status()
        # A payload that is not a store listing raises ValidationError (a ValueError)
        directory = StoreDirectoryResponse.model_validate(response.json())
    domains: dict[str, uuid.UUID] = {}
    for item in directory.stores:
        try:
            entry = StoreDirectoryEntry.model_validate(item)
        except ValidationError:
            logger.warning(f"Skipping malformed store directory entry for tenant {tenant_id}: {item!r:.100}")
            continue
        domain = extract_domain(entry.url)
        if domain:
            domains[domain] = entry.id
    return domains


async def _local_store_domains(db: AsyncSession, tenant_id: uuid.UUID) -> dict[str, uuid.UUID]:
    result = await db.execute(select(Store).where(Store.tenant_id == tenant_id))
    domains: dict[str, uuid.UUID] = {}
    for store in result.scalars().all():
        domain = extract_domain(store.url)
        if domain:
            domains.setdefault(domain, store.id)
    return domains


async def resolve_store_domains(db: AsyncSession, tenant_id: uuid.UUID) -> StoreDomainsResult:
    settings = get_settings()
    reason = "store directory not configured"
    if settings.store_directory_url:
        try:
            return StoreDomainsResult(tier=TIER_REMOTE, domains=await _remote_store_domains(tenant_id))
        except (httpx.HTTPError, ValueError) as exc:
            reason = f"store directory unavailable: {exc.__class__.__name__}"
            logger.warning(f"Falling back to local stores for tenant {tenant_id}: {reason}")
    return StoreDomainsResult(tier=TIER_LOCAL, domains=await _local_store_domains(db, tenant_id), error=reason)


async def link_sites_to_stores(db: AsyncSession, tenant_id: uuid.UUID, sites: list[GscSite]) -> LinkOutcome:
    """Create site↔store links for every domain match. Existing links are kept."""
    stores = await resolve_store_domains(db, tenant_id)
    outcome = LinkOutcome(tier=stores.tier, fallback_reason=stores.error if stores.tier == TIER_LOCAL else None)
    rows = []
    for site in sites:
        store_id = stores.domains.get(extract_domain(site.site_url) or "")
        if store_id:
            rows.append({"id": uuid.uuid4(), "site_id": site.id, "store_id": store_id})
    if rows:
        stmt = dialect_insert(db, SiteStoreLink).values(rows).on_conflict_do_nothing(
            index_elements=["site_id", "store_id"]
        )
        await db.execute(stmt)
        outcome.linked = len(rows)
    logger.info(f"Linked {outcome.linked} site(s) to stores for tenant {tenant_id} via {outcome.tier} tier")
    return outcome
