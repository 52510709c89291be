"""
Typed views of the Google APIs' JSON payloads.

One model per endpoint. Unknown fields are ignored; fields the integration
relies on are required so a malformed payload fails validation before use.
"""

import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ── OAuth ─────────────────────────────────────────────────────────────

class TokenResponse(_ProviderModel):
    access_token: str = Field(min_length=1)
    expires_in: int = 3600
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None


class UserInfo(_ProviderModel):
    email: Optional[str] = None


# ── Sites ─────────────────────────────────────────────────────────────

class SiteEntry(_ProviderModel):
    siteUrl: str
    permissionLevel: Optional[str] = None

    @property
    def is_verified(self) -> bool:
        return self.permissionLevel != "siteUnverifiedUser"


class SitesResponse(_ProviderModel):
    siteEntry: list[SiteEntry] = []


# ── URL Inspection ────────────────────────────────────────────────────

class IndexStatusResult(_ProviderModel):
    verdict: Optional[str] = None
    coverageState: Optional[str] = None
    robotsTxtState: Optional[str] = None
    indexingState: Optional[str] = None
    lastCrawlTime: Optional[str] = None
    pageFetchState: Optional[str] = None
    googleCanonical: Optional[str] = None


class InspectionResult(_ProviderModel):
    inspectionResultLink: Optional[str] = None
    indexStatusResult: Optional[IndexStatusResult] = None


class InspectResponse(_ProviderModel):
    inspectionResult: InspectionResult


# ── Indexing API ──────────────────────────────────────────────────────

class UrlNotificationMetadata(_ProviderModel):
    url: Optional[str] = None
    latestUpdate: Optional[dict] = None


class PublishResponse(_ProviderModel):
    urlNotificationMetadata: UrlNotificationMetadata


# ── Search Analytics ──────────────────────────────────────────────────

class AnalyticsRow(_ProviderModel):
    keys: list[str]
    clicks: float = 0
    impressions: float = 0
    ctr: float = 0
    position: float = 0


class AnalyticsResponse(_ProviderModel):
    rows: list[AnalyticsRow] = []


# ── Store directory ───────────────────────────────────────────────────

class StoreDirectoryEntry(_ProviderModel):
    id: uuid.UUID
    url: str = Field(min_length=1)


class StoreDirectoryResponse(_ProviderModel):
    # Items are validated one by one so a bad entry is skipped, not fatal
    stores: list[Any] = []
