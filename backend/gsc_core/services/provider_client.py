"""
Search Console Client — Google OAuth, Search Console and Indexing API calls.

Every call carries a bounded timeout and maps failures to ProviderError:
HTTP 429/5xx and transport errors are retryable, everything else is not.
"""

import logging
from datetime import date
from typing import Any, Optional, Type, TypeVar
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, ValidationError

from gsc_core.config import get_settings
from gsc_core.errors import ProviderError
from gsc_core.models import Verdict
from gsc_core.services.provider_models import (
    AnalyticsResponse,
    AnalyticsRow,
    InspectionResult,
    InspectResponse,
    PublishResponse,
    SiteEntry,
    SitesResponse,
    TokenResponse,
    UserInfo,
)

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
SITES_URL = "https://www.googleapis.com/webmasters/v3/sites"
ANALYTICS_URL = "https://searchconsole.googleapis.com/webmasters/v3/sites/{site}/searchAnalytics/query"
INSPECT_URL = "https://searchconsole.googleapis.com/v1/urlInspection/index:inspect"
PUBLISH_URL = "https://indexing.googleapis.com/v3/urlNotifications:publish"

SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/webmasters.readonly",
    "https://www.googleapis.com/auth/indexing",
]

M = TypeVar("M", bound=BaseModel)


def map_inspection_to_verdict(result: InspectionResult) -> Verdict:
    """Collapse the inspection payload into our four verdicts."""
    idx = result.indexStatusResult
    if idx is None:
        return Verdict.UNKNOWN
    verdict = (idx.verdict or "").upper()
    if verdict == "PASS":
        return Verdict.INDEXED
    if verdict == "NEUTRAL":
        return Verdict.NOT_INDEXED
    if verdict == "FAIL":
        return Verdict.ERROR
    return Verdict.UNKNOWN


def _error_details(response: httpx.Response) -> tuple[str, Optional[str]]:
    """Pull (message, reason) out of a Google or OAuth error body."""
    try:
        body = response.json()
    except ValueError:
        return (response.text[:200] or f"HTTP {response.status_code}", None)
    if not isinstance(body, dict):
        return (f"HTTP {response.status_code}", None)
    err = body.get("error")
    if isinstance(err, dict):
        # Google API error envelope: {"error": {"code", "message", "status"}}
        return (err.get("message") or f"HTTP {response.status_code}", err.get("status"))
    if isinstance(err, str):
        # OAuth error: {"error": "invalid_grant", "error_description": "..."}
        return (body.get("error_description") or err, err)
    return (f"HTTP {response.status_code}", None)


class SearchConsoleClient:
    """
    Thin async wrapper around the Google endpoints the integration uses.
    Pass an ``httpx.AsyncClient`` to share a connection pool (or to inject a
    mock transport); otherwise a client is opened per call.
    """

    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self._http = http
        self.client_id = client_id if client_id is not None else settings.google_client_id
        self.client_secret = client_secret if client_secret is not None else settings.google_client_secret
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds

    # ── Transport ────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        headers = dict(kwargs.pop("headers", None) or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            if self._http is not None:
                response = await self._http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            logger.warning(f"Provider transport error on {method} {url}: {exc.__class__.__name__}")
            raise ProviderError.from_transport(exc) from exc

        if response.status_code >= 400:
            message, reason = _error_details(response)
            logger.warning(f"Provider {method} {url} failed: {response.status_code} ({reason or message})")
            raise ProviderError.from_status(response.status_code, message, reason)

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError("Provider returned a non-JSON body", status_code=response.status_code) from exc

    @staticmethod
    def _parse(model: Type[M], data: Any) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise ProviderError(f"Malformed {model.__name__} payload: {exc.error_count()} error(s)") from exc

    # ── OAuth ────────────────────────────────────────────────────────

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            # Force the consent screen so Google always returns a refresh token
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        data = await self._request(
            "POST",
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
            },
        )
        return self._parse(TokenResponse, data)

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        data = await self._request(
            "POST",
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        return self._parse(TokenResponse, data)

    async def fetch_email(self, access_token: str) -> Optional[str]:
        """Best-effort: the account email is informational only."""
        try:
            data = await self._request("GET", USERINFO_URL, access_token=access_token)
        except ProviderError as exc:
            logger.info(f"Userinfo lookup failed: {exc.message}")
            return None
        return self._parse(UserInfo, data).email

    # ── Search Console ───────────────────────────────────────────────

    async def list_sites(self, access_token: str) -> list[SiteEntry]:
        """Verified properties only."""
        data = await self._request("GET", SITES_URL, access_token=access_token)
        sites = self._parse(SitesResponse, data).siteEntry
        return [s for s in sites if s.is_verified]

    async def inspect_url(self, access_token: str, inspection_url: str, site_url: str) -> InspectionResult:
        data = await self._request(
            "POST",
            INSPECT_URL,
            access_token=access_token,
            json={"inspectionUrl": inspection_url, "siteUrl": site_url},
        )
        return self._parse(InspectResponse, data).inspectionResult

    async def publish_url(self, access_token: str, url: str, action: str = "URL_UPDATED") -> PublishResponse:
        data = await self._request(
            "POST",
            PUBLISH_URL,
            access_token=access_token,
            json={"url": url, "type": action},
        )
        return self._parse(PublishResponse, data)

    async def search_analytics(
        self,
        access_token: str,
        site_url: str,
        start_date: date,
        end_date: date,
        dimensions: Optional[list[str]] = None,
        row_limit: int = 5000,
    ) -> list[AnalyticsRow]:
        data = await self._request(
            "POST",
            ANALYTICS_URL.format(site=quote(site_url, safe="")),
            access_token=access_token,
            json={
                "startDate": start_date.isoformat(),
                "endDate": end_date.isoformat(),
                "dimensions": dimensions or ["query", "page"],
                "rowLimit": row_limit,
                "dataState": "all",
            },
        )
        return self._parse(AnalyticsResponse, data).rows
