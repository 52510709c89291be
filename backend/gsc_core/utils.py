"""
Shared utility functions.
"""

import logging
import uuid as uuid_mod
from datetime import datetime, date, timezone
from urllib.parse import urlparse
from fastapi import HTTPException

logger = logging.getLogger(__name__)


def parse_uuid(value: str, field_name: str = "id") -> uuid_mod.UUID:
    """
    Parse a string as UUID, raising a 400 HTTPException on invalid input
    instead of letting a bare ValueError bubble up as a 500.
    """
    try:
        return uuid_mod.UUID(str(value))
    except (ValueError, AttributeError):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid UUID for '{field_name}': {value!r}",
        )


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    """The UTC calendar day; quota counters are keyed by it."""
    return datetime.now(timezone.utc).date()


def as_naive_utc(dt: datetime) -> datetime:
    """Drop tzinfo after converting to UTC. DB may hand back either form."""
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def normalize_url(url: str) -> str:
    """Lowercase scheme/host and drop the trailing slash and query for matching."""
    parsed = urlparse(url.strip())
    if not parsed.scheme or not parsed.netloc:
        return url.strip().lower().rstrip("/")
    normalized = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}{parsed.path}"
    return normalized.rstrip("/")


def extract_domain(site_url: str) -> str | None:
    """
    Bare domain of a Search Console property or store URL.
    Handles domain properties ("sc-domain:example.com") and strips "www.".
    """
    if not site_url:
        return None
    value = site_url.strip().lower()
    if value.startswith("sc-domain:"):
        host = value[len("sc-domain:"):]
    else:
        if "://" not in value:
            value = f"https://{value}"
        host = urlparse(value).hostname or ""
    host = host.strip(".")
    if host.startswith("www."):
        host = host[4:]
    return host or None
