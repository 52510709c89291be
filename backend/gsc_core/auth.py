"""
Authentication — resolve the calling tenant from a JWT.

The dashboard sends: Authorization: Bearer <jwt>. Browser navigations (the
OAuth callback) carry the same token in the ``access_token`` cookie instead.
The tenant id is the token's ``sub`` claim.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Cookie, Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from gsc_core.config import get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24

_bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(tenant_id: uuid.UUID, expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    settings = get_settings()
    payload = {
        "sub": str(tenant_id),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
        "type": "access",
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_tenant_id(token: str) -> Optional[uuid.UUID]:
    """Return the tenant id, or None for an invalid/expired token."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    try:
        return uuid.UUID(str(payload.get("sub")))
    except ValueError:
        return None


async def optional_tenant(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    access_token: Optional[str] = Cookie(None),
) -> Optional[uuid.UUID]:
    token = credentials.credentials if credentials else access_token
    if not token:
        return None
    return decode_tenant_id(token)


async def require_tenant(tenant_id: Optional[uuid.UUID] = Depends(optional_tenant)) -> uuid.UUID:
    if tenant_id is None:
        raise HTTPException(
            status_code=401,
            detail="Missing or invalid authorization. Include header: Authorization: Bearer <token>",
        )
    return tenant_id
