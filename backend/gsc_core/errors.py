"""
Error taxonomy for the Search Console integration.

Every error carries a machine-readable ``code`` so routers can map it to an
HTTP status or a redirect sub-code without string matching.
"""

from typing import Optional

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class GscError(Exception):
    code = "gsc_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


# ── Credentials ───────────────────────────────────────────────────────

class AuthError(GscError):
    code = "auth_error"


class NotConnected(AuthError):
    code = "not_connected"


class ReauthRequired(AuthError):
    code = "reauth_required"


class CorruptCredential(AuthError):
    code = "corrupt_credential"


# ── OAuth state ───────────────────────────────────────────────────────

class StateError(GscError):
    code = "state_error"


class InvalidState(StateError):
    code = "invalid_state"


class ExpiredState(StateError):
    code = "expired_state"


# ── Quota / provider / storage ────────────────────────────────────────

class QuotaExceeded(GscError):
    """Non-fatal: the caller queues the URL instead of failing it."""
    code = "quota_exceeded"


class ProviderError(GscError):
    code = "provider_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        # Provider-side error code, e.g. "invalid_grant"
        self.reason = reason

    @classmethod
    def from_status(cls, status_code: int, message: str = "", reason: Optional[str] = None) -> "ProviderError":
        return cls(
            message or f"Provider responded with HTTP {status_code}",
            status_code=status_code,
            retryable=status_code in RETRYABLE_STATUSES,
            reason=reason,
        )

    @classmethod
    def from_transport(cls, exc: Exception) -> "ProviderError":
        """Timeouts and connection failures are always retryable."""
        return cls(f"Transport error: {exc.__class__.__name__}: {exc}", status_code=None, retryable=True)

    def __repr__(self) -> str:
        return f"ProviderError(status_code={self.status_code!r}, retryable={self.retryable!r}, message={self.message!r})"


class PersistenceError(GscError):
    code = "persistence_error"


class ConfigurationError(GscError):
    """A required setting (e.g. the OAuth client id) is missing."""
    code = "not_configured"


class NotFound(GscError):
    code = "not_found"
