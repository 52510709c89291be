import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/gsc_core"
    # TLS to the database, for hosted Postgres that requires it
    database_ssl: bool = False

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql:// — we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    secret_key: str = "change-me-in-production"
    encryption_key: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    cron_secret: str = ""

    # Google OAuth client (Search Console + Indexing API scopes)
    google_client_id: str = ""
    google_client_secret: str = ""
    # Browser-facing base URL: OAuth redirect URI and post-callback redirects
    app_base_url: str = "http://localhost:3000"

    # Quotas and scheduling
    gsc_daily_submit_limit: int = 200
    gsc_daily_inspect_limit: int = 2000
    oauth_state_ttl_minutes: int = 5
    queue_max_attempts: int = 5
    submit_concurrency: int = 4

    # Provider calls
    provider_timeout_seconds: float = 20.0
    token_refresh_margin_seconds: int = 60

    # Opportunity trend threshold (positions)
    trend_min_delta: float = 0.5

    # Optional remote store directory used when auto-linking sites to stores
    store_directory_url: str = ""

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "SECRET_KEY must be set to a secure value in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        if self.gsc_daily_submit_limit < 0:
            raise ValueError("GSC_DAILY_SUBMIT_LIMIT cannot be negative.")
        if self.gsc_daily_inspect_limit < 0:
            raise ValueError("GSC_DAILY_INSPECT_LIMIT cannot be negative.")
        if self.queue_max_attempts < 1:
            raise ValueError("QUEUE_MAX_ATTEMPTS must be at least 1.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/api/gsc/oauth/callback"

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
