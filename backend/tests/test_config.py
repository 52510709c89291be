"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    from gsc_core.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.gsc_daily_submit_limit == 200
        assert settings.gsc_daily_inspect_limit == 2000
        assert settings.queue_max_attempts == 5
        assert settings.trend_min_delta == 0.5
        get_settings.cache_clear()


def test_database_url_is_rewritten_for_asyncpg():
    from gsc_core.config import Settings
    settings = Settings(database_url="postgresql://user:pw@db-host/gsc")
    assert settings.database_url == "postgresql+asyncpg://user:pw@db-host/gsc"


def test_oauth_redirect_uri_follows_base_url():
    from gsc_core.config import Settings
    settings = Settings(app_base_url="https://dash.example.com/")
    assert settings.oauth_redirect_uri == "https://dash.example.com/api/gsc/oauth/callback"


def test_settings_cors_origin_list():
    """CORS origins string should be split into a list."""
    from gsc_core.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "CORS_ORIGINS": "http://localhost:3000, http://example.com",
    }, clear=False):
        get_settings.cache_clear()
        origins = get_settings().cors_origin_list
        assert len(origins) == 2
        assert "http://localhost:3000" in origins
        assert "http://example.com" in origins
        get_settings.cache_clear()


def test_production_rejects_default_secret():
    """Production mode should reject the default secret key."""
    from gsc_core.config import Settings

    with pytest.raises(ValueError, match="SECRET_KEY must be set"):
        Settings(
            environment="production",
            secret_key="change-me-in-production",
            encryption_key="x" * 44,
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_requires_encryption_key():
    from gsc_core.config import Settings

    with pytest.raises(ValueError, match="ENCRYPTION_KEY must be set"):
        Settings(
            environment="production",
            secret_key="a-real-secret-key-that-is-not-the-default",
            encryption_key="",
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_accepts_real_secrets():
    from gsc_core.config import Settings
    settings = Settings(
        environment="production",
        secret_key="a-real-secret-key-that-is-not-the-default",
        encryption_key="x" * 44,
        database_url="postgresql+asyncpg://prod-host/db",
    )
    assert settings.is_production is True


def test_rejects_zero_attempt_ceiling():
    from gsc_core.config import Settings

    with pytest.raises(ValueError, match="QUEUE_MAX_ATTEMPTS"):
        Settings(queue_max_attempts=0)


def test_database_tls_is_opt_in():
    import ssl
    from gsc_core import database
    from gsc_core.config import Settings

    hosted = Settings(database_url="postgresql+asyncpg://user:pw@proxy.rlwy.net:5432/gsc")
    with patch.object(database, "settings", hosted):
        assert database._get_connect_args() == {"timeout": 30}

    with patch.object(database, "settings", Settings(database_url=hosted.database_url, database_ssl=True)):
        args = database._get_connect_args()
    assert isinstance(args["ssl"], ssl.SSLContext)
    assert args["ssl"].verify_mode == ssl.CERT_REQUIRED


def test_rejects_negative_inspection_limit():
    from gsc_core.config import Settings

    with pytest.raises(ValueError, match="GSC_DAILY_INSPECT_LIMIT"):
        Settings(gsc_daily_inspect_limit=-1)
