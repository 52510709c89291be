"""
Search Console Integration — FastAPI Backend
OAuth connection to Google Search Console, quota-aware URL indexation and
keyword opportunity scoring. All state persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from gsc_core.config import get_settings
from gsc_core.database import init_db, check_db_connection
from gsc_core.errors import (
    AuthError,
    ConfigurationError,
    CorruptCredential,
    GscError,
    NotConnected,
    NotFound,
    PersistenceError,
    ProviderError,
    QuotaExceeded,
    StateError,
)
from gsc_core.routers import cron, gsc_oauth, indexation, opportunities

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Search Console Integration...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Search Console Integration",
    description="Google Search Console connection, indexation and keyword opportunities",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error mapping ────────────────────────────────────────────────────
# Most specific first; the first isinstance match wins
_STATUS_BY_ERROR = (
    (NotConnected, 409),
    (CorruptCredential, 409),
    (AuthError, 401),
    (StateError, 400),
    (NotFound, 404),
    (QuotaExceeded, 429),
    (ProviderError, 502),
    (PersistenceError, 503),
    (ConfigurationError, 500),
)


def status_for_error(exc: GscError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(GscError)
async def gsc_error_handler(request: Request, exc: GscError):
    status = status_for_error(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    body = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, ProviderError):
        body["retryable"] = exc.retryable
    return JSONResponse(status_code=status, content=body)


# ── Register Routers (auth is per-endpoint: tenant JWT or CRON_SECRET) ──
app.include_router(gsc_oauth.router, prefix="/api/gsc", tags=["Search Console Connection"])
app.include_router(indexation.router, prefix="/api/gsc/indexation", tags=["Indexation"])
app.include_router(opportunities.router, prefix="/api/gsc/opportunities", tags=["Opportunities"])
app.include_router(cron.router, prefix="/api")


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Search Console Integration",
        "database": "connected" if db_ok else "disconnected",
    }
