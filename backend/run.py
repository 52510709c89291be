import os
import uvicorn

from gsc_core.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    # The credential vault coalesces refreshes per process; keep production workers few
    uvicorn.run(
        "gsc_core.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8000)),
        reload=not settings.is_production,
        workers=1 if not settings.is_production else int(os.environ.get("WEB_CONCURRENCY", 2)),
        log_level="info",
    )
