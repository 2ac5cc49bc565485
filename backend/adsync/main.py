"""FastAPI application entrypoint.

Initializes Sentry, includes the sync router, and exposes a healthcheck.
"""

import logging

from fastapi import FastAPI

from .routers import meta_sync as meta_sync_router
from .telemetry import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="adsync API",
        description="""
        Operational API for the Meta ads insights sync engine.

        ## Authentication

        Every sync endpoint requires the `X-Admin-Key` header to match
        `ADMIN_SECRET_KEY`.

        ## Sync modes

        - **incremental**: recent days plus a re-ingestion overlap
        - **backfill**: an explicit historical range
        """,
        version="1.0.0",
    )

    if init_sentry():
        logger.info("[STARTUP] Sentry error tracking enabled")

    app.include_router(meta_sync_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
