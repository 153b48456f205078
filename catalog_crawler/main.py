"""Entry points for running the FastAPI application."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import router as api_router
from .config import get_settings
from .logging_utils import configure_logging
from .monitoring.metrics import metrics_router
from .runtime import CrawlerRuntime

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[CrawlerRuntime] = None) -> FastAPI:
    """Build the API app; run with ``uvicorn catalog_crawler.main:create_app --factory``."""

    settings = runtime.settings if runtime is not None else get_settings()
    configure_logging(settings.log_file, settings.log_level)
    runtime = runtime or CrawlerRuntime.build(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting catalog crawler API", extra={"environment": settings.environment})
        yield
        await runtime.close()
        logger.info("Catalog crawler API stopped")

    app = FastAPI(title="Catalog Crawler", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(api_router, prefix="/api")

    if settings.enable_metrics:
        app.include_router(metrics_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"]
    )

    return app


__all__ = ["create_app"]
