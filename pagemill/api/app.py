"""FastAPI application factory.

Lifespan
--------
On startup the app builds one :class:`~pagemill.pipeline.Pipeline` (browser,
cache and converters shared across all requests via
``request.app.state.pipeline``), opens the SQLite history store and starts
the cache sweeper.  On shutdown it closes the browser, stops the sweeper and
closes the history store if the app opened it.

Routers
-------
    /convert    Markdown / plain-text conversion, batch, validation, cache
    /sitemap    Link discovery, tracked discovery batches
    /history    Extraction sessions and retries
    /health     Service health
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI

from pagemill import __version__
from pagemill.api.routers import convert as convert_router
from pagemill.api.routers import health as health_router
from pagemill.api.routers import history as history_router
from pagemill.api.routers import sitemap as sitemap_router
from pagemill.api.schemas import enforce_rate_limit
from pagemill.config import Settings
from pagemill.config import settings as default_settings
from pagemill.history import HistoryStore, SqliteHistoryStore
from pagemill.logging_setup import configure_logging
from pagemill.pipeline import BatchOrchestrator, Pipeline

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    pipeline: Optional[Pipeline] = None,
    history: Optional[HistoryStore] = None,
) -> FastAPI:
    """Return a fully-configured FastAPI application instance.

    Args:
        settings: Defaults to the process-wide settings.
        pipeline: Injected pipeline; built from *settings* on startup when omitted.
        history: Injected history store; a SQLite store under the workspace
            is opened on startup when omitted.
    """
    settings = settings or default_settings
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned_history = history is None
        if owned_history:
            settings.ensure_workspace()
        app.state.settings = settings
        app.state.pipeline = pipeline or Pipeline(settings)
        app.state.history = history or SqliteHistoryStore(db_path=settings.db_path)
        app.state.orchestrator = BatchOrchestrator(
            app.state.pipeline, settings, history=app.state.history
        )
        app.state.pipeline.cache.start_sweeper()
        logger.info("pagemill API %s ready", __version__)
        try:
            yield
        finally:
            await app.state.pipeline.close()
            if owned_history:
                app.state.history.close()

    app = FastAPI(
        title="pagemill API",
        description=(
            "Render web pages in a headless browser, isolate their main "
            "content and convert it to Markdown; discover and categorise "
            "links; run tracked batches with retry of failed URLs."
        ),
        version=__version__,
        lifespan=lifespan,
    )

    limited = [Depends(enforce_rate_limit)]
    app.include_router(convert_router.router, prefix="/convert", tags=["convert"], dependencies=limited)
    app.include_router(sitemap_router.router, prefix="/sitemap", tags=["sitemap"], dependencies=limited)
    app.include_router(history_router.router, prefix="/history", tags=["history"])
    app.include_router(health_router.router, prefix="/health", tags=["health"])

    return app


# Module-level instance used by uvicorn:
#   uvicorn pagemill.api.app:app --reload
app = create_app()
