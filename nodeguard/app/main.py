"""
nodeguard - Main Application

FastAPI app whose lifespan owns the runtime: store, event bus, probe process,
verification engine and scheduler. The probe is always stopped on shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .core.logging_setup import setup_logging
from .core.settings import DATA_DIR
from .routers import api_router
from .runtime import Runtime, build_runtime

APP_TITLE = "nodeguard"
APP_VERSION = "1.0"

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        rt = runtime
        if rt is None:
            setup_logging(data_dir=DATA_DIR)
            rt = build_runtime()
        app.state.runtime = rt
        rt.start()
        logger.info("%s %s started", APP_TITLE, APP_VERSION)
        try:
            yield
        finally:
            rt.shutdown()
            logger.info("%s stopped", APP_TITLE)

    app = FastAPI(title=APP_TITLE, version=APP_VERSION, lifespan=lifespan)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        return {"ok": True, "version": APP_VERSION}

    return app


app = create_app()
