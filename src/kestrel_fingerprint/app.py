"""FastAPI application factory for the Kestrel fingerprint service."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kestrel_fingerprint import __version__
from kestrel_fingerprint.api.routes_devices import router as devices_router
from kestrel_fingerprint.api.routes_identify import router as identify_router
from kestrel_fingerprint.api.routes_system import router as system_router
from kestrel_fingerprint.api.routes_velocity import router as velocity_router
from kestrel_fingerprint.config import Settings
from kestrel_fingerprint.errors import MalformedEvent, StoreUnavailable

logger = logging.getLogger(__name__)


async def _store_unavailable(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.warning("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Fingerprint store unavailable"})


async def _malformed_event(request: Request, exc: MalformedEvent) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc), "field": exc.field})


def create_app(settings: Settings) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Loaded service settings.

    Returns:
        Configured FastAPI application instance. The engine, settings and
        compaction dependencies in ``kestrel_fingerprint.api.deps`` must be
        overridden by the caller.
    """
    start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.start_time = start_time
        app.state.settings = settings
        yield

    app = FastAPI(
        title=settings.service.name,
        version=__version__,
        lifespan=lifespan,
    )

    # Also set directly for access outside lifespan
    app.state.start_time = start_time
    app.state.settings = settings

    app.add_exception_handler(StoreUnavailable, _store_unavailable)
    app.add_exception_handler(MalformedEvent, _malformed_event)

    app.include_router(system_router)
    app.include_router(identify_router)
    app.include_router(devices_router)
    app.include_router(velocity_router)

    return app
