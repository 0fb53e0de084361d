"""faultline FastAPI application entrypoints.

`create_app()` builds a standalone app; `install_error_handling()` (from
`faultline.handler`) can instead be applied to an existing FastAPI app in
library mode.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI

from faultline import __version__
from faultline.config import Settings, get_settings
from faultline.handler import LogSink, install_error_handling
from faultline.responses import ResponseEmitter, get_emitter

logger = logging.getLogger(__name__)


def create_app(
    *,
    settings: Optional[Settings] = None,
    routers: Iterable[APIRouter] = (),
    sink: Optional[LogSink] = None,
) -> FastAPI:
    """Create a faultline FastAPI app with the error envelope installed."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "faultline ready (debug=%s, strict_emit=%s, dialect=%s)",
            settings.debug,
            settings.strict_emit,
            settings.db_dialect,
        )
        yield

    # Starlette's debug page would bypass the envelope; debug output goes through the translator.
    app = FastAPI(title="faultline", version=__version__, debug=False, lifespan=lifespan)

    @app.get("/health", tags=["internal"])
    async def health(emitter: ResponseEmitter = Depends(get_emitter)):
        return emitter.success({"status": "ok", "debug": settings.debug})

    install_error_handling(app, settings, sink=sink)

    for router in routers:
        app.include_router(router)
    return app
