"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from frameblur.errors import FrameblurError
from frameblur.pipeline import Pipeline
from frameblur.web.routes import create_router

logger = logging.getLogger(__name__)


def create_app(pipeline: Pipeline, preload_model: bool = False) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if preload_model:
            try:
                await pipeline.load_model()
            except FrameblurError as exc:
                logger.error("Model not loaded: %s (use POST /api/model/reload)", exc)
        yield
        pipeline.close()

    app = FastAPI(title="frameblur", version="0.1.0", lifespan=lifespan)

    # Routes
    app.include_router(create_router(pipeline))

    return app
