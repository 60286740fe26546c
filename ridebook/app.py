"""
FastAPI application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ridebook.config import Settings, get_settings
from ridebook.dependencies import Services
from ridebook.routes import router
from ridebook.schema import build_graphql_schema

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or Services.build(settings)
        logger.info("Ridebook backend started (api prefix %s)", settings.api_prefix)
        try:
            yield
        finally:
            if owned:
                await app.state.services.aclose()

    app = FastAPI(title="Ridebook Backend (FastAPI)", version="0.1.0", lifespan=lifespan)
    app.state.graphql_schema = build_graphql_schema()
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
