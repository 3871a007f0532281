"""
FastAPI application entrypoint.

Run locally:  uvicorn dimsim.main:app --reload
"""

import logging

from fastapi import FastAPI

from dimsim.api.routes import router
from dimsim.config import settings
from dimsim.services.stores import StoreRegistry

logging.basicConfig(
    level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s"
)


def create_app(stores: StoreRegistry | None = None) -> FastAPI:
    app = FastAPI(
        title="Encounter Star Schema Simulator",
        description=(
            "Answers the same encounter analytics questions from a normalized "
            "OLTP schema and from a star schema materialized out of it, and "
            "checks that both give identical rows."
        ),
        version="1.0.0",
    )
    app.state.stores = stores or StoreRegistry()
    app.include_router(router, prefix="/api/v1")
    return app


app = create_app()
