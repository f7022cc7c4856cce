"""FastAPI application for the StrasBoard HTTP surface."""

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI

from strasboard import __version__

if TYPE_CHECKING:
    from strasboard.context import AppContext

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan.

    NOTE: Data sources are managed by AppContext, NOT here. The context is
    created and started by the CLI before the web app starts; this only
    reports on it.
    """
    logger.info("Web application starting...")

    context = app.state.context
    if context and not context.is_started:
        logger.warning("AppContext provided but not started - sources are not initialized")

    yield  # Application runs here

    logger.info("Web application shutting down...")


def create_app(context: Optional["AppContext"] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        context: Application context with the aggregator and data sources

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="StrasBoard",
        description="Weather, transport, indoor climate and energy dashboard API",
        version=__version__,
        lifespan=lifespan,
    )

    # Store context in app.state for access in request handlers
    app.state.context = context

    from strasboard.web.routes import router

    app.include_router(router)

    logger.info("FastAPI application created")
    return app
