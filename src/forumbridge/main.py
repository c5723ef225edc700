"""FastAPI application entry point for forumbridge."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from forumbridge import __version__
from forumbridge.api.routes import router
from forumbridge.config import get_settings
from forumbridge.utils.cancellation import CancellationToken
from forumbridge.utils.logging import get_logger, setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager."""
    settings = get_settings()
    setup_logging(settings.log_level)
    logger = get_logger(__name__)
    app.state.migration_lock = asyncio.Lock()
    app.state.cancel_token = CancellationToken()
    logger.info("forumbridge starting", version=__version__)
    yield
    app.state.cancel_token.cancel("application shutting down")
    logger.info("forumbridge shutting down")


app = FastAPI(
    title="forumbridge",
    description="Migrates XenForo forum threads into GitHub Discussions",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic info."""
    return {
        "name": "forumbridge",
        "version": __version__,
        "docs": "/docs",
    }
