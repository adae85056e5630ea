# /flowbot/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from flowbot.config.settings import settings
from flowbot.dependencies.context import build_context
from flowbot.utils.logging import setup_logging

# This file manages the application's lifespan: building the app context,
# starting the audit writer, and closing clients on shutdown.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    # Tests may install a context before startup
    context = getattr(app.state, "context", None) or build_context(settings)
    app.state.context = context

    await context.store.create_indexes()
    await context.audit.start_worker()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    await context.audit.stop_worker()
    await context.close()
