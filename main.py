"""
FastAPI application entry point for Catalog Sync.

Receives Shopify product webhooks, queues them as durable sync tasks and
serves cached product reads. Sync tasks are processed by the worker
process (python -m catalog_sync.workers.task_worker).
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from catalog_sync import __version__
from catalog_sync.api.routes import health, products, queue, webhooks_shopify
from catalog_sync.container import ServiceContainer, build_container
from catalog_sync.config.settings import get_settings
from catalog_sync.logging_context import configure_logging

# Configure structured logging
configure_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the application.

    Args:
        container: Prebuilt services (tests). If omitted, services are built
            from the environment at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        logger.info("Starting Catalog Sync API", extra={"version": __version__})

        owns_container = container is None
        if owns_container:
            from catalog_sync.database.session import init_schema

            settings = get_settings()
            if not settings.database_url:
                logger.error(
                    "DATABASE_URL is not set. Webhook ingestion and queue endpoints will return 503."
                )
            else:
                init_schema()
                app.state.container = build_container(settings)
        else:
            app.state.container = container

        yield

        logger.info("Shutting down Catalog Sync API")
        if owns_container and getattr(app.state, "container", None) is not None:
            await app.state.container.close()

    app = FastAPI(
        title="Catalog Sync API",
        description="Shopify to Contentful product synchronization",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = None

    # Include health route
    app.include_router(health.router)

    # Include Shopify webhook routes (uses HMAC verification)
    app.include_router(webhooks_shopify.router)

    # Include queue operations routes
    app.include_router(queue.router)

    # Include product routes (read-through cache)
    app.include_router(products.router)

    return app


app = create_app()
