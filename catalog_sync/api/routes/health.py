"""
Health check endpoint (database and cache reachability).
"""

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from catalog_sync import __version__
from catalog_sync.api.dependencies import get_container
from catalog_sync.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _check_database(container: ServiceContainer) -> bool:
    try:
        with container.session_factory() as session:
            session.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.warning("Database health check failed", extra={"error": str(e)})
        return False


@router.get("/health")
async def health_check(container: ServiceContainer = Depends(get_container)):
    """
    Report dependency health.

    Returns 200 when the database is reachable. A cache outage degrades
    reads (they fall through to Shopify) and is reported but not fatal.
    """
    database_ok = _check_database(container)
    cache_ok = await container.cache.ping()

    if database_ok and cache_ok:
        overall = "healthy"
    elif database_ok:
        overall = "degraded"
    else:
        overall = "unhealthy"

    return JSONResponse(
        status_code=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": overall,
            "version": __version__,
            "checks": {
                "database": "ok" if database_ok else "unavailable",
                "cache": "ok" if cache_ok else "unavailable",
            },
        },
    )
