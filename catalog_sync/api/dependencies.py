"""
FastAPI dependencies resolving services from the application container.
"""

from fastapi import HTTPException, Request, status

from catalog_sync.container import ServiceContainer
from catalog_sync.services.product_service import ProductService
from catalog_sync.webhooks.dispatcher import WebhookDispatcher


def get_container(request: Request) -> ServiceContainer:
    """
    Service container built at startup.

    Raises HTTP 503 if the application has not been initialized.
    """
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return container


def get_dispatcher(request: Request) -> WebhookDispatcher:
    dispatcher = get_container(request).dispatcher
    if dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook secret not configured",
        )
    return dispatcher


def get_product_service(request: Request) -> ProductService:
    service = get_container(request).product_service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Shopify API not configured",
        )
    return service
