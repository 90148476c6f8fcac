"""
Products API backed by Shopify with a read-through cache.

GET reads through the cache; POST and PUT write to Shopify and invalidate
the cache entry before responding.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from catalog_sync.api.dependencies import get_product_service
from catalog_sync.api.schemas.product import ProductInput, ProductResponse
from catalog_sync.errors import TransientError, UpstreamAPIError
from catalog_sync.services.product_service import ProductService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])


def _upstream_http_error(e: Exception) -> HTTPException:
    if isinstance(e, UpstreamAPIError) and not e.transient:
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Upstream service unavailable",
    )


@router.get(
    "/{product_id}",
    response_model=ProductResponse,
    responses={404: {"description": "Product not found"}},
)
async def get_product(product_id: str, service: ProductService = Depends(get_product_service)):
    try:
        product = await service.get_product(product_id)
    except (UpstreamAPIError, TransientError) as e:
        raise _upstream_http_error(e)

    if product is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Product {product_id} not found",
        )
    return product


@router.post("", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    body: ProductInput,
    service: ProductService = Depends(get_product_service),
):
    try:
        return await service.create_product(body.to_shopify_input())
    except (UpstreamAPIError, TransientError) as e:
        logger.warning("Product create failed", extra={"error": str(e)})
        raise _upstream_http_error(e)


@router.put("/{product_id}", response_model=ProductResponse)
async def update_product(
    product_id: str,
    body: ProductInput,
    service: ProductService = Depends(get_product_service),
):
    try:
        return await service.update_product(product_id, body.to_shopify_input())
    except (UpstreamAPIError, TransientError) as e:
        logger.warning("Product update failed", extra={
            "product_id": product_id,
            "error": str(e),
        })
        raise _upstream_http_error(e)
