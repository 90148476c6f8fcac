"""
Product read/write service used by the products API.

Reads go through the cache (read-through); writes go to Shopify and then
delete the cache key before returning (write-invalidate). The new value is
never written through: the next read repopulates from Shopify.
"""

import logging
from typing import Any, Dict, Optional

from catalog_sync.cache.product_cache import ReadThroughCache, product_cache_key
from catalog_sync.integrations.base import EntitySource

logger = logging.getLogger(__name__)


class ProductService:
    """Cached product access."""

    def __init__(self, source: EntitySource, cache: ReadThroughCache, ttl_seconds: int):
        self.source = source
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Product snapshot, or None if it does not exist."""
        return await self.cache.get_or_fetch(
            product_cache_key(product_id),
            lambda: self.source.fetch_by_id(product_id),
            ttl_seconds=self.ttl_seconds,
        )

    async def create_product(self, product_input: Dict[str, Any]) -> Dict[str, Any]:
        product = await self.source.create(product_input)
        product_id = str(product["id"])
        # A failed read for this id may have raced the create; drop anything cached
        await self.cache.invalidate(product_cache_key(product_id))
        logger.info("product.created", extra={"product_id": product_id})
        return product

    async def update_product(self, product_id: str, product_input: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update a product and invalidate its cache entry.

        Raises:
            CacheUnavailableError: The update went through but the cache entry
                could not be removed; the caller sees the failure
        """
        product = await self.source.update(product_id, product_input)
        await self.cache.invalidate(product_cache_key(product_id))
        logger.info("product.updated", extra={"product_id": product_id})
        return product
