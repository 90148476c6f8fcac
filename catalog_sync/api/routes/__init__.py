"""API route modules."""

from catalog_sync.api.routes import health, products, queue, webhooks_shopify

__all__ = ["health", "products", "queue", "webhooks_shopify"]
