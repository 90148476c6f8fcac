"""
Catalog sync backend.

Mirrors Shopify products into Contentful through a verified webhook
pipeline with a durable task queue and a write-invalidate Redis cache.
"""

__version__ = "0.1.0"
