"""
Collaborator interfaces used by the sync pipeline.

- EntitySource: authoritative product data (Shopify)
- ContentMirror: CMS copy of products keyed by source ID (Contentful)
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class EntitySource(ABC):
    """Source of truth for products."""

    @abstractmethod
    async def fetch_by_id(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Current product snapshot, or None if it does not exist."""
        pass

    @abstractmethod
    async def create(self, product_input: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update(self, product_id: str, product_input: Dict[str, Any]) -> Dict[str, Any]:
        pass

    async def close(self) -> None:
        return None


class ContentMirror(ABC):
    """Mirrored copy of products. Both operations are idempotent."""

    @abstractmethod
    async def upsert(self, source_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create or overwrite the record for ``source_id``."""
        pass

    @abstractmethod
    async def delete(self, source_id: str) -> None:
        """Remove the record for ``source_id``; absent is a success."""
        pass

    async def close(self) -> None:
        return None
