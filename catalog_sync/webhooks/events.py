"""
Inbound webhook event types.

A WebhookEvent is created once at ingress from the raw request and consumed
once by the dispatcher. It holds the exact body bytes so the signature can
be verified over what was actually received.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from catalog_sync.models.base import utcnow


class WebhookKind(str, Enum):
    """Product webhook topics handled by the pipeline."""
    PRODUCT_CREATE = "products/create"
    PRODUCT_UPDATE = "products/update"
    PRODUCT_DELETE = "products/delete"

    @classmethod
    def from_topic(cls, topic: Optional[str]) -> Optional["WebhookKind"]:
        """Map a Shopify topic (or its event name, e.g. ProductCreate) to a kind."""
        if not topic:
            return None
        normalized = topic.strip()
        for kind in cls:
            if normalized == kind.value or normalized == kind.event_name:
                return kind
        return None

    @property
    def event_name(self) -> str:
        return _EVENT_NAMES[self]

    @property
    def is_delete(self) -> bool:
        return self is WebhookKind.PRODUCT_DELETE


_EVENT_NAMES = {
    WebhookKind.PRODUCT_CREATE: "ProductCreate",
    WebhookKind.PRODUCT_UPDATE: "ProductUpdate",
    WebhookKind.PRODUCT_DELETE: "ProductDelete",
}


@dataclass(frozen=True)
class WebhookEvent:
    """Immutable inbound webhook notification."""

    topic: Optional[str]
    shop_identifier: Optional[str]
    raw_body: bytes
    signature: Optional[str] = None
    webhook_id: Optional[str] = None
    received_at: datetime = field(default_factory=utcnow)

    @property
    def kind(self) -> Optional[WebhookKind]:
        return WebhookKind.from_topic(self.topic)

    def parse_body(self) -> Optional[Dict[str, Any]]:
        """JSON body as a dict, or None if it is not a JSON object."""
        try:
            parsed = json.loads(self.raw_body)
        except (TypeError, ValueError):
            return None
        return parsed if isinstance(parsed, dict) else None
