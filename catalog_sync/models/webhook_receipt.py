"""
WebhookReceipt model for dropping redelivered Shopify webhooks.

Shopify may deliver the same webhook several times (same
X-Shopify-Webhook-Id). A receipt is written in the same transaction as the
enqueued task, so a redelivery is acknowledged without a second task.
"""

from sqlalchemy import Column, String, DateTime, Index

from catalog_sync.db_base import Base
from catalog_sync.models.base import generate_uuid, utcnow


class WebhookReceipt(Base):
    """Tracks accepted webhook deliveries by Shopify webhook ID."""

    __tablename__ = "webhook_receipts"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    webhook_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Shopify webhook event ID (X-Shopify-Webhook-Id header)"
    )

    topic = Column(String(255), nullable=False)
    shop_domain = Column(String(255), nullable=True, index=True)

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 of the raw body for debugging"
    )

    task_id = Column(String(255), nullable=True, comment="Task enqueued for this delivery")

    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("idx_webhook_receipts_shop_topic", "shop_domain", "topic"),
    )

    def __repr__(self) -> str:
        return f"<WebhookReceipt(webhook_id={self.webhook_id}, topic={self.topic})>"
