"""
Shopify product webhook endpoint.

SECURITY: The signature is verified over the raw body before anything else.
Shopify signs webhooks with the app's API secret (X-Shopify-Hmac-Sha256);
X-Signature is accepted for relays that re-sign with the same secret.

The response never waits on downstream processing: a verified product
webhook becomes a queued task and the request returns 200.

Documentation: https://shopify.dev/docs/apps/webhooks/configuration/https
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from catalog_sync.api.dependencies import get_dispatcher
from catalog_sync.errors import AuthenticationError
from catalog_sync.webhooks.dispatcher import WebhookDispatcher
from catalog_sync.webhooks.events import WebhookEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    status: str
    task_id: Optional[str] = None


def _body_field(raw_body: bytes, *names: str) -> Optional[str]:
    """First string field of a JSON body among ``names`` (used when headers are absent)."""
    try:
        body = json.loads(raw_body)
    except (TypeError, ValueError):
        return None
    if not isinstance(body, dict):
        return None
    for name in names:
        value = body.get(name)
        if isinstance(value, str) and value:
            return value
    return None


@router.post(
    "/shopify",
    response_model=WebhookResponse,
    responses={
        400: {"description": "Invalid webhook signature"},
        500: {"description": "Task could not be queued"},
        503: {"description": "Webhook secret not configured"},
    },
)
async def receive_shopify_webhook(
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
    x_shopify_hmac_sha256: Optional[str] = Header(None, alias="X-Shopify-Hmac-Sha256"),
    x_shopify_topic: Optional[str] = Header(None, alias="X-Shopify-Topic"),
    x_shopify_shop_domain: Optional[str] = Header(None, alias="X-Shopify-Shop-Domain"),
    x_shopify_webhook_id: Optional[str] = Header(None, alias="X-Shopify-Webhook-Id"),
):
    """
    Receive a product webhook.

    Topic comes from X-Shopify-Topic, falling back to the body's
    ``topic``/``kind``; the shop from X-Shopify-Shop-Domain, falling back to
    the body's ``shop``.
    """
    raw_body = await request.body()

    event = WebhookEvent(
        topic=x_shopify_topic or _body_field(raw_body, "topic", "kind"),
        shop_identifier=x_shopify_shop_domain or _body_field(raw_body, "shop"),
        raw_body=raw_body,
        signature=x_signature or x_shopify_hmac_sha256,
        webhook_id=x_shopify_webhook_id,
    )

    try:
        result = dispatcher.handle(event)
    except AuthenticationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )
    except SQLAlchemyError as e:
        logger.error("Failed to queue webhook", extra={
            "topic": event.topic,
            "shop_domain": event.shop_identifier,
            "error": str(e),
        }, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook could not be queued",
        )

    return WebhookResponse(status=result.status.value, task_id=result.task_id)
