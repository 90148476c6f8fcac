"""
Webhook dispatcher: verify, classify, deduplicate, enqueue.

Ingress never waits on downstream work. After the signature check the only
side effect is a durable task (plus a receipt row when Shopify supplied a
webhook ID); cache and CMS are touched by workers only.

Result mapping used by the HTTP route:
- AuthenticationError -> 400
- IGNORED (unknown topic) -> 200
- DUPLICATE (webhook ID already seen) -> 200
- ENQUEUED -> 200
"""

import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from catalog_sync.errors import AuthenticationError
from catalog_sync.logging_context import LoggerLike, bind_logger
from catalog_sync.models.webhook_receipt import WebhookReceipt
from catalog_sync.queue.task_queue import TaskQueue
from catalog_sync.webhooks import signature
from catalog_sync.webhooks.events import WebhookEvent, WebhookKind

logger = logging.getLogger(__name__)

SHOPIFY_WEBHOOK_TASK = "shopify-webhook"


class DispatchStatus(str, Enum):
    ENQUEUED = "enqueued"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    task_id: Optional[str] = None
    kind: Optional[WebhookKind] = None


def build_task_payload(event: WebhookEvent, kind: WebhookKind) -> Dict[str, Any]:
    """
    Task payload for a product webhook.

    A body that is not a JSON object, or has no ``id``, still produces a
    payload; the worker rejects it as a permanent failure so it stays
    inspectable in the failed list.
    """
    body = event.parse_body()
    entity_id = None
    if body is not None and body.get("id") not in (None, ""):
        entity_id = str(body["id"])

    if body is not None:
        raw_payload: Any = body
    else:
        raw_payload = event.raw_body.decode("utf-8", errors="replace")

    return {
        "kind": kind.value,
        "shopIdentifier": event.shop_identifier,
        "entityId": entity_id,
        "rawPayload": raw_payload,
    }


class WebhookDispatcher:
    """
    Turns verified webhook events into queued sync tasks.

    SECURITY: Signature is verified before anything else happens.
    """

    def __init__(
        self,
        queue: TaskQueue,
        session_factory: sessionmaker,
        shared_secret: str,
        logger: Optional[LoggerLike] = None,
    ):
        if not shared_secret:
            raise ValueError("shared_secret is required")
        self.queue = queue
        self._session_factory = session_factory
        self._shared_secret = shared_secret
        self._logger = logger

    def handle(self, event: WebhookEvent) -> DispatchResult:
        """
        Dispatch one inbound event.

        Raises:
            AuthenticationError: Signature missing or invalid
        """
        log = bind_logger(
            self._logger or logger,
            topic=event.topic,
            shop_domain=event.shop_identifier,
            webhook_id=event.webhook_id,
        )

        if not signature.verify(event.raw_body, event.signature, self._shared_secret):
            log.warning("webhook.signature_invalid", extra={
                "has_signature": bool(event.signature),
            })
            raise AuthenticationError(
                "Invalid webhook signature",
                topic=event.topic,
                shop_domain=event.shop_identifier,
            )

        kind = event.kind
        if kind is None:
            log.info("webhook.ignored_topic")
            return DispatchResult(status=DispatchStatus.IGNORED)

        payload = build_task_payload(event, kind)
        log = log.bind(kind=kind.value, entity_id=payload["entityId"])

        if not event.webhook_id:
            task_id = self.queue.enqueue(SHOPIFY_WEBHOOK_TASK, payload)
            log.info("webhook.enqueued", extra={"task_id": task_id})
            return DispatchResult(status=DispatchStatus.ENQUEUED, task_id=task_id, kind=kind)

        return self._enqueue_once(event, kind, payload, log)

    def _enqueue_once(
        self,
        event: WebhookEvent,
        kind: WebhookKind,
        payload: Dict[str, Any],
        log: LoggerLike,
    ) -> DispatchResult:
        """Enqueue and record the webhook ID in one transaction."""
        with self._session_factory() as session:
            existing = (
                session.query(WebhookReceipt)
                .filter(WebhookReceipt.webhook_id == event.webhook_id)
                .first()
            )
            if existing is not None:
                log.info("webhook.duplicate", extra={"task_id": existing.task_id})
                return DispatchResult(
                    status=DispatchStatus.DUPLICATE,
                    task_id=existing.task_id,
                    kind=kind,
                )

            task_id = self.queue.enqueue(SHOPIFY_WEBHOOK_TASK, payload, session=session)
            session.add(WebhookReceipt(
                webhook_id=event.webhook_id,
                topic=kind.value,
                shop_domain=event.shop_identifier,
                payload_hash=hashlib.sha256(event.raw_body).hexdigest(),
                task_id=task_id,
                received_at=event.received_at,
            ))

            try:
                session.commit()
            except IntegrityError:
                # Concurrent delivery of the same webhook won the insert
                session.rollback()
                log.info("webhook.duplicate_race")
                return DispatchResult(status=DispatchStatus.DUPLICATE, kind=kind)

        log.info("webhook.enqueued", extra={"task_id": task_id})
        return DispatchResult(status=DispatchStatus.ENQUEUED, task_id=task_id, kind=kind)
