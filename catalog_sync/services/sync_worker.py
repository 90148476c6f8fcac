"""
Sync worker for ``shopify-webhook`` tasks.

Create / update:
    1. Validate payload (permanent failure if malformed)
    2. Invalidate cache key product:<id>
    3. Re-fetch the product from Shopify (bounded retry; still absent ->
       EntityNotFoundError)
    4. Transform to mirror fields
    5. Upsert the Contentful entry (bounded retry)
    6. Queue an admin notification (best effort)

Delete:
    1. Invalidate cache key product:<id>
    2. Delete the Contentful entry (absent is success)

The webhook payload is only a pointer: every run re-fetches authoritative
state, so redelivered or reordered tasks converge on the latest upstream
product. Raising from process() fails the attempt; returning acks it.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from catalog_sync.cache.product_cache import ReadThroughCache, product_cache_key
from catalog_sync.config.mirror_fields import MirrorFieldMapping
from catalog_sync.errors import (
    AdvisoryFailure,
    EntityNotFoundError,
    PayloadValidationError,
    TransientError,
    UpstreamAPIError,
)
from catalog_sync.integrations.base import ContentMirror, EntitySource
from catalog_sync.logging_context import LoggerLike, bind_logger
from catalog_sync.queue.task_queue import Task, TaskQueue
from catalog_sync.services.notification_sender import (
    SEND_EMAIL_TASK,
    build_email_payload,
)
from catalog_sync.services.retry import CircuitBreaker, RetryPolicy, retry_async
from catalog_sync.webhooks.events import WebhookKind

logger = logging.getLogger(__name__)

NOTIFICATION_SUBJECTS = {
    WebhookKind.PRODUCT_CREATE: "New Product Created",
    WebhookKind.PRODUCT_UPDATE: "Product Updated",
}


class _EntityNotYetVisible(TransientError):
    """Upstream returned no entity; may be read-after-write lag."""

    error_code = "not_yet_visible"


def parse_sync_payload(task: Task) -> Tuple[WebhookKind, str]:
    """
    Validate a shopify-webhook task payload.

    Raises:
        PayloadValidationError: Payload is not a dict, kind is unknown or
            entityId is missing
    """
    payload = task.payload
    if not isinstance(payload, dict):
        raise PayloadValidationError("Task payload is not an object", task_id=task.id)

    kind = WebhookKind.from_topic(payload.get("kind"))
    if kind is None:
        raise PayloadValidationError(
            "Unknown webhook kind",
            task_id=task.id,
            kind=payload.get("kind"),
        )

    entity_id = payload.get("entityId")
    if entity_id is None or not str(entity_id).strip():
        raise PayloadValidationError(
            "Webhook payload has no product id",
            task_id=task.id,
            kind=kind.value,
        )

    return kind, str(entity_id).strip()


def _as_transient(exc: UpstreamAPIError, **context: Any) -> Exception:
    if exc.transient:
        wrapped = TransientError(str(exc), status_code=exc.status_code, **context)
        wrapped.__cause__ = exc
        return wrapped
    return exc


def _breaker_timed(policy: RetryPolicy) -> RetryPolicy:
    # The breaker applies the per-attempt timeout; retry_async must not race it
    return replace(policy, attempt_timeout_seconds=None)


class SyncWorker:
    """Keeps the product cache and the Contentful mirror consistent with Shopify."""

    def __init__(
        self,
        source: EntitySource,
        mirror: ContentMirror,
        cache: ReadThroughCache,
        queue: TaskQueue,
        field_mapping: MirrorFieldMapping,
        admin_email: Optional[str] = None,
        fetch_policy: RetryPolicy = RetryPolicy(base_delay_seconds=1.0),
        mirror_policy: RetryPolicy = RetryPolicy(base_delay_seconds=1.0),
        source_breaker: Optional[CircuitBreaker] = None,
        mirror_breaker: Optional[CircuitBreaker] = None,
        logger: Optional[LoggerLike] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.mirror = mirror
        self.cache = cache
        self.queue = queue
        self.field_mapping = field_mapping
        self.admin_email = admin_email
        self.fetch_policy = fetch_policy
        self.mirror_policy = mirror_policy
        self.source_breaker = source_breaker or CircuitBreaker("shopify")
        self.mirror_breaker = mirror_breaker or CircuitBreaker("contentful")
        self._logger = logger
        self._sleep = sleep

    async def process(self, task: Task) -> None:
        """
        Apply one webhook task.

        Raises:
            PayloadValidationError: Malformed payload (permanent)
            EntityNotFoundError: Product absent after retries (permanent)
            TransientError: Retryable failure (cache, network, open circuit)
            UpstreamAPIError: Non-retryable API rejection
        """
        kind, entity_id = parse_sync_payload(task)
        log = bind_logger(
            self._logger or logger,
            task_id=task.id,
            entity_id=entity_id,
            kind=kind.value,
            attempt=task.attempts_made + 1,
        )
        log.info("sync.started")

        if kind.is_delete:
            await self._sync_delete(entity_id, log)
        else:
            await self._sync_upsert(kind, entity_id, task, log)

        log.info("sync.finished")

    async def _sync_upsert(
        self,
        kind: WebhookKind,
        entity_id: str,
        task: Task,
        log: LoggerLike,
    ) -> None:
        # Invalidate before fetch so a concurrent reader cannot keep a stale entry
        await self.cache.invalidate(product_cache_key(entity_id))

        entity = await self._fetch(entity_id, task, log)
        fields = self.field_mapping.transform(entity)

        await self._call_mirror(
            lambda: self.mirror.upsert(entity_id, fields),
            "contentful.upsert",
            entity_id,
            log,
        )
        log.info("sync.mirrored", extra={"field_count": len(fields)})

        self._notify(kind, entity_id, entity, log)

    async def _sync_delete(self, entity_id: str, log: LoggerLike) -> None:
        await self.cache.invalidate(product_cache_key(entity_id))
        await self._call_mirror(
            lambda: self.mirror.delete(entity_id),
            "contentful.delete",
            entity_id,
            log,
        )
        log.info("sync.mirror_deleted")

    async def _fetch(self, entity_id: str, task: Task, log: LoggerLike) -> Dict[str, Any]:
        async def fetch_once() -> Dict[str, Any]:
            entity = await self.source_breaker.call(
                lambda: self.source.fetch_by_id(entity_id),
                timeout_seconds=self.fetch_policy.attempt_timeout_seconds,
            )
            if entity is None:
                raise _EntityNotYetVisible("Product not found upstream", entity_id=entity_id)
            return entity

        try:
            return await retry_async(
                fetch_once,
                policy=_breaker_timed(self.fetch_policy),
                operation_name="shopify.fetch_product",
                logger=log,
                sleep=self._sleep,
            )
        except _EntityNotYetVisible as e:
            log.warning("sync.entity_not_found", extra={
                "attempts": self.fetch_policy.max_attempts,
            })
            raise EntityNotFoundError(
                "Product not found after retries",
                entity_id=entity_id,
                task_id=task.id,
                attempt=self.fetch_policy.max_attempts,
            ) from e
        except UpstreamAPIError as e:
            raise _as_transient(e, entity_id=entity_id, task_id=task.id)

    async def _call_mirror(
        self,
        operation: Callable[[], Awaitable[Any]],
        operation_name: str,
        entity_id: str,
        log: LoggerLike,
    ) -> Any:
        try:
            return await retry_async(
                lambda: self.mirror_breaker.call(
                    operation,
                    timeout_seconds=self.mirror_policy.attempt_timeout_seconds,
                ),
                policy=_breaker_timed(self.mirror_policy),
                operation_name=operation_name,
                logger=log,
                sleep=self._sleep,
            )
        except UpstreamAPIError as e:
            raise _as_transient(e, entity_id=entity_id)

    def _notify(
        self,
        kind: WebhookKind,
        entity_id: str,
        entity: Dict[str, Any],
        log: LoggerLike,
    ) -> None:
        """Queue the admin email. Failures are logged and swallowed."""
        if not self.admin_email:
            return

        subject = NOTIFICATION_SUBJECTS.get(kind, "Product Synced")
        body = f"Product {entity.get('title') or entity_id} (ID: {entity_id}) was synced to the CMS."

        try:
            self.queue.enqueue(
                SEND_EMAIL_TASK,
                build_email_payload(self.admin_email, subject, body),
            )
        except Exception as e:
            failure = AdvisoryFailure(
                "Notification could not be queued",
                entity_id=entity_id,
                kind=kind.value,
            )
            log.warning("sync.notification_failed", extra={
                "error": str(failure),
                "cause": str(e),
            })
