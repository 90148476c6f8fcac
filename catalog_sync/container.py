"""
Service wiring.

Every component receives its collaborators through its constructor; this
module is the one place that builds them from Settings. The API process and
the worker process share it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from catalog_sync.cache.product_cache import (
    CacheBackend,
    InMemoryCache,
    ReadThroughCache,
    RedisCache,
)
from catalog_sync.config.mirror_fields import MirrorFieldMapping
from catalog_sync.config.settings import Settings
from catalog_sync.integrations.base import ContentMirror, EntitySource
from catalog_sync.queue.task_queue import TaskQueue
from catalog_sync.services.email_sender import EmailSender, get_email_sender
from catalog_sync.services.notification_sender import SEND_EMAIL_TASK, NotificationSender
from catalog_sync.services.product_service import ProductService
from catalog_sync.services.retry import RetryPolicy
from catalog_sync.services.sync_worker import SyncWorker
from catalog_sync.webhooks.dispatcher import SHOPIFY_WEBHOOK_TASK, WebhookDispatcher
from catalog_sync.workers.task_worker import TaskProcessor

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: sessionmaker
    queue: TaskQueue
    cache: ReadThroughCache
    email_sender: EmailSender
    processor: TaskProcessor
    dispatcher: Optional[WebhookDispatcher] = None
    source: Optional[EntitySource] = None
    mirror: Optional[ContentMirror] = None
    sync_worker: Optional[SyncWorker] = None
    product_service: Optional[ProductService] = None

    async def close(self) -> None:
        for resource in (self.source, self.mirror, self.email_sender, self.cache.backend):
            if resource is not None:
                await resource.close()


def build_cache_backend(settings: Settings) -> CacheBackend:
    if settings.redis_url:
        return RedisCache(settings.redis_url)
    logger.warning("REDIS_URL not set, using in-memory product cache")
    return InMemoryCache()


def build_source(settings: Settings) -> Optional[EntitySource]:
    if not (settings.shopify_shop_domain and settings.shopify_access_token):
        return None
    from catalog_sync.integrations.shopify.product_client import ShopifyProductClient

    return ShopifyProductClient(
        shop_domain=settings.shopify_shop_domain,
        access_token=settings.shopify_access_token,
        api_version=settings.shopify_api_version,
        timeout_seconds=settings.outbound_timeout_seconds,
    )


def build_mirror(settings: Settings) -> Optional[ContentMirror]:
    if not (settings.contentful_space_id and settings.contentful_management_token):
        return None
    from catalog_sync.integrations.contentful.mirror_client import ContentfulMirrorClient

    return ContentfulMirrorClient(
        space_id=settings.contentful_space_id,
        management_token=settings.contentful_management_token,
        environment=settings.contentful_environment,
        locale=settings.contentful_locale,
        content_type=settings.contentful_content_type,
        timeout_seconds=settings.outbound_timeout_seconds,
    )


def build_container(
    settings: Settings,
    session_factory: Optional[sessionmaker] = None,
    cache_backend: Optional[CacheBackend] = None,
    source: Optional[EntitySource] = None,
    mirror: Optional[ContentMirror] = None,
    email_sender: Optional[EmailSender] = None,
    require_collaborators: bool = False,
) -> ServiceContainer:
    """
    Build all services.

    Args:
        settings: Process configuration
        session_factory: Overrides the engine built from DATABASE_URL
        cache_backend / source / mirror / email_sender: Overrides (tests)
        require_collaborators: Raise if Shopify or Contentful is not
            configured (the worker process cannot run without them)

    Raises:
        ValueError: Missing required configuration
    """
    if session_factory is None:
        from catalog_sync.database.session import get_session_factory

        session_factory = get_session_factory()

    queue = TaskQueue(
        session_factory,
        default_max_attempts=settings.queue_retry_attempts,
        default_backoff_delay_seconds=settings.queue_retry_backoff_delay_seconds,
        lease_seconds=settings.queue_lease_seconds,
    )
    cache = ReadThroughCache(cache_backend or build_cache_backend(settings))
    source = source or build_source(settings)
    mirror = mirror or build_mirror(settings)
    email_sender = email_sender or get_email_sender(
        settings.email_provider,
        api_key=settings.sendgrid_api_key,
        from_email=settings.notification_from_email,
    )

    if require_collaborators and (source is None or mirror is None):
        raise ValueError(
            "SHOPIFY_SHOP_DOMAIN, SHOPIFY_ACCESS_TOKEN, CONTENTFUL_SPACE_ID and "
            "CONTENTFUL_MANAGEMENT_TOKEN are required"
        )

    notification_sender = NotificationSender(email_sender)
    processor = TaskProcessor({SEND_EMAIL_TASK: notification_sender.process})

    outbound_policy = RetryPolicy(
        max_attempts=3,
        base_delay_seconds=1.0,
        attempt_timeout_seconds=settings.outbound_timeout_seconds,
    )

    sync_worker = None
    if source is not None and mirror is not None:
        sync_worker = SyncWorker(
            source=source,
            mirror=mirror,
            cache=cache,
            queue=queue,
            field_mapping=MirrorFieldMapping.from_yaml(settings.mirror_fields_path),
            admin_email=settings.admin_email,
            fetch_policy=outbound_policy,
            mirror_policy=outbound_policy,
        )
        processor.register(SHOPIFY_WEBHOOK_TASK, sync_worker.process)

    dispatcher = None
    if settings.shopify_api_secret:
        dispatcher = WebhookDispatcher(queue, session_factory, settings.shopify_api_secret)
    else:
        logger.warning("SHOPIFY_API_SECRET not set, webhook ingestion disabled")

    product_service = None
    if source is not None:
        product_service = ProductService(source, cache, settings.product_cache_ttl_seconds)

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        queue=queue,
        cache=cache,
        email_sender=email_sender,
        processor=processor,
        dispatcher=dispatcher,
        source=source,
        mirror=mirror,
        sync_worker=sync_worker,
        product_service=product_service,
    )
