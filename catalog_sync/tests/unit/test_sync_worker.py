"""
Tests for the sync worker.

Validates:
- Create/update: cache invalidated, fresh fetch, mirror upserted, admin notified
- Delete: cache invalidated, mirror record removed, idempotent
- Bounded fetch retry; confirmed absence is a permanent failure
- Malformed payloads fail permanently without side effects
- Transient upstream failures surface as TransientError
- Cache invalidation failure aborts before any mirror write
- Notification failures never fail the task
- Reordered or repeated tasks converge on the latest upstream state
- Update-before-Create and concurrent tasks leave one mirrored record
"""

import asyncio
import json
from unittest.mock import MagicMock

import httpx
import pytest

from catalog_sync.cache.product_cache import (
    CacheUnavailableError,
    InMemoryCache,
    ReadThroughCache,
    product_cache_key,
)
from catalog_sync.config.mirror_fields import MirrorFieldMapping
from catalog_sync.errors import (
    CircuitOpenError,
    EntityNotFoundError,
    PayloadValidationError,
    TransientError,
    UpstreamAPIError,
)
from catalog_sync.integrations.contentful.mirror_client import ContentfulMirrorClient
from catalog_sync.models.sync_task import TaskState
from catalog_sync.queue.task_queue import Task
from catalog_sync.services.product_service import ProductService
from catalog_sync.services.retry import CircuitBreaker, CircuitState, RetryPolicy
from catalog_sync.services.sync_worker import SyncWorker, parse_sync_payload
from catalog_sync.tests.helpers.fakes import (
    FakeContentMirror,
    FakeEntitySource,
    FakeMonotonic,
    InterleavingContentfulApi,
    no_sleep,
)


def make_task(kind="products/create", entity_id="p1", task_id="task-1", payload=None):
    if payload is None:
        payload = {
            "kind": kind,
            "shopIdentifier": "test-store.myshopify.com",
            "entityId": entity_id,
            "rawPayload": {"id": entity_id},
        }
    return Task(
        id=task_id,
        type="shopify-webhook",
        payload=payload,
        state=TaskState.ACTIVE,
        attempts_made=0,
        max_attempts=3,
        backoff_delay_seconds=1.0,
    )


class _BrokenDeleteCache(InMemoryCache):
    async def delete(self, key):
        raise CacheUnavailableError("redis down")


@pytest.fixture
def source():
    return FakeEntitySource({"p1": {"id": "p1", "title": "Shirt"}})


@pytest.fixture
def mirror():
    return FakeContentMirror()


@pytest.fixture
def cache_backend():
    return InMemoryCache()


@pytest.fixture
def worker(source, mirror, cache_backend, task_queue):
    return SyncWorker(
        source=source,
        mirror=mirror,
        cache=ReadThroughCache(cache_backend),
        queue=task_queue,
        field_mapping=MirrorFieldMapping.from_yaml(),
        admin_email="admin@example.com",
        fetch_policy=RetryPolicy(max_attempts=3, jitter_factor=0.0),
        mirror_policy=RetryPolicy(max_attempts=3, jitter_factor=0.0),
        sleep=no_sleep,
    )


class TestParseSyncPayload:
    """Tests for payload validation."""

    def test_valid_payload(self):
        kind, entity_id = parse_sync_payload(make_task(entity_id="42"))
        assert kind.value == "products/create"
        assert entity_id == "42"

    def test_event_name_accepted_as_kind(self):
        kind, _ = parse_sync_payload(make_task(kind="ProductDelete"))
        assert kind.is_delete

    @pytest.mark.parametrize("payload", [
        None,
        {"kind": "products/create"},
        {"kind": "products/create", "entityId": ""},
        {"kind": "orders/create", "entityId": "1"},
    ])
    def test_invalid_payloads(self, payload):
        task = make_task()
        task = Task(**{**task.__dict__, "payload": payload})
        with pytest.raises(PayloadValidationError):
            parse_sync_payload(task)


class TestCreateAndUpdate:
    """Tests for the create/update path."""

    @pytest.mark.asyncio
    async def test_create_mirrors_only_present_fields(self, worker, mirror):
        await worker.process(make_task())

        assert mirror.records == {"p1": {"title": "Shirt", "sourceId": "p1"}}

    @pytest.mark.asyncio
    async def test_stale_cache_entry_removed(self, worker, cache_backend):
        await cache_backend.set(product_cache_key("p1"), json.dumps({"title": "Old"}), 3600)

        await worker.process(make_task(kind="products/update"))

        assert await cache_backend.get(product_cache_key("p1")) is None

    @pytest.mark.asyncio
    async def test_admin_notification_queued(self, worker, task_queue):
        await worker.process(make_task())

        email_task = task_queue.lease("worker-1")
        assert email_task.type == "send-email"
        assert email_task.payload["to"] == "admin@example.com"
        assert email_task.payload["subject"] == "New Product Created"

    @pytest.mark.asyncio
    async def test_no_notification_without_admin_email(self, worker, task_queue):
        worker.admin_email = None

        await worker.process(make_task())

        assert task_queue.lease("worker-1") is None

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_task(self, worker, mirror):
        worker.queue = MagicMock()
        worker.queue.enqueue.side_effect = RuntimeError("database unavailable")

        await worker.process(make_task())

        assert "p1" in mirror.records

    @pytest.mark.asyncio
    async def test_transient_fetch_failure_retried_locally(self, worker, source, mirror):
        source.failures = [UpstreamAPIError("503", status_code=503)] * 2

        await worker.process(make_task())

        assert len(source.fetch_calls) == 3
        assert "p1" in mirror.records

    @pytest.mark.asyncio
    async def test_persistent_transient_failure_raises_transient(self, worker, source, mirror):
        source.failures = [UpstreamAPIError("503", status_code=503)] * 3

        with pytest.raises(TransientError):
            await worker.process(make_task())
        assert mirror.records == {}

    @pytest.mark.asyncio
    async def test_permanent_upstream_rejection_not_retried(self, worker, source):
        source.failures = [UpstreamAPIError("unauthorized", status_code=401)]

        with pytest.raises(UpstreamAPIError) as exc_info:
            await worker.process(make_task())
        assert exc_info.value.transient is False
        assert len(source.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_mirror_failure_retried_locally(self, worker, mirror):
        mirror.failures = [UpstreamAPIError("502", status_code=502)]

        await worker.process(make_task())

        assert mirror.upsert_calls == 2
        assert "p1" in mirror.records


class TestEntityNotFound:
    """Tests for absent upstream entities."""

    @pytest.mark.asyncio
    async def test_absent_after_retries_is_permanent(self, worker, source, mirror):
        with pytest.raises(EntityNotFoundError) as exc_info:
            await worker.process(make_task(entity_id="missing"))

        assert exc_info.value.context["entity_id"] == "missing"
        assert source.fetch_calls == ["missing"] * 3
        assert mirror.upsert_calls == 0

    @pytest.mark.asyncio
    async def test_entity_visible_on_second_fetch(self, worker, source, mirror):
        original_fetch = source.fetch_by_id
        calls = []

        async def lagging_fetch(product_id):
            calls.append(product_id)
            if len(calls) == 1:
                return None
            return await original_fetch(product_id)

        source.fetch_by_id = lagging_fetch

        await worker.process(make_task())

        assert len(calls) == 2
        assert "p1" in mirror.records


class TestDelete:
    """Tests for the delete path."""

    @pytest.mark.asyncio
    async def test_delete_removes_record_and_cache(self, worker, mirror, cache_backend):
        mirror.records["p1"] = {"title": "Shirt", "sourceId": "p1"}
        await cache_backend.set(product_cache_key("p1"), "{}", 3600)

        await worker.process(make_task(kind="products/delete"))

        assert mirror.records == {}
        assert await cache_backend.get(product_cache_key("p1")) is None

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, worker, mirror, source):
        mirror.records["p1"] = {"title": "Shirt", "sourceId": "p1"}

        await worker.process(make_task(kind="products/delete"))
        await worker.process(make_task(kind="products/delete"))

        assert mirror.records == {}
        assert mirror.delete_calls == 2
        assert source.fetch_calls == []


class TestFailureIsolation:
    """Tests for aborts before side effects."""

    @pytest.mark.asyncio
    async def test_invalid_payload_has_no_side_effects(self, worker, source, mirror):
        with pytest.raises(PayloadValidationError):
            await worker.process(make_task(payload={"kind": "products/create"}))

        assert source.fetch_calls == []
        assert mirror.upsert_calls == 0

    @pytest.mark.asyncio
    async def test_cache_invalidation_failure_aborts(self, worker, source, mirror):
        worker.cache = ReadThroughCache(_BrokenDeleteCache())

        with pytest.raises(CacheUnavailableError):
            await worker.process(make_task())

        assert source.fetch_calls == []
        assert mirror.upsert_calls == 0

    @pytest.mark.asyncio
    async def test_open_circuit_raises_circuit_open(self, worker, source):
        breaker = CircuitBreaker("shopify", failure_threshold=1, clock=FakeMonotonic())
        breaker.record_failure()
        worker.source_breaker = breaker

        with pytest.raises(CircuitOpenError):
            await worker.process(make_task())
        assert source.fetch_calls == []

    @pytest.mark.asyncio
    async def test_hung_mirror_opens_circuit(self, source, cache_backend, task_queue):
        class HangingMirror(FakeContentMirror):
            async def upsert(self, source_id, fields):
                self.upsert_calls += 1
                await asyncio.sleep(1)

        mirror = HangingMirror()
        breaker = CircuitBreaker("contentful", failure_threshold=2, clock=FakeMonotonic())
        worker = SyncWorker(
            source=source,
            mirror=mirror,
            cache=ReadThroughCache(cache_backend),
            queue=task_queue,
            field_mapping=MirrorFieldMapping.from_yaml(),
            mirror_policy=RetryPolicy(
                max_attempts=3, jitter_factor=0.0, attempt_timeout_seconds=0.01,
            ),
            mirror_breaker=breaker,
            sleep=no_sleep,
        )

        with pytest.raises(CircuitOpenError):
            await worker.process(make_task())

        assert breaker.state == CircuitState.OPEN
        assert mirror.upsert_calls == 2


class TestConvergence:
    """Reordered and repeated tasks end in the latest upstream state."""

    @pytest.mark.asyncio
    async def test_out_of_order_updates_converge(self, worker, source, mirror):
        source.products["p1"] = {"id": "p1", "title": "Version 2"}

        # The newer event is processed first, the older one last
        await worker.process(make_task(kind="products/update", task_id="newer"))
        await worker.process(make_task(kind="products/update", task_id="older"))

        assert mirror.records["p1"]["title"] == "Version 2"

    @pytest.mark.asyncio
    async def test_update_before_create_leaves_one_record(self, worker, source, mirror):
        source.products["p1"] = {"id": "p1", "title": "Version 2"}

        await worker.process(make_task(kind="products/update", task_id="update"))
        await worker.process(make_task(kind="products/create", task_id="create"))

        assert mirror.created == ["p1"]
        assert list(mirror.records) == ["p1"]
        assert mirror.records["p1"]["title"] == "Version 2"

    @pytest.mark.asyncio
    async def test_concurrent_tasks_mirror_one_entry(self, source, cache_backend, task_queue):
        api = InterleavingContentfulApi()
        client = ContentfulMirrorClient(
            space_id="space1",
            management_token="cfpat_test",
            transport=httpx.MockTransport(api),
        )
        worker = SyncWorker(
            source=source,
            mirror=client,
            cache=ReadThroughCache(cache_backend),
            queue=task_queue,
            field_mapping=MirrorFieldMapping.from_yaml(),
            mirror_policy=RetryPolicy(max_attempts=3, jitter_factor=0.0),
            sleep=no_sleep,
        )

        await asyncio.gather(
            worker.process(make_task(kind="products/create", task_id="create")),
            worker.process(make_task(kind="products/update", task_id="update")),
        )
        await client.close()

        assert api.creates == ["product-p1"]
        assert list(api.entries) == ["product-p1"]
        assert api.entries["product-p1"]["fields"]["sourceId"] == {"en-US": "p1"}

    @pytest.mark.asyncio
    async def test_late_create_after_delete_does_not_resurrect(self, worker, source, mirror):
        del source.products["p1"]

        await worker.process(make_task(kind="products/delete", task_id="delete"))
        with pytest.raises(EntityNotFoundError):
            await worker.process(make_task(kind="products/create", task_id="late-create"))

        assert mirror.records == {}

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, worker, mirror):
        await worker.process(make_task())
        first = dict(mirror.records)

        await worker.process(make_task())

        assert mirror.records == first


class TestCacheConsistency:
    """A read after a completed sync never returns the pre-update value."""

    @pytest.mark.asyncio
    async def test_read_after_sync_sees_update(self, worker, source, cache_backend):
        service = ProductService(source, ReadThroughCache(cache_backend), ttl_seconds=3600)
        assert (await service.get_product("p1"))["title"] == "Shirt"

        source.products["p1"] = {"id": "p1", "title": "Renamed"}
        await worker.process(make_task(kind="products/update"))

        assert (await service.get_product("p1"))["title"] == "Renamed"
