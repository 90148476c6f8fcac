"""
Tests for the durable task queue.

Validates:
- State machine transitions (and rejected transitions)
- Enqueue / lease / ack lifecycle
- Exponential backoff between attempts
- Permanent failure after max attempts or a non-retryable error
- Exactly one worker wins a lease
- Expired leases are redelivered and count as an attempt
- Operator actions: counts, failed list, requeue, remove, clean
- Pause/resume is persisted and stops leasing, not enqueueing
"""

from datetime import timedelta

import pytest

from catalog_sync.models.sync_task import TaskState
from catalog_sync.queue.task_queue import (
    InvalidTransitionError,
    TaskEvent,
    TaskNotFoundError,
    TaskQueue,
    backoff_delay,
    next_state,
)


class TestStateMachine:
    """Tests for next_state()."""

    @pytest.mark.parametrize("current,event,expected", [
        (TaskState.WAITING, TaskEvent.LEASE, TaskState.ACTIVE),
        (TaskState.ACTIVE, TaskEvent.RECLAIM, TaskState.ACTIVE),
        (TaskState.ACTIVE, TaskEvent.ACK, TaskState.COMPLETED),
        (TaskState.ACTIVE, TaskEvent.RETRY, TaskState.WAITING),
        (TaskState.ACTIVE, TaskEvent.FAIL, TaskState.FAILED),
        (TaskState.FAILED, TaskEvent.REQUEUE, TaskState.WAITING),
    ])
    def test_allowed_transitions(self, current, event, expected):
        assert next_state(current, event) == expected

    @pytest.mark.parametrize("current,event", [
        (TaskState.COMPLETED, TaskEvent.LEASE),
        (TaskState.COMPLETED, TaskEvent.FAIL),
        (TaskState.FAILED, TaskEvent.ACK),
        (TaskState.WAITING, TaskEvent.REQUEUE),
        (TaskState.ACTIVE, TaskEvent.LEASE),
    ])
    def test_rejected_transitions(self, current, event):
        with pytest.raises(InvalidTransitionError):
            next_state(current, event)


class TestBackoffDelay:
    """Delay after the n-th failed attempt is base * 2^(n-1)."""

    def test_exponential_growth(self):
        assert backoff_delay(1.0, 1) == 1.0
        assert backoff_delay(1.0, 2) == 2.0
        assert backoff_delay(1.0, 3) == 4.0

    def test_capped(self):
        assert backoff_delay(1.0, 40) == 3600.0


class TestEnqueueAndLease:
    """Tests for the producer/consumer lifecycle."""

    def test_enqueue_creates_waiting_task(self, task_queue):
        task_id = task_queue.enqueue("shopify-webhook", {"entityId": "1"})

        task = task_queue.status(task_id)
        assert task.state == TaskState.WAITING
        assert task.attempts_made == 0
        assert task.max_attempts == 3
        assert task.payload == {"entityId": "1"}

    def test_enqueue_with_options(self, task_queue):
        task_id = task_queue.enqueue("send-email", {}, attempts=5, backoff_delay_seconds=2.5)

        task = task_queue.status(task_id)
        assert task.max_attempts == 5
        assert task.backoff_delay_seconds == 2.5

    def test_enqueue_rejects_zero_attempts(self, task_queue):
        with pytest.raises(ValueError):
            task_queue.enqueue("send-email", {}, attempts=0)

    def test_lease_returns_oldest_due_task(self, task_queue, clock):
        first = task_queue.enqueue("shopify-webhook", {"n": 1})
        clock.advance(1)
        task_queue.enqueue("shopify-webhook", {"n": 2})

        task = task_queue.lease("worker-1")

        assert task.id == first
        assert task.state == TaskState.ACTIVE
        assert task.leased_by == "worker-1"
        assert task.lease_expires_at == clock() + timedelta(seconds=60)
        assert task.lease_token

    def test_lease_empty_queue_returns_none(self, task_queue):
        assert task_queue.lease("worker-1") is None

    def test_only_one_worker_wins(self, task_queue):
        task_queue.enqueue("shopify-webhook", {})

        first = task_queue.lease("worker-1")
        second = task_queue.lease("worker-2")

        assert first is not None
        assert second is None

    def test_ack_completes_task(self, task_queue):
        task_id = task_queue.enqueue("shopify-webhook", {})
        task_queue.lease("worker-1")

        task = task_queue.ack(task_id)

        assert task.state == TaskState.COMPLETED
        assert task.completed_at is not None
        assert task_queue.lease("worker-1") is None

    def test_ack_is_idempotent(self, task_queue):
        task_id = task_queue.enqueue("shopify-webhook", {})
        task_queue.lease("worker-1")
        task_queue.ack(task_id)

        assert task_queue.ack(task_id).state == TaskState.COMPLETED

    def test_status_unknown_task(self, task_queue):
        with pytest.raises(TaskNotFoundError):
            task_queue.status("missing")


class TestFailAndRetry:
    """Tests for fail() and backoff scheduling."""

    def test_retryable_failure_reschedules_with_backoff(self, task_queue, clock):
        task_id = task_queue.enqueue("shopify-webhook", {})
        task_queue.lease("worker-1")

        task = task_queue.fail(task_id, RuntimeError("boom"))

        assert task.state == TaskState.WAITING
        assert task.attempts_made == 1
        assert task.next_run_at == clock() + timedelta(seconds=1)
        assert task.last_error == "boom"

    def test_task_not_leasable_before_backoff_elapses(self, task_queue, clock):
        task_id = task_queue.enqueue("shopify-webhook", {})
        task_queue.lease("worker-1")
        task_queue.fail(task_id, "boom")

        assert task_queue.lease("worker-1") is None
        clock.advance(1)
        assert task_queue.lease("worker-1").id == task_id

    def test_second_failure_doubles_delay(self, task_queue, clock):
        task_id = task_queue.enqueue("shopify-webhook", {})
        task_queue.lease("worker-1")
        task_queue.fail(task_id, "boom")
        clock.advance(1)
        task_queue.lease("worker-1")

        task = task_queue.fail(task_id, "boom again")

        assert task.attempts_made == 2
        assert task.next_run_at == clock() + timedelta(seconds=2)

    def test_fails_permanently_after_max_attempts(self, task_queue, clock):
        task_id = task_queue.enqueue("shopify-webhook", {})

        for _ in range(3):
            clock.advance(10)
            assert task_queue.lease("worker-1") is not None
            task = task_queue.fail(task_id, "still broken")

        assert task.state == TaskState.FAILED
        assert task.attempts_made == 3
        assert task.failed_at is not None
        clock.advance(3600)
        assert task_queue.lease("worker-1") is None

    def test_non_retryable_failure_is_terminal(self, task_queue):
        task_id = task_queue.enqueue("shopify-webhook", {})
        task_queue.lease("worker-1")

        task = task_queue.fail(task_id, "bad payload", retryable=False, error_code="validation_error")

        assert task.state == TaskState.FAILED
        assert task.attempts_made == 1
        assert task.error_code == "validation_error"

    def test_fail_after_terminal_is_ignored(self, task_queue):
        task_id = task_queue.enqueue("shopify-webhook", {})
        task_queue.lease("worker-1")
        task_queue.ack(task_id)

        task = task_queue.fail(task_id, "late failure")

        assert task.state == TaskState.COMPLETED
        assert task.attempts_made == 0

    def test_stale_lease_failure_is_ignored(self, task_queue):
        task_id = task_queue.enqueue("shopify-webhook", {})
        task_queue.lease("worker-1")

        task = task_queue.fail(task_id, "boom", lease_token="not-the-current-lease")

        assert task.state == TaskState.ACTIVE
        assert task.attempts_made == 0

    def test_error_code_derived_from_exception(self, task_queue):
        from catalog_sync.errors import TransientError

        task_id = task_queue.enqueue("shopify-webhook", {})
        task_queue.lease("worker-1")

        task = task_queue.fail(task_id, TransientError("upstream 503", status_code=503))

        assert task.error_code == "transient"


class TestLeaseExpiry:
    """Expired leases are redelivered (at-least-once)."""

    def test_expired_lease_is_redelivered(self, task_queue, clock):
        task_id = task_queue.enqueue("shopify-webhook", {})
        first = task_queue.lease("worker-1", lease_seconds=30)

        clock.advance(31)
        second = task_queue.lease("worker-2")

        assert second.id == task_id
        assert second.leased_by == "worker-2"
        assert second.attempts_made == 1
        assert second.lease_token != first.lease_token
        assert second.error_code == "lease_expired"

    def test_active_lease_not_redelivered(self, task_queue, clock):
        task_queue.enqueue("shopify-webhook", {})
        task_queue.lease("worker-1", lease_seconds=30)

        clock.advance(29)
        assert task_queue.lease("worker-2") is None

    def test_stale_worker_cannot_fail_redelivered_task(self, task_queue, clock):
        task_id = task_queue.enqueue("shopify-webhook", {})
        first = task_queue.lease("worker-1", lease_seconds=30)
        clock.advance(31)
        task_queue.lease("worker-2")

        task = task_queue.fail(task_id, "slow worker gave up", lease_token=first.lease_token)

        assert task.state == TaskState.ACTIVE
        assert task.leased_by == "worker-2"

    def test_stale_worker_cannot_ack_redelivered_task(self, task_queue, clock):
        task_id = task_queue.enqueue("shopify-webhook", {})
        first = task_queue.lease("worker-1", lease_seconds=30)
        clock.advance(31)
        second = task_queue.lease("worker-2")

        stale = task_queue.ack(task_id, lease_token=first.lease_token)

        assert stale.state == TaskState.ACTIVE
        assert stale.leased_by == "worker-2"
        assert task_queue.ack(task_id, lease_token=second.lease_token).state == TaskState.COMPLETED

    def test_expired_lease_with_no_attempts_left_fails(self, session_factory, clock):
        queue = TaskQueue(session_factory, default_max_attempts=1, lease_seconds=30, clock=clock)
        task_id = queue.enqueue("shopify-webhook", {})
        queue.lease("worker-1")

        clock.advance(31)

        assert queue.lease("worker-2") is None
        task = queue.status(task_id)
        assert task.state == TaskState.FAILED
        assert task.error_code == "lease_expired"


class TestOperatorActions:
    """Tests for counts, failed list, requeue, remove and clean."""

    def _failed_task(self, queue):
        task_id = queue.enqueue("shopify-webhook", {})
        queue.lease("worker-1")
        queue.fail(task_id, "broken", retryable=False)
        return task_id

    def test_counts(self, task_queue):
        task_queue.enqueue("shopify-webhook", {})
        task_queue.enqueue("shopify-webhook", {})
        leased = task_queue.lease("worker-1")
        task_queue.ack(leased.id)

        counts = task_queue.counts()

        assert counts == {"waiting": 1, "active": 0, "completed": 1, "failed": 0}

    def test_counts_by_state(self, task_queue):
        self._failed_task(task_queue)
        task_queue.enqueue("shopify-webhook", {})

        counts = task_queue.counts()

        assert counts["failed"] == 1
        assert counts["waiting"] == 1
        assert counts["active"] == 0

    def test_list_failed(self, task_queue):
        failed_id = self._failed_task(task_queue)
        task_queue.enqueue("shopify-webhook", {})

        failed = task_queue.list_failed()

        assert [t.id for t in failed] == [failed_id]

    def test_retry_failed_resets_attempts(self, task_queue):
        task_id = self._failed_task(task_queue)

        task = task_queue.retry_failed(task_id)

        assert task.state == TaskState.WAITING
        assert task.attempts_made == 0
        assert task_queue.lease("worker-1").id == task_id

    def test_retry_failed_rejects_non_failed(self, task_queue):
        task_id = task_queue.enqueue("shopify-webhook", {})
        with pytest.raises(ValueError):
            task_queue.retry_failed(task_id)

    def test_remove(self, task_queue):
        task_id = task_queue.enqueue("shopify-webhook", {})

        assert task_queue.remove(task_id) is True
        assert task_queue.remove(task_id) is False
        with pytest.raises(TaskNotFoundError):
            task_queue.status(task_id)

    def test_clean_removes_old_terminal_tasks_only(self, task_queue, clock):
        old_failed = self._failed_task(task_queue)
        waiting = task_queue.enqueue("shopify-webhook", {})

        clock.advance(25 * 3600)
        recent_failed = self._failed_task(task_queue)

        removed = task_queue.clean()

        assert removed == 1
        with pytest.raises(TaskNotFoundError):
            task_queue.status(old_failed)
        assert task_queue.status(waiting).state == TaskState.WAITING
        assert task_queue.status(recent_failed).state == TaskState.FAILED


class TestPauseResume:
    """A paused queue accepts tasks but leases none until resumed."""

    def test_paused_queue_leases_nothing(self, task_queue):
        task_queue.pause()
        task_id = task_queue.enqueue("shopify-webhook", {})

        assert task_queue.is_paused() is True
        assert task_queue.lease("worker-1") is None
        assert task_queue.status(task_id).state == TaskState.WAITING

    def test_resume_allows_leasing(self, task_queue):
        task_id = task_queue.enqueue("shopify-webhook", {})
        task_queue.pause()
        task_queue.resume()

        assert task_queue.is_paused() is False
        assert task_queue.lease("worker-1").id == task_id

    def test_pause_is_shared_across_instances(self, task_queue, session_factory, clock):
        other_process = TaskQueue(session_factory, clock=clock)
        task_queue.enqueue("shopify-webhook", {})

        task_queue.pause()
        assert other_process.lease("worker-2") is None

        other_process.resume()
        assert task_queue.lease("worker-1") is not None

    def test_pause_is_per_queue_name(self, task_queue, session_factory, clock):
        other_queue = TaskQueue(session_factory, clock=clock, name="other")

        task_queue.pause()

        assert other_queue.is_paused() is False

    def test_pause_twice_is_idempotent(self, task_queue):
        task_queue.pause()
        task_queue.pause()
        task_queue.resume()

        assert task_queue.is_paused() is False
