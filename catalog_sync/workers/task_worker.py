"""
Task worker - long-lived process consuming the durable task queue.

Runs N concurrent asyncio workers. Each loop:
1. Leases the oldest due task (or sleeps for the poll interval)
2. Runs its handler under a timeout that ends before the lease does
3. Acks on success; fails it permanently on PermanentTaskError or a
   non-retryable API rejection; otherwise fails it for a retry with backoff

CONSTRAINTS:
- At-least-once: a worker that dies mid-task leaves the lease to expire and
  the task is redelivered to another worker
- No Celery: driven by task rows in the database
- Graceful shutdown on SIGTERM/SIGINT (in-flight tasks finish first)

Usage:
    python -m catalog_sync.workers.task_worker
"""

import os
import sys
import signal
import socket
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from catalog_sync.errors import PayloadValidationError, error_code_for, is_permanent
from catalog_sync.logging_context import bind_logger, configure_logging
from catalog_sync.models.sync_task import TaskState
from catalog_sync.queue.task_queue import Task, TaskQueue

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Task], Awaitable[None]]

# Handlers stop this long before their lease expires
LEASE_MARGIN_SECONDS = 5


def handler_timeout(lease_seconds: float) -> float:
    """Handler time limit for a lease: the lease minus a margin, at least half the lease."""
    return max(lease_seconds - LEASE_MARGIN_SECONDS, lease_seconds / 2)


@dataclass
class WorkerStats:
    """Cumulative statistics for the worker process lifetime."""

    tasks_completed: int = 0
    tasks_retried: int = 0
    tasks_failed: int = 0
    errors: int = 0
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict:
        uptime = (
            datetime.now(timezone.utc) - self.started_at
        ).total_seconds()
        return {
            "tasks_completed": self.tasks_completed,
            "tasks_retried": self.tasks_retried,
            "tasks_failed": self.tasks_failed,
            "errors": self.errors,
            "uptime_seconds": round(uptime, 2),
        }


class TaskProcessor:
    """Routes a task to the handler registered for its type."""

    def __init__(self, handlers: Optional[Dict[str, TaskHandler]] = None):
        self._handlers: Dict[str, TaskHandler] = dict(handlers or {})

    def register(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    async def process(self, task: Task) -> None:
        handler = self._handlers.get(task.type)
        if handler is None:
            raise PayloadValidationError(
                f"No handler for task type '{task.type}'",
                task_id=task.id,
            )
        await handler(task)


class TaskWorkerPool:
    """
    Fixed pool of queue consumers.

    Usage:
        pool = TaskWorkerPool(queue, processor, concurrency=4)
        await pool.run()          # until stop() / SIGTERM
        await pool.run_once("w")  # one task, for tests and cron
    """

    def __init__(
        self,
        queue: TaskQueue,
        processor: TaskProcessor,
        concurrency: int = 4,
        poll_interval_seconds: float = 2.0,
        lease_seconds: Optional[int] = None,
        worker_name: Optional[str] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.lease_seconds = lease_seconds or queue.lease_seconds
        self.handler_timeout_seconds = handler_timeout(self.lease_seconds)
        self.worker_name = worker_name or f"{socket.gethostname()}-{os.getpid()}"
        self.stats = WorkerStats()
        self._shutdown_event = asyncio.Event()

    def stop(self) -> None:
        self._shutdown_event.set()

    async def run_once(self, worker_id: str) -> Optional[Task]:
        """
        Lease and process at most one task.

        Returns:
            The task's snapshot after ack/fail, or None if nothing was due
        """
        task = self.queue.lease(worker_id, lease_seconds=self.lease_seconds)
        if task is None:
            return None

        log = bind_logger(
            logger,
            task_id=task.id,
            task_type=task.type,
            worker_id=worker_id,
        )

        try:
            await asyncio.wait_for(
                self.processor.process(task),
                timeout=self.handler_timeout_seconds,
            )
        except asyncio.CancelledError:
            # Shutdown mid-task: the lease expires and the task is redelivered
            raise
        except Exception as e:
            return self._record_failure(task, e, log)

        result = self.queue.ack(task.id, lease_token=task.lease_token)
        if result.state != TaskState.COMPLETED:
            # Lease was reclaimed; the new holder owns the outcome
            log.warning("worker.lease_lost", extra={"state": result.state.value})
            return result

        self.stats.tasks_completed += 1
        log.info("worker.task_completed", extra={"attempts_made": result.attempts_made})
        return result

    def _record_failure(self, task: Task, error: Exception, log) -> Task:
        if isinstance(error, asyncio.TimeoutError):
            message = f"Task exceeded handler timeout of {self.handler_timeout_seconds}s"
            code = "timeout"
        else:
            message = str(error)
            code = error_code_for(error)

        permanent = is_permanent(error)
        result = self.queue.fail(
            task.id,
            message,
            retryable=not permanent,
            error_code=code,
            lease_token=task.lease_token,
        )

        if result.state == TaskState.FAILED:
            self.stats.tasks_failed += 1
        else:
            self.stats.tasks_retried += 1

        log.warning("worker.task_failed", extra={
            "error": message,
            "error_code": code,
            "permanent": permanent,
            "state": result.state.value,
            "attempts_made": result.attempts_made,
        })
        return result

    async def _worker_loop(self, worker_id: str) -> None:
        while not self._shutdown_event.is_set():
            try:
                task = await self.run_once(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Queue unavailable; back off one poll interval
                self.stats.errors += 1
                logger.exception("worker.loop_error", extra={"worker_id": worker_id})
                task = None

            if task is not None:
                continue

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.poll_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass  # Normal: timeout = no shutdown, continue loop

    async def run(self) -> None:
        """Run all workers until stop() is called."""
        logger.info("Task worker pool starting", extra={
            "worker_name": self.worker_name,
            "concurrency": self.concurrency,
            "poll_interval_seconds": self.poll_interval_seconds,
            "lease_seconds": self.lease_seconds,
            "handler_timeout_seconds": self.handler_timeout_seconds,
        })

        await asyncio.gather(*(
            self._worker_loop(f"{self.worker_name}-{i}")
            for i in range(self.concurrency)
        ))

        logger.info("Task worker pool stopped", extra=self.stats.to_dict())


async def run_worker() -> None:
    """Build services from the environment and run until SIGTERM/SIGINT."""
    from catalog_sync.config.settings import get_settings
    from catalog_sync.container import build_container

    container = build_container(get_settings(), require_collaborators=True)
    pool = TaskWorkerPool(
        container.queue,
        container.processor,
        concurrency=container.settings.worker_concurrency,
        poll_interval_seconds=container.settings.worker_poll_interval_seconds,
        lease_seconds=container.settings.queue_lease_seconds,
    )

    def _handle_signal(sig, _frame):
        logger.info("Received signal %s, shutting down gracefully", sig)
        pool.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        await pool.run()
    finally:
        await container.close()


def main():
    """Entry point for running worker from command line."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    try:
        asyncio.run(run_worker())
        sys.exit(0)
    except Exception as e:
        logger.error("Task worker crashed", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
