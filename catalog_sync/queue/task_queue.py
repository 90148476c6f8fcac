"""
Durable task queue backed by SQL rows.

Handles:
- Enqueue (never blocks on consumers; survives restarts)
- Leasing with competing consumers (exactly one worker wins a task)
- Redelivery of tasks whose lease expired (at-least-once)
- Ack / fail with exponential backoff and permanent failure
- Operator views: status, counts, failed list, requeue, remove, clean
- Pause/resume: a persisted flag; a paused queue accepts tasks but leases none

No Celery, no Redis queue: driven by task state in the database. Workers
only ever see immutable Task snapshots; every state change goes through
``next_state`` below.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session, sessionmaker

from catalog_sync.errors import error_code_for
from catalog_sync.models.base import as_utc, utcnow
from catalog_sync.models.queue_control import QueueControl
from catalog_sync.models.sync_task import SyncTask, TaskState, TERMINAL_STATES

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_DELAY_SECONDS = 1.0
DEFAULT_LEASE_SECONDS = 60
MAX_BACKOFF_SECONDS = 3600.0
DEFAULT_QUEUE_NAME = "sync"
CLEAN_GRACE_PERIOD_SECONDS = 24 * 3600
_LEASE_SCAN_BATCH = 10
_MAX_ERROR_LENGTH = 1000


class TaskNotFoundError(Exception):
    """Raised when a task is not found."""
    pass


class InvalidTransitionError(Exception):
    """Raised when a state change is not allowed from the current state."""

    def __init__(self, state: TaskState, event: "TaskEvent"):
        super().__init__(f"Cannot apply {event.value} to task in state {state.value}")
        self.state = state
        self.event = event


class TaskEvent(str, Enum):
    """Events that move a task between states."""
    LEASE = "lease"
    RECLAIM = "reclaim"   # lease expired, handed to another worker
    ACK = "ack"
    RETRY = "retry"       # failed, attempts remain
    FAIL = "fail"         # failed permanently or attempts exhausted
    REQUEUE = "requeue"   # operator retry of a failed task


_TRANSITIONS: Dict[tuple, TaskState] = {
    (TaskState.WAITING, TaskEvent.LEASE): TaskState.ACTIVE,
    (TaskState.ACTIVE, TaskEvent.RECLAIM): TaskState.ACTIVE,
    (TaskState.ACTIVE, TaskEvent.ACK): TaskState.COMPLETED,
    # A worker whose task was rescheduled behind its back still finished it
    (TaskState.WAITING, TaskEvent.ACK): TaskState.COMPLETED,
    (TaskState.ACTIVE, TaskEvent.RETRY): TaskState.WAITING,
    (TaskState.WAITING, TaskEvent.RETRY): TaskState.WAITING,
    (TaskState.ACTIVE, TaskEvent.FAIL): TaskState.FAILED,
    (TaskState.WAITING, TaskEvent.FAIL): TaskState.FAILED,
    (TaskState.FAILED, TaskEvent.REQUEUE): TaskState.WAITING,
}


def next_state(current: TaskState, event: TaskEvent) -> TaskState:
    """
    The task state machine.

    Raises:
        InvalidTransitionError: If ``event`` is not valid in ``current``
    """
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransitionError(current, event)


def backoff_delay(base_delay_seconds: float, attempts_made: int) -> float:
    """Delay before the next attempt: base * 2^(failed attempts - 1)."""
    exponent = max(attempts_made - 1, 0)
    return min(base_delay_seconds * (2 ** exponent), MAX_BACKOFF_SECONDS)


@dataclass(frozen=True)
class Task:
    """Immutable snapshot of a queued task."""

    id: str
    type: str
    payload: Dict[str, Any]
    state: TaskState
    attempts_made: int
    max_attempts: int
    backoff_delay_seconds: float
    next_run_at: Optional[datetime] = None
    lease_token: Optional[str] = None
    leased_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: SyncTask) -> "Task":
        return cls(
            id=row.id,
            type=row.task_type,
            payload=dict(row.payload or {}),
            state=row.state,
            attempts_made=row.attempts_made,
            max_attempts=row.max_attempts,
            backoff_delay_seconds=row.backoff_delay_seconds,
            next_run_at=as_utc(row.next_run_at),
            lease_token=row.lease_token,
            leased_by=row.leased_by,
            lease_expires_at=as_utc(row.lease_expires_at),
            last_error=row.last_error,
            error_code=row.error_code,
            created_at=as_utc(row.created_at),
            completed_at=as_utc(row.completed_at),
            failed_at=as_utc(row.failed_at),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "backoff_delay_seconds": self.backoff_delay_seconds,
            "next_run_at": _iso(self.next_run_at),
            "leased_by": self.leased_by,
            "lease_expires_at": _iso(self.lease_expires_at),
            "last_error": self.last_error,
            "error_code": self.error_code,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
            "failed_at": _iso(self.failed_at),
        }


def _truncate(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return message[:_MAX_ERROR_LENGTH]


class TaskQueue:
    """
    SQL-backed task queue.

    Each public method runs in its own short transaction, so the queue can be
    shared by the API process and any number of worker processes.

    SECURITY: payloads are stored as received; never log them in full.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        default_backoff_delay_seconds: float = DEFAULT_BACKOFF_DELAY_SECONDS,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
        name: str = DEFAULT_QUEUE_NAME,
    ):
        """
        Initialize task queue.

        Args:
            session_factory: SQLAlchemy sessionmaker
            default_max_attempts: Attempts for tasks enqueued without options
            default_backoff_delay_seconds: Base backoff delay
            lease_seconds: Default lease duration
            clock: Returns the current UTC time (tests inject a fake clock)
            name: Queue name, keys the pause flag
        """
        if default_max_attempts < 1:
            raise ValueError("default_max_attempts must be >= 1")

        self._session_factory = session_factory
        self.default_max_attempts = default_max_attempts
        self.default_backoff_delay_seconds = default_backoff_delay_seconds
        self.lease_seconds = lease_seconds
        self._clock = clock
        self.name = name

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any],
        attempts: Optional[int] = None,
        backoff_delay_seconds: Optional[float] = None,
        session: Optional[Session] = None,
    ) -> str:
        """
        Persist a new waiting task.

        Args:
            task_type: Handler tag
            payload: JSON-serializable payload
            attempts: Max attempts (default from queue config)
            backoff_delay_seconds: Base backoff delay (default from queue config)
            session: Join the caller's transaction instead of committing here

        Returns:
            Task ID
        """
        if not task_type:
            raise ValueError("task_type is required")

        max_attempts = attempts if attempts is not None else self.default_max_attempts
        if max_attempts < 1:
            raise ValueError("attempts must be >= 1")

        now = self._now()
        row = SyncTask(
            id=str(uuid.uuid4()),
            task_type=task_type,
            payload=payload or {},
            state=TaskState.WAITING,
            attempts_made=0,
            max_attempts=max_attempts,
            backoff_delay_seconds=(
                backoff_delay_seconds
                if backoff_delay_seconds is not None
                else self.default_backoff_delay_seconds
            ),
            next_run_at=now,
            created_at=now,
            updated_at=now,
        )

        if session is not None:
            session.add(row)
            session.flush()
        else:
            with self._session_factory() as own_session:
                own_session.add(row)
                own_session.commit()

        logger.info("task.enqueued", extra={
            "task_id": row.id,
            "task_type": task_type,
            "max_attempts": max_attempts,
        })
        return row.id

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def lease(self, worker_id: str, lease_seconds: Optional[int] = None) -> Optional[Task]:
        """
        Claim the oldest due task for ``worker_id``.

        Due tasks are waiting tasks whose next_run_at has passed and active
        tasks whose lease expired. Reclaiming an expired lease counts as a
        failed attempt; a task that runs out of attempts this way is failed
        instead of redelivered. A paused queue leases nothing.

        Returns:
            Leased Task, or None if nothing is due or the queue is paused
        """
        lease_seconds = lease_seconds or self.lease_seconds
        now = self._now()

        with self._session_factory() as session:
            control = session.get(QueueControl, self.name)
            if control is not None and control.paused:
                logger.debug("task.lease_paused", extra={"queue": self.name})
                return None

            candidates = (
                session.query(
                    SyncTask.id,
                    SyncTask.state,
                    SyncTask.attempts_made,
                    SyncTask.max_attempts,
                    SyncTask.lease_token,
                )
                .filter(
                    or_(
                        and_(
                            SyncTask.state == TaskState.WAITING,
                            SyncTask.next_run_at <= now,
                        ),
                        and_(
                            SyncTask.state == TaskState.ACTIVE,
                            SyncTask.lease_expires_at < now,
                        ),
                    )
                )
                .order_by(SyncTask.next_run_at.asc(), SyncTask.created_at.asc())
                .limit(_LEASE_SCAN_BATCH)
                .with_for_update(skip_locked=True)
                .all()
            )

            for candidate in candidates:
                task = self._try_claim(session, candidate, worker_id, lease_seconds, now)
                if task is not None:
                    return task

            session.rollback()
            return None

    def _try_claim(
        self,
        session: Session,
        candidate: Any,
        worker_id: str,
        lease_seconds: int,
        now: datetime,
    ) -> Optional[Task]:
        """Conditionally claim one candidate. Returns None if another worker won."""
        expired = candidate.state == TaskState.ACTIVE
        attempts_made = candidate.attempts_made + (1 if expired else 0)

        # Optimistic guard: row must still look exactly like the candidate
        guard = [
            SyncTask.id == candidate.id,
            SyncTask.state == candidate.state,
            SyncTask.attempts_made == candidate.attempts_made,
        ]
        if candidate.lease_token is None:
            guard.append(SyncTask.lease_token.is_(None))
        else:
            guard.append(SyncTask.lease_token == candidate.lease_token)

        if expired and attempts_made >= candidate.max_attempts:
            next_state(candidate.state, TaskEvent.FAIL)
            updated = session.query(SyncTask).filter(*guard).update(
                {
                    SyncTask.state: TaskState.FAILED,
                    SyncTask.attempts_made: attempts_made,
                    SyncTask.last_error: "Lease expired before the task was acknowledged",
                    SyncTask.error_code: "lease_expired",
                    SyncTask.failed_at: now,
                    SyncTask.lease_token: None,
                    SyncTask.lease_expires_at: None,
                    SyncTask.updated_at: now,
                },
                synchronize_session=False,
            )
            session.commit()
            if updated:
                logger.warning("task.failed_lease_expired", extra={
                    "task_id": candidate.id,
                    "attempts_made": attempts_made,
                    "max_attempts": candidate.max_attempts,
                })
            return None

        event = TaskEvent.RECLAIM if expired else TaskEvent.LEASE
        new_state = next_state(candidate.state, event)
        lease_token = uuid.uuid4().hex
        values = {
            SyncTask.state: new_state,
            SyncTask.attempts_made: attempts_made,
            SyncTask.lease_token: lease_token,
            SyncTask.leased_by: worker_id,
            SyncTask.lease_expires_at: now + timedelta(seconds=lease_seconds),
            SyncTask.started_at: now,
            SyncTask.updated_at: now,
        }
        if expired:
            values[SyncTask.last_error] = "Lease expired before the task was acknowledged"
            values[SyncTask.error_code] = "lease_expired"

        updated = session.query(SyncTask).filter(*guard).update(
            values, synchronize_session=False
        )
        session.commit()

        if not updated:
            return None

        row = session.get(SyncTask, candidate.id)
        task = Task.from_row(row)

        log_event = "task.redelivered" if expired else "task.leased"
        logger.info(log_event, extra={
            "task_id": task.id,
            "task_type": task.type,
            "worker_id": worker_id,
            "attempts_made": task.attempts_made,
        })
        return task

    def ack(self, task_id: str, lease_token: Optional[str] = None) -> Task:
        """
        Mark a task completed. Idempotent: terminal tasks are left as they are.

        Args:
            task_id: Task ID
            lease_token: If given, the ack is ignored unless it matches the
                current lease (a worker whose lease was reclaimed is stale)

        Raises:
            TaskNotFoundError: If task not found
        """
        now = self._now()
        with self._session_factory() as session:
            row = self._get_row(session, task_id)

            if row.is_terminal:
                logger.debug("task.ack_ignored", extra={
                    "task_id": task_id, "state": row.state.value,
                })
                return Task.from_row(row)

            if lease_token is not None and row.lease_token != lease_token:
                logger.warning("task.ack_stale_lease", extra={
                    "task_id": task_id,
                    "state": row.state.value,
                })
                return Task.from_row(row)

            row.state = next_state(row.state, TaskEvent.ACK)
            row.completed_at = now
            row.lease_token = None
            row.lease_expires_at = None
            row.updated_at = now
            session.commit()

            logger.info("task.completed", extra={
                "task_id": task_id,
                "task_type": row.task_type,
                "attempts_made": row.attempts_made,
            })
            return Task.from_row(row)

    def fail(
        self,
        task_id: str,
        error: Any,
        retryable: bool = True,
        error_code: Optional[str] = None,
        lease_token: Optional[str] = None,
    ) -> Task:
        """
        Record a failed attempt.

        If retryable and attempts remain, the task goes back to waiting with
        next_run_at = now + base * 2^(attempts_made - 1). Otherwise it is
        failed permanently and kept for inspection.

        Args:
            task_id: Task ID
            error: Exception or message
            retryable: False for permanent failures (no further attempts)
            error_code: Error classification (derived from the exception if omitted)
            lease_token: If given, the failure is ignored unless it matches the
                current lease (a worker whose lease was reclaimed is stale)

        Raises:
            TaskNotFoundError: If task not found
        """
        now = self._now()
        message = str(error) if error is not None else "unknown error"
        if error_code is None and isinstance(error, BaseException):
            error_code = error_code_for(error)

        with self._session_factory() as session:
            row = self._get_row(session, task_id)

            if row.is_terminal:
                logger.debug("task.fail_ignored", extra={
                    "task_id": task_id, "state": row.state.value,
                })
                return Task.from_row(row)

            if lease_token is not None and row.lease_token != lease_token:
                logger.warning("task.fail_stale_lease", extra={
                    "task_id": task_id,
                    "state": row.state.value,
                })
                return Task.from_row(row)

            row.attempts_made += 1
            row.last_error = _truncate(message)
            row.error_code = error_code
            row.lease_token = None
            row.lease_expires_at = None
            row.updated_at = now

            if retryable and row.attempts_made < row.max_attempts:
                delay = backoff_delay(row.backoff_delay_seconds, row.attempts_made)
                row.state = next_state(row.state, TaskEvent.RETRY)
                row.next_run_at = now + timedelta(seconds=delay)
                session.commit()

                logger.info("task.retry_scheduled", extra={
                    "task_id": task_id,
                    "task_type": row.task_type,
                    "attempts_made": row.attempts_made,
                    "max_attempts": row.max_attempts,
                    "delay_seconds": delay,
                    "error_code": error_code,
                })
            else:
                row.state = next_state(row.state, TaskEvent.FAIL)
                row.failed_at = now
                session.commit()

                logger.warning("task.failed", extra={
                    "task_id": task_id,
                    "task_type": row.task_type,
                    "attempts_made": row.attempts_made,
                    "max_attempts": row.max_attempts,
                    "retryable": retryable,
                    "error_code": error_code,
                    "error": row.last_error,
                })

            return Task.from_row(row)

    # ------------------------------------------------------------------
    # Inspection and operator actions
    # ------------------------------------------------------------------

    def _get_row(self, session: Session, task_id: str) -> SyncTask:
        row = session.get(SyncTask, task_id)
        if row is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return row

    def status(self, task_id: str) -> Task:
        """
        Current snapshot of a task.

        Raises:
            TaskNotFoundError: If task not found
        """
        with self._session_factory() as session:
            return Task.from_row(self._get_row(session, task_id))

    def counts(self) -> Dict[str, int]:
        """Number of tasks per state."""
        result = {state.value: 0 for state in TaskState}
        with self._session_factory() as session:
            rows = (
                session.query(SyncTask.state, func.count(SyncTask.id))
                .group_by(SyncTask.state)
                .all()
            )
        for state, count in rows:
            result[TaskState(state).value] = count
        return result

    def list_failed(self, limit: int = 100) -> List[Task]:
        """Failed tasks, most recent first."""
        with self._session_factory() as session:
            rows = (
                session.query(SyncTask)
                .filter(SyncTask.state == TaskState.FAILED)
                .order_by(SyncTask.failed_at.desc())
                .limit(limit)
                .all()
            )
            return [Task.from_row(row) for row in rows]

    def retry_failed(self, task_id: str) -> Task:
        """
        Requeue a failed task with a fresh attempt budget.

        SUPPORT-ONLY: operators use this after fixing the underlying cause.

        Raises:
            TaskNotFoundError: If task not found
            ValueError: If task is not failed
        """
        now = self._now()
        with self._session_factory() as session:
            row = self._get_row(session, task_id)
            if row.state != TaskState.FAILED:
                raise ValueError(
                    f"Task {task_id} is not failed (state: {row.state.value})"
                )

            row.state = next_state(row.state, TaskEvent.REQUEUE)
            row.attempts_made = 0
            row.next_run_at = now
            row.failed_at = None
            row.updated_at = now
            session.commit()

            logger.info("task.requeued", extra={
                "task_id": task_id,
                "task_type": row.task_type,
                "previous_error": row.last_error,
            })
            return Task.from_row(row)

    def remove(self, task_id: str) -> bool:
        """Delete a task. Returns False if it did not exist."""
        with self._session_factory() as session:
            row = session.get(SyncTask, task_id)
            if row is None:
                logger.warning("task.remove_missing", extra={"task_id": task_id})
                return False
            session.delete(row)
            session.commit()
        logger.info("task.removed", extra={"task_id": task_id})
        return True

    def clean(self, older_than_seconds: int = CLEAN_GRACE_PERIOD_SECONDS) -> int:
        """Delete completed and failed tasks last touched before the grace period."""
        cutoff = self._now() - timedelta(seconds=older_than_seconds)
        with self._session_factory() as session:
            removed = (
                session.query(SyncTask)
                .filter(
                    SyncTask.state.in_(TERMINAL_STATES),
                    SyncTask.updated_at < cutoff,
                )
                .delete(synchronize_session=False)
            )
            session.commit()

        logger.info("task.cleaned", extra={
            "removed": removed,
            "older_than_seconds": older_than_seconds,
        })
        return removed

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------

    def pause(self) -> None:
        """
        Stop workers from leasing tasks. Enqueue keeps working.

        Active tasks finish under their current lease. The flag is stored in
        the database, so it holds across worker processes and restarts.
        """
        self._set_paused(True)

    def resume(self) -> None:
        """Let workers lease tasks again."""
        self._set_paused(False)

    def is_paused(self) -> bool:
        with self._session_factory() as session:
            control = session.get(QueueControl, self.name)
            return bool(control is not None and control.paused)

    def _set_paused(self, paused: bool) -> None:
        now = self._now()
        with self._session_factory() as session:
            control = session.get(QueueControl, self.name)
            if control is None:
                control = QueueControl(name=self.name)
                session.add(control)
            control.paused = paused
            control.paused_at = now if paused else None
            control.updated_at = now
            session.commit()

        logger.info("queue.paused" if paused else "queue.resumed", extra={
            "queue": self.name,
        })
