"""
Durable task row backing the task queue.

One row per enqueued task. The queue component is the only writer; workers
see immutable Task snapshots (see catalog_sync.queue.task_queue.Task).

Lifecycle:
    waiting -> active (leased) -> completed
                               -> waiting (rescheduled after backoff)
                               -> failed (permanent or attempts exhausted)
"""

import enum

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, Index, Enum, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB

from catalog_sync.db_base import Base
from catalog_sync.models.base import TimestampMixin, generate_uuid

# Use JSONB for PostgreSQL, JSON for other databases (testing)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class TaskState(str, enum.Enum):
    """Task state enumeration."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (TaskState.COMPLETED, TaskState.FAILED)


class SyncTask(Base, TimestampMixin):
    """
    Persisted queue entry.

    Attributes:
        id: Primary key (UUID), assigned at enqueue
        task_type: Handler tag (e.g. "shopify-webhook", "send-email")
        payload: Task-type-specific JSON payload
        state: waiting | active | completed | failed
        attempts_made: Failed attempts so far
        max_attempts: Attempts allowed before the task fails permanently
        backoff_delay_seconds: Base delay; retry n waits base * 2^n
        next_run_at: Earliest time a waiting task may be leased
        lease_token / leased_by / lease_expires_at: Current lease
        last_error / error_code: Most recent failure
    """

    __tablename__ = "sync_tasks"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    task_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSONType, nullable=False, default=dict)

    state = Column(
        Enum(TaskState),
        nullable=False,
        default=TaskState.WAITING,
        index=True,
    )

    # Retry tracking
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_delay_seconds = Column(Float, nullable=False, default=1.0)
    next_run_at = Column(DateTime(timezone=True), nullable=True)

    # Lease
    lease_token = Column(String(64), nullable=True)
    leased_by = Column(String(255), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Outcome
    last_error = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # Lease scan: due waiting tasks in order
        Index("ix_sync_tasks_state_next_run", "state", "next_run_at"),
        # Expired lease scan
        Index("ix_sync_tasks_state_lease", "state", "lease_expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncTask(id={self.id}, "
            f"type={self.task_type}, "
            f"state={self.state.value if self.state else None}, "
            f"attempts={self.attempts_made}/{self.max_attempts})>"
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
