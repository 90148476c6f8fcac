"""
Pydantic schemas for the queue operations API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from catalog_sync.queue.task_queue import Task


class TaskResponse(BaseModel):
    """Snapshot of one queued task."""
    id: str
    type: str
    state: str = Field(..., description="waiting, active, completed or failed")
    attempts_made: int
    max_attempts: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    next_run_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            type=task.type,
            state=task.state.value,
            attempts_made=task.attempts_made,
            max_attempts=task.max_attempts,
            payload=task.payload,
            next_run_at=task.next_run_at,
            lease_expires_at=task.lease_expires_at,
            last_error=task.last_error,
            error_code=task.error_code,
            created_at=task.created_at,
            completed_at=task.completed_at,
            failed_at=task.failed_at,
        )


class QueueStatusResponse(BaseModel):
    """Task totals per state and whether workers are paused."""
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    paused: bool = False


class TaskListResponse(BaseModel):
    tasks: List[TaskResponse]
    total: int
