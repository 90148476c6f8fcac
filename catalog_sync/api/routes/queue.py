"""
Queue operations API.

Operator endpoints for inspecting and repairing the sync task queue:
- GET    /api/queue/status             task totals per state
- GET    /api/queue/tasks/{id}         one task
- GET    /api/queue/failed             failed tasks, newest first
- POST   /api/queue/tasks/{id}/retry   requeue a failed task
- DELETE /api/queue/tasks/{id}         remove a task
- POST   /api/queue/pause              stop workers leasing tasks
- POST   /api/queue/resume             let workers lease tasks again
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from catalog_sync.api.dependencies import get_container
from catalog_sync.api.schemas.task import (
    QueueStatusResponse,
    TaskListResponse,
    TaskResponse,
)
from catalog_sync.container import ServiceContainer
from catalog_sync.queue.task_queue import TaskNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/queue", tags=["queue"])


@router.get("/status", response_model=QueueStatusResponse)
async def get_queue_status(container: ServiceContainer = Depends(get_container)):
    """Task totals per state."""
    return QueueStatusResponse(
        **container.queue.counts(),
        paused=container.queue.is_paused(),
    )


@router.get(
    "/tasks/{task_id}",
    response_model=TaskResponse,
    responses={404: {"description": "Task not found"}},
)
async def get_task(task_id: str, container: ServiceContainer = Depends(get_container)):
    try:
        task = container.queue.status(task_id)
    except TaskNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id} not found",
        )
    return TaskResponse.from_task(task)


@router.get("/failed", response_model=TaskListResponse)
async def list_failed_tasks(
    limit: int = Query(100, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
):
    tasks = container.queue.list_failed(limit=limit)
    return TaskListResponse(
        tasks=[TaskResponse.from_task(t) for t in tasks],
        total=len(tasks),
    )


@router.post(
    "/tasks/{task_id}/retry",
    response_model=TaskResponse,
    responses={
        404: {"description": "Task not found"},
        409: {"description": "Task is not failed"},
    },
)
async def retry_task(task_id: str, container: ServiceContainer = Depends(get_container)):
    """Requeue a failed task with a fresh attempt budget."""
    try:
        task = container.queue.retry_failed(task_id)
    except TaskNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id} not found",
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.info("Task requeued via API", extra={"task_id": task_id})
    return TaskResponse.from_task(task)


@router.delete(
    "/tasks/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"description": "Task not found"}},
)
async def remove_task(task_id: str, container: ServiceContainer = Depends(get_container)):
    if not container.queue.remove(task_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id} not found",
        )


@router.post("/pause", response_model=QueueStatusResponse)
async def pause_queue(container: ServiceContainer = Depends(get_container)):
    """Stop workers leasing tasks. Webhooks are still accepted and queued."""
    container.queue.pause()
    logger.info("Queue paused via API")
    return QueueStatusResponse(**container.queue.counts(), paused=True)


@router.post("/resume", response_model=QueueStatusResponse)
async def resume_queue(container: ServiceContainer = Depends(get_container)):
    container.queue.resume()
    logger.info("Queue resumed via API")
    return QueueStatusResponse(**container.queue.counts(), paused=False)
