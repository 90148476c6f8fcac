"""
Database models for the task queue, its operator controls and webhook receipts.
"""

from catalog_sync.models.base import TimestampMixin
from catalog_sync.models.queue_control import QueueControl
from catalog_sync.models.sync_task import SyncTask, TaskState, TERMINAL_STATES
from catalog_sync.models.webhook_receipt import WebhookReceipt

__all__ = [
    "TimestampMixin",
    "QueueControl",
    "SyncTask",
    "TaskState",
    "TERMINAL_STATES",
    "WebhookReceipt",
]
