"""
QueueControl model: operator switches for a task queue.

One row per queue name. A paused queue still accepts enqueues; workers lease
nothing from it until it is resumed. The row is created on first pause.
"""

from sqlalchemy import Column, String, Boolean, DateTime

from catalog_sync.db_base import Base
from catalog_sync.models.base import utcnow


class QueueControl(Base):
    """Persisted pause flag for a queue."""

    __tablename__ = "queue_controls"

    name = Column(String(100), primary_key=True, comment="Queue name")

    paused = Column(Boolean, nullable=False, default=False)
    paused_at = Column(DateTime(timezone=True), nullable=True)

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<QueueControl(name={self.name}, paused={self.paused})>"
