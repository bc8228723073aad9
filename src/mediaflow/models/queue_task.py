"""
Queue Task Models
Durable scheduling records for the processing queue.
"""

import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, JSON
from sqlalchemy.dialects.postgresql import JSONB

from mediaflow.models.base import Base


class TaskState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


# States that count as outstanding work for an idempotency key
OUTSTANDING_STATES = (
    TaskState.WAITING.value,
    TaskState.ACTIVE.value,
    TaskState.DELAYED.value,
)


class QueueTask(Base):
    """
    One schedulable unit of work. The primary key is the idempotency key,
    so at most one row (and therefore one outstanding task) exists per key.
    """

    __tablename__ = "media_queue_tasks"
    __table_args__ = (
        Index(
            "ix_media_queue_tasks_queue",
            "state",
            "scheduled_at",
            "priority",
            "created_at",
        ),
    )

    id = Column(String(120), primary_key=True)
    queue_name = Column(String(64), nullable=False, index=True)
    task_name = Column(String(64), nullable=False)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)

    state = Column(String(20), nullable=False, default=TaskState.WAITING.value)
    priority = Column(Integer, nullable=False, default=10)  # Lower is more urgent
    progress = Column(Integer, nullable=False, default=0)

    worker_id = Column(String(100), nullable=True)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    scheduled_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
