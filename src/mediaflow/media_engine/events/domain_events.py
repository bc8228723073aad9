"""
Lifecycle events emitted by the queue worker.
One event per task transition; subscribers receive them synchronously.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class DomainEvent(BaseModel):
    """Base class for all lifecycle events."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TaskEvent(DomainEvent):
    task_id: str
    task_name: str
    worker_id: str
    attempt: int = 0
    asset_id: Optional[str] = None


class TaskActiveEvent(TaskEvent):
    event_type: str = "task.active"


class TaskCompletedEvent(TaskEvent):
    event_type: str = "task.completed"
    result_keys: Optional[list] = None


class TaskFailedEvent(TaskEvent):
    event_type: str = "task.failed"
    error: str
    will_retry: bool = False
