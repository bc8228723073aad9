"""
Processing Queue
Durable, retryable task queue backed by the relational store.

Each task row is keyed by its idempotency key, which doubles as the task
handle returned to callers.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import asc, case, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mediaflow.config import get_settings
from mediaflow.config.settings import Settings
from mediaflow.exceptions.handlers import InvalidStateError, NotFoundError
from mediaflow.models.queue_task import OUTSTANDING_STATES, QueueTask, TaskState

logger = logging.getLogger(__name__)

PRIORITY_IMAGE = 1
PRIORITY_DOCUMENT = 5
PRIORITY_OTHER = 10

DOCUMENT_MIME_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
}

_CLAIMABLE_STATES = (TaskState.WAITING.value, TaskState.DELAYED.value)
_POLL_CANDIDATES = 5


def mime_category(mime_type: Optional[str]) -> str:
    mime = (mime_type or "").lower()
    if mime.startswith("image/"):
        return "image"
    if mime in DOCUMENT_MIME_TYPES or "pdf" in mime:
        return "document"
    return "other"


def priority_for_mime(mime_type: Optional[str]) -> int:
    return {
        "image": PRIORITY_IMAGE,
        "document": PRIORITY_DOCUMENT,
    }.get(mime_category(mime_type), PRIORITY_OTHER)


@dataclass
class QueueOptions:
    name: str = "media-processing"
    max_attempts: int = 3
    backoff_seconds: float = 2
    keep_completed: int = 100
    keep_failed: int = 50
    lock_timeout_seconds: int = 600

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "QueueOptions":
        settings = settings or get_settings()
        return cls(
            name=settings.QUEUE_NAME,
            max_attempts=settings.QUEUE_MAX_ATTEMPTS,
            backoff_seconds=settings.QUEUE_BACKOFF_SECONDS,
            keep_completed=settings.QUEUE_KEEP_COMPLETED,
            keep_failed=settings.QUEUE_KEEP_FAILED,
            lock_timeout_seconds=settings.QUEUE_LOCK_TIMEOUT_SECONDS,
        )


@dataclass
class TaskStatus:
    id: str
    name: str
    state: str
    progress: int
    attempts_made: int
    retry_count: int
    max_attempts: int
    last_error: Optional[str]
    created_at: Optional[datetime]
    scheduled_at: Optional[datetime]
    processed_on: Optional[datetime]
    finished_on: Optional[datetime]
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_task(cls, task: QueueTask) -> "TaskStatus":
        return cls(
            id=task.id,
            name=task.task_name,
            state=task.state,
            progress=task.progress or 0,
            attempts_made=task.attempts_made or 0,
            retry_count=task.retry_count or 0,
            max_attempts=task.max_attempts,
            last_error=task.last_error,
            created_at=task.created_at,
            scheduled_at=task.scheduled_at,
            processed_on=task.started_at,
            finished_on=task.finished_at,
            data=dict(task.payload or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "name": self.name,
            "state": self.state,
            "progress": self.progress,
            "attempts_made": self.attempts_made,
            "retry_count": self.retry_count,
            "max_attempts": self.max_attempts,
            "failed_reason": self.last_error,
            "timestamp": _iso(self.created_at),
            "scheduled_at": _iso(self.scheduled_at),
            "processed_on": _iso(self.processed_on),
            "finished_on": _iso(self.finished_on),
            "data": self.data,
        }


class ProcessingQueue:
    def __init__(self, session: Session, options: Optional[QueueOptions] = None):
        self.session = session
        self.options = options or QueueOptions.from_settings()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        task_name: str,
        payload: Dict[str, Any],
        idempotency_key: str,
        *,
        priority: Optional[int] = None,
    ) -> QueueTask:
        """
        Submit a task under an idempotency key.

        While a task with the same key is waiting, active or delayed the call
        is a no-op and the existing task is returned. A finished task under
        the key is reset for a fresh cycle.
        """
        existing = self.session.get(QueueTask, idempotency_key)
        if existing is not None and existing.state in OUTSTANDING_STATES:
            logger.info(
                "Task %s already %s; enqueue is a no-op",
                idempotency_key,
                existing.state,
                extra={"task_id": idempotency_key},
            )
            return existing

        if priority is None:
            priority = priority_for_mime((payload or {}).get("mime_type"))

        now = datetime.utcnow()
        if existing is not None:
            self._reset(existing, task_name, payload, priority, now)
            task = existing
        else:
            task = QueueTask(
                id=idempotency_key,
                queue_name=self.options.name,
                task_name=task_name,
                payload=dict(payload or {}),
                state=TaskState.WAITING.value,
                priority=priority,
                progress=0,
                attempts_made=0,
                retry_count=0,
                max_attempts=self.options.max_attempts,
                created_at=now,
                scheduled_at=now,
            )
            self.session.add(task)

        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent producer inserted the same key first
            self.session.rollback()
            winner = self.session.get(QueueTask, idempotency_key)
            if winner is None:
                raise
            return winner

        logger.info(
            "Task %s enqueued (%s, priority=%s)",
            task.id,
            task_name,
            priority,
            extra={"task_id": task.id},
        )
        return task

    def _reset(
        self,
        task: QueueTask,
        task_name: str,
        payload: Dict[str, Any],
        priority: int,
        now: datetime,
    ) -> None:
        task.queue_name = self.options.name
        task.task_name = task_name
        task.payload = dict(payload or {})
        task.state = TaskState.WAITING.value
        task.priority = priority
        task.progress = 0
        task.worker_id = None
        task.attempts_made = 0
        task.retry_count = 0
        task.max_attempts = self.options.max_attempts
        task.last_error = None
        task.created_at = now
        task.scheduled_at = now
        task.started_at = None
        task.finished_at = None

    # ------------------------------------------------------------------
    # Inspection and operator commands
    # ------------------------------------------------------------------

    def get_task(self, handle: str) -> Optional[QueueTask]:
        return self.session.get(QueueTask, handle)

    def _require(self, handle: str) -> QueueTask:
        task = self.get_task(handle)
        if task is None:
            raise NotFoundError("Job", handle)
        return task

    def get_status(self, handle: str) -> TaskStatus:
        return TaskStatus.from_task(self._require(handle))

    def retry(self, handle: str) -> QueueTask:
        """Re-run a failed task; attempts_made is kept, one more attempt is allowed."""
        task = self._require(handle)
        if task.state != TaskState.FAILED.value:
            raise InvalidStateError(
                f"Job {handle} cannot be retried from state {task.state}",
                current=task.state,
                expected=TaskState.FAILED.value,
            )
        now = datetime.utcnow()
        task.state = TaskState.WAITING.value
        task.retry_count = (task.retry_count or 0) + 1
        task.worker_id = None
        task.scheduled_at = now
        task.started_at = None
        task.finished_at = None
        self.session.add(task)
        self.session.commit()
        logger.info(
            "Task %s retried (retry_count=%s)",
            handle,
            task.retry_count,
            extra={"task_id": handle},
        )
        return task

    def remove(self, handle: str) -> None:
        task = self._require(handle)
        self.session.delete(task)
        self.session.commit()
        logger.info("Task %s removed", handle, extra={"task_id": handle})

    def stats(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in TaskState}
        rows = (
            self.session.query(QueueTask.state, func.count(QueueTask.id))
            .filter(QueueTask.queue_name == self.options.name)
            .group_by(QueueTask.state)
            .all()
        )
        for state, count in rows:
            counts[state] = count
        return counts

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def poll_next_task(self, worker_id: str) -> Optional[QueueTask]:
        """
        Finds the next due task and claims it for this worker.

        Uses FOR UPDATE SKIP LOCKED on PostgreSQL; elsewhere the conditional
        UPDATE in claim() is what keeps two workers from taking one task.
        """
        dialect = self.session.get_bind().dialect.name
        now = datetime.utcnow()

        query = (
            self.session.query(QueueTask.id)
            .filter(
                QueueTask.queue_name == self.options.name,
                QueueTask.state.in_(_CLAIMABLE_STATES),
                QueueTask.scheduled_at <= now,
            )
            .order_by(asc(QueueTask.created_at), asc(QueueTask.priority))
            .limit(_POLL_CANDIDATES)
        )
        if dialect == "postgresql":
            query = query.with_for_update(skip_locked=True)

        candidates = [row[0] for row in query.all()]
        for handle in candidates:
            if self.claim(handle, worker_id):
                return self.session.get(QueueTask, handle, populate_existing=True)
        if candidates:
            logger.debug(
                "Worker '%s' lost every claim race for %s", worker_id, candidates
            )
        self.session.commit()
        return None

    def claim(self, handle: str, worker_id: str) -> bool:
        """Compare-and-set a due task to active. Exactly one caller wins."""
        now = datetime.utcnow()
        result = self.session.execute(
            update(QueueTask)
            .where(
                QueueTask.id == handle,
                QueueTask.state.in_(_CLAIMABLE_STATES),
                QueueTask.scheduled_at <= now,
            )
            .values(
                state=TaskState.ACTIVE.value,
                worker_id=worker_id,
                started_at=now,
                attempts_made=QueueTask.attempts_made + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        won = result.rowcount == 1
        if won:
            logger.debug(
                "Worker '%s' claimed task %s", worker_id, handle, extra={"task_id": handle}
            )
        return won

    def complete_task(
        self, handle: str, *, worker_id: Optional[str] = None
    ) -> Optional[QueueTask]:
        """
        Mark an active task completed.

        When ``worker_id`` is given the task must still be held by that
        worker; a lost claim (for example after a stale reclaim) is ignored.
        """
        task = self.session.get(QueueTask, handle, populate_existing=True)
        if task is None:
            logger.warning("Completed task %s no longer exists", handle)
            return None
        values = {
            "state": TaskState.COMPLETED.value,
            "progress": 100,
            "finished_at": datetime.utcnow(),
            "last_error": None,
        }
        if not self._settle(handle, worker_id, values):
            return None
        self._prune(TaskState.COMPLETED.value, self.options.keep_completed)
        self.session.commit()
        return task

    def fail_task(
        self,
        handle: str,
        error: str,
        *,
        retry: bool = True,
        worker_id: Optional[str] = None,
    ) -> Optional[QueueTask]:
        """Record a failed attempt, scheduling a delayed retry while attempts remain."""
        task = self.session.get(QueueTask, handle, populate_existing=True)
        if task is None:
            logger.warning("Failed task %s no longer exists", handle)
            return None

        now = datetime.utcnow()
        values: Dict[str, Any] = {"last_error": str(error), "worker_id": None}
        if retry and task.attempts_made < self.attempt_allowance(task):
            delay = self.backoff_delay(task.attempts_made)
            values.update(
                state=TaskState.DELAYED.value if delay else TaskState.WAITING.value,
                scheduled_at=now + timedelta(seconds=delay),
                started_at=None,
                finished_at=None,
            )
            logger.info(
                "Task %s attempt %s failed; retrying in %ss",
                handle,
                task.attempts_made,
                delay,
                extra={"task_id": handle, "attempt": task.attempts_made},
            )
        else:
            values.update(state=TaskState.FAILED.value, finished_at=now)

        if not self._settle(handle, worker_id, values):
            return None
        if values["state"] == TaskState.FAILED.value:
            self._prune(TaskState.FAILED.value, self.options.keep_failed)
        self.session.commit()
        return task

    def release_task(self, handle: str, *, worker_id: Optional[str] = None) -> None:
        """Hand an active task back to the queue without consuming an attempt."""
        values = {
            "state": TaskState.WAITING.value,
            "worker_id": None,
            "started_at": None,
            "attempts_made": case(
                (QueueTask.attempts_made > 0, QueueTask.attempts_made - 1), else_=0
            ),
        }
        if self._settle(handle, worker_id, values):
            self.session.commit()

    def _settle(self, handle: str, holder: Optional[str], values: Dict[str, Any]) -> bool:
        # Only the current holder of an active task may settle it
        criteria = [QueueTask.id == handle, QueueTask.state == TaskState.ACTIVE.value]
        if holder is not None:
            criteria.append(QueueTask.worker_id == holder)
        result = self.session.execute(
            update(QueueTask)
            .where(*criteria)
            .values(updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 1:
            self.session.flush()
            return True
        self.session.rollback()
        logger.warning(
            "Task %s is no longer active for %s; settlement ignored",
            handle,
            holder or "any worker",
            extra={"task_id": handle, "worker_id": holder},
        )
        return False

    def update_progress(self, handle: str, progress: int) -> None:
        task = self.get_task(handle)
        if task is None:
            return
        task.progress = max(0, min(int(progress), 100))
        self.session.add(task)
        self.session.commit()

    def requeue_stale_tasks(self) -> int:
        """Reclaim active tasks whose worker went away past the lock timeout."""
        timeout = self.options.lock_timeout_seconds
        if timeout <= 0:
            return 0
        now = datetime.utcnow()
        cutoff = now - timedelta(seconds=timeout)
        stale_tasks = (
            self.session.query(QueueTask)
            .filter(
                QueueTask.queue_name == self.options.name,
                QueueTask.state == TaskState.ACTIVE.value,
                QueueTask.started_at.isnot(None),
                QueueTask.started_at < cutoff,
            )
            .all()
        )
        if not stale_tasks:
            return 0
        for task in stale_tasks:
            task.worker_id = None
            task.started_at = None
            if task.attempts_made < self.attempt_allowance(task):
                delay = self.backoff_delay(task.attempts_made)
                task.state = TaskState.DELAYED.value if delay else TaskState.WAITING.value
                task.scheduled_at = now + timedelta(seconds=delay)
                task.last_error = "stale_timeout_requeued"
            else:
                task.state = TaskState.FAILED.value
                task.finished_at = now
                task.last_error = "stale_timeout_failed"
        self.session.add_all(stale_tasks)
        self.session.commit()
        return len(stale_tasks)

    # ------------------------------------------------------------------
    # Policy helpers
    # ------------------------------------------------------------------

    @staticmethod
    def attempt_allowance(task: QueueTask) -> int:
        # Each operator retry grants one more attempt on top of max_attempts
        return (task.max_attempts or 0) + (task.retry_count or 0)

    def backoff_delay(self, attempts_made: int) -> float:
        base = max(self.options.backoff_seconds, 0)
        if not base:
            return 0
        return base * (2 ** max(attempts_made - 1, 0))

    def _prune(self, state: str, keep: int) -> int:
        if keep < 0:
            return 0
        stale_ids = [
            row[0]
            for row in self.session.query(QueueTask.id)
            .filter(QueueTask.queue_name == self.options.name, QueueTask.state == state)
            .order_by(QueueTask.finished_at.desc(), QueueTask.id.desc())
            .offset(keep)
            .all()
        ]
        if not stale_ids:
            return 0
        self.session.query(QueueTask).filter(QueueTask.id.in_(stale_ids)).delete(
            synchronize_session="fetch"
        )
        logger.debug("Pruned %s %s task(s)", len(stale_ids), state)
        return len(stale_ids)
