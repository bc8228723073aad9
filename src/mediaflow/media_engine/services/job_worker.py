"""
Job Worker
Polls the processing queue and executes registered task handlers.
"""

import contextvars
import inspect
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generator, List, Optional, Type

from sqlalchemy.orm import Session, sessionmaker

from mediaflow.config import get_settings
from mediaflow.config.settings import Settings
from mediaflow.media_engine.events import (
    DomainEvent,
    EventBus,
    Subscription,
    TaskActiveEvent,
    TaskCompletedEvent,
    TaskFailedEvent,
)
from mediaflow.media_engine.services.job_errors import is_fatal
from mediaflow.media_engine.services.queue_service import ProcessingQueue, QueueOptions
from mediaflow.models.queue_task import QueueTask, TaskState

logger = logging.getLogger(__name__)

TaskHandler = Callable[..., Any]


@dataclass
class WorkerOptions:
    concurrency: int = 1
    poll_interval: float = 1.0
    grace_period_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "WorkerOptions":
        settings = settings or get_settings()
        return cls(
            concurrency=settings.WORKER_CONCURRENCY,
            poll_interval=settings.WORKER_POLL_INTERVAL_SECONDS,
            grace_period_seconds=settings.WORKER_SHUTDOWN_GRACE_SECONDS,
        )


class JobWorker:
    def __init__(
        self,
        worker_id: str,
        session_factory: Optional[sessionmaker] = None,
        *,
        options: Optional[WorkerOptions] = None,
        queue_options: Optional[QueueOptions] = None,
        handlers: Optional[Dict[str, TaskHandler]] = None,
    ):
        self.worker_id = worker_id
        self.options = options or WorkerOptions.from_settings()
        self.queue_options = queue_options or QueueOptions.from_settings()
        self._session_factory = session_factory
        self.task_handlers: Dict[str, TaskHandler] = dict(handlers or {})
        self.events = EventBus()
        self._running = False
        self._draining = threading.Event()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def draining(self) -> bool:
        return self._draining.is_set()

    def register_handler(self, task_name: str, handler: TaskHandler) -> None:
        """Registers a handler function for a specific task name."""
        self.task_handlers[task_name] = handler
        logger.info(
            f"Worker '{self.worker_id}' registered handler for task: {task_name}"
        )

    def subscribe(
        self,
        handler: Callable[[DomainEvent], None],
        event_type: Type[DomainEvent] = DomainEvent,
    ) -> Subscription:
        return self.events.subscribe(handler, event_type)

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        factory = self._session_factory
        if factory is None:
            from mediaflow.database import SessionLocal

            factory = SessionLocal
        session = factory()
        try:
            yield session
        finally:
            session.close()

    def run_once(self, worker_id: Optional[str] = None) -> bool:
        """Polls and processes one task in the current thread. Returns True if a task was processed."""
        worker_id = worker_id or self.worker_id
        try:
            with self._session() as session:
                queue = ProcessingQueue(session, self.queue_options)
                requeued = queue.requeue_stale_tasks()
                if requeued:
                    logger.warning(
                        "Worker '%s' requeued %s stale task(s)", worker_id, requeued
                    )
                if self.draining:
                    return False
                task = queue.poll_next_task(worker_id)
                if task is None:
                    return False
                logger.info(
                    f"Worker '{worker_id}' picked up task {task.id} ({task.task_name})"
                )
                self._execute_task(task, queue, worker_id)
                return True
        except Exception as e:
            logger.error(f"Worker '{worker_id}' error in run_once: {e}", exc_info=True)
        return False

    def start(self) -> None:
        """Starts the polling threads."""
        if self._running:
            logger.warning(f"Worker '{self.worker_id}' is already running.")
            return

        concurrency = max(int(self.options.concurrency), 1)
        logger.info(
            f"Worker '{self.worker_id}' starting with concurrency {concurrency}..."
        )
        self._running = True
        self._draining.clear()
        self._stop_event.clear()
        self._threads = []
        for index in range(concurrency):
            slot_id = self.worker_id if concurrency == 1 else f"{self.worker_id}:{index}"
            ctx = contextvars.copy_context()
            thread = threading.Thread(
                target=ctx.run,
                args=(self._run_loop, slot_id),
                name=f"Worker-{slot_id}-Loop",
            )
            thread.start()
            self._threads.append(thread)

    def _run_loop(self, worker_id: str) -> None:
        while not self._stop_event.is_set():
            processed = self.run_once(worker_id)
            if not processed:
                self._stop_event.wait(self.options.poll_interval)

    def stop(self) -> None:
        """
        Drains the worker: no new claims, in-flight tasks get the grace
        period to finish. Tasks still running afterwards are abandoned and
        reclaimed by the queue's lock timeout.
        """
        if not self._running:
            logger.warning(f"Worker '{self.worker_id}' is not running.")
            return

        logger.info(f"Worker '{self.worker_id}' draining...")
        self._draining.set()
        self._stop_event.set()

        grace = max(self.options.grace_period_seconds, 0)
        for thread in self._threads:
            thread.join(timeout=grace)
            if thread.is_alive():
                logger.warning(
                    f"Worker thread {thread.name} still busy after {grace}s grace; "
                    "its task will be reclaimed after the lock timeout."
                )
        self._threads = []
        self._running = False
        logger.info(f"Worker '{self.worker_id}' stopped.")

    def _invoke(self, handler: TaskHandler, task: QueueTask, session: Session) -> Any:
        # Handlers may take (payload), (payload, session) or (payload, session, task_id)
        payload = dict(task.payload or {})
        try:
            params = list(inspect.signature(handler).parameters.values())
        except (TypeError, ValueError):
            return handler(payload)
        if len(params) >= 3:
            return handler(payload, session, task.id)
        if len(params) >= 2:
            return handler(payload, session)
        return handler(payload)

    def _execute_task(self, task: QueueTask, queue: ProcessingQueue, worker_id: str) -> None:
        """Executes a single claimed task and settles it on the queue."""
        payload = dict(task.payload or {})
        ctx = {
            "task_id": task.id,
            "task_name": task.task_name,
            "worker_id": worker_id,
            "attempt": task.attempts_made,
            "asset_id": payload.get("asset_id"),
        }

        if self.draining:
            queue.release_task(task.id, worker_id=worker_id)
            logger.info(
                "Worker '%s' is draining; released task %s", worker_id, task.id, extra=ctx
            )
            return

        handler = self.task_handlers.get(task.task_name)
        if handler is None:
            error_msg = f"No handler registered for task: {task.task_name}"
            logger.error(error_msg, extra=ctx)
            queue.fail_task(task.id, error_msg, retry=False, worker_id=worker_id)
            self.events.publish(TaskFailedEvent(**ctx, error=error_msg))
            return

        self.events.publish(TaskActiveEvent(**ctx))
        try:
            result = self._invoke(handler, task, queue.session)
        except Exception as e:
            queue.session.rollback()
            fatal = is_fatal(e)
            error_msg = str(e) or type(e).__name__
            logger.error(
                "Task %s attempt %s failed%s: %s",
                task.id,
                task.attempts_made,
                " (fatal)" if fatal else "",
                error_msg,
                exc_info=True,
                extra={**ctx, "error": error_msg},
            )
            settled = queue.fail_task(
                task.id, error_msg, retry=not fatal, worker_id=worker_id
            )
            will_retry = settled is not None and settled.state != TaskState.FAILED.value
            self.events.publish(
                TaskFailedEvent(**ctx, error=error_msg, will_retry=will_retry)
            )
            return

        if queue.complete_task(task.id, worker_id=worker_id) is None:
            logger.warning(
                "Worker '%s' finished task %s after losing it; result discarded",
                worker_id,
                task.id,
                extra=ctx,
            )
            return
        result_keys = sorted(result.keys()) if isinstance(result, dict) else None
        logger.info(
            "Worker '%s' completed task %s result_keys=%s",
            worker_id,
            task.id,
            result_keys,
            extra=ctx,
        )
        self.events.publish(TaskCompletedEvent(**ctx, result_keys=result_keys))
