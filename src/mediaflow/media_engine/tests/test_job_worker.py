import time
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mediaflow.exceptions.handlers import TransientIOError, UnsupportedFormatError
from mediaflow.media_engine.events import (
    TaskActiveEvent,
    TaskCompletedEvent,
    TaskFailedEvent,
)
from mediaflow.media_engine.services.job_errors import JobFatalError
from mediaflow.media_engine.services.job_worker import JobWorker, WorkerOptions
from mediaflow.media_engine.services.queue_service import ProcessingQueue, QueueOptions
from mediaflow.models.base import Base
from mediaflow.models.queue_task import QueueTask, TaskState


def _session_factory(url: str = "sqlite://"):
    if url == "sqlite://":
        engine = create_engine(
            url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    else:
        engine = create_engine(url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine, tables=[QueueTask.__table__])
    return sessionmaker(bind=engine, expire_on_commit=False)


QUEUE_OPTIONS = QueueOptions(name="media-processing", backoff_seconds=2, max_attempts=3)


def _worker(factory, **options) -> JobWorker:
    return JobWorker(
        "w1",
        factory,
        options=WorkerOptions(**options),
        queue_options=QUEUE_OPTIONS,
    )


def _enqueue(factory, handle: str = "media-a1", task_name: str = "process-media") -> None:
    session = factory()
    try:
        ProcessingQueue(session, QUEUE_OPTIONS).enqueue(
            task_name, {"asset_id": handle[len("media-"):], "mime_type": "image/png"}, handle
        )
    finally:
        session.close()


def _task(factory, handle: str = "media-a1") -> QueueTask:
    session = factory()
    try:
        return session.get(QueueTask, handle)
    finally:
        session.close()


def test_run_once_completes_task_and_publishes_events():
    factory = _session_factory()
    worker = _worker(factory)
    seen = []
    worker.register_handler("process-media", lambda payload: {"ok": payload["asset_id"]})
    worker.subscribe(seen.append)
    _enqueue(factory)

    assert worker.run_once() is True

    assert _task(factory).state == TaskState.COMPLETED.value
    assert [type(e) for e in seen] == [TaskActiveEvent, TaskCompletedEvent]
    assert seen[0].task_id == "media-a1"
    assert seen[0].asset_id == "a1"
    assert seen[1].result_keys == ["ok"]
    assert worker.run_once() is False


def test_subscription_can_be_cancelled():
    factory = _session_factory()
    worker = _worker(factory)
    worker.register_handler("process-media", lambda payload: None)
    seen = []
    subscription = worker.subscribe(seen.append, TaskCompletedEvent)
    subscription.unsubscribe()
    _enqueue(factory)

    worker.run_once()
    assert seen == []


def test_failing_subscriber_does_not_break_processing():
    factory = _session_factory()
    worker = _worker(factory)
    worker.register_handler("process-media", lambda payload: None)

    def _explode(event):
        raise RuntimeError("listener failure")

    worker.subscribe(_explode)
    _enqueue(factory)

    assert worker.run_once() is True
    assert _task(factory).state == TaskState.COMPLETED.value


def test_transient_failure_is_retried_with_backoff():
    factory = _session_factory()
    worker = _worker(factory)
    failures = []
    worker.subscribe(failures.append, TaskFailedEvent)

    def _handler(payload):
        raise TransientIOError("store unavailable")

    worker.register_handler("process-media", _handler)
    _enqueue(factory)

    worker.run_once()

    task = _task(factory)
    assert task.state == TaskState.DELAYED.value
    assert task.attempts_made == 1
    assert task.last_error == "store unavailable"
    assert failures[0].will_retry is True


@pytest.mark.parametrize(
    "error",
    [UnsupportedFormatError("bad image", format="svg"), JobFatalError("asset gone")],
)
def test_fatal_failure_dead_letters_immediately(error):
    factory = _session_factory()
    worker = _worker(factory)
    failures = []
    worker.subscribe(failures.append, TaskFailedEvent)

    def _handler(payload):
        raise error

    worker.register_handler("process-media", _handler)
    _enqueue(factory)

    worker.run_once()

    task = _task(factory)
    assert task.state == TaskState.FAILED.value
    assert task.attempts_made == 1
    assert failures[0].will_retry is False


def test_missing_handler_fails_task():
    factory = _session_factory()
    worker = _worker(factory)
    _enqueue(factory, task_name="unknown-task")

    worker.run_once()

    task = _task(factory)
    assert task.state == TaskState.FAILED.value
    assert "No handler registered" in task.last_error


def test_handler_receives_session_and_task_id():
    factory = _session_factory()
    worker = _worker(factory)
    calls = []

    def _handler(payload, session, task_id):
        calls.append((payload["asset_id"], session is not None, task_id))

    worker.register_handler("process-media", _handler)
    _enqueue(factory)

    worker.run_once()
    assert calls == [("a1", True, "media-a1")]


def test_draining_worker_releases_claimed_task():
    factory = _session_factory()
    worker = _worker(factory)
    handled = []
    worker.register_handler("process-media", handled.append)
    _enqueue(factory)

    session = factory()
    queue = ProcessingQueue(session, QUEUE_OPTIONS)
    task = queue.poll_next_task("w1")
    worker._draining.set()
    worker._execute_task(task, queue, "w1")
    session.close()

    released = _task(factory)
    assert handled == []
    assert released.state == TaskState.WAITING.value
    assert released.attempts_made == 0
    assert worker.run_once() is False


@pytest.mark.threaded
def test_start_and_stop_process_tasks_in_background(tmp_path):
    factory = _session_factory(f"sqlite:///{tmp_path / 'queue.db'}")
    worker = _worker(factory, concurrency=2, poll_interval=0.05, grace_period_seconds=5)
    worker.register_handler("process-media", lambda payload: {"done": True})
    _enqueue(factory, "media-a1")
    _enqueue(factory, "media-a2")

    worker.start()
    try:
        deadline = time.time() + 10
        while time.time() < deadline:
            states = {_task(factory, h).state for h in ("media-a1", "media-a2")}
            if states == {TaskState.COMPLETED.value}:
                break
            time.sleep(0.05)
    finally:
        worker.stop()

    assert _task(factory, "media-a1").state == TaskState.COMPLETED.value
    assert _task(factory, "media-a2").state == TaskState.COMPLETED.value
    assert worker.draining is True


def test_result_is_discarded_after_claim_is_reclaimed(tmp_path):
    factory = _session_factory(f"sqlite:///{tmp_path / 'queue.db'}")
    worker = _worker(factory)
    seen = []
    worker.subscribe(seen.append)

    def _overrunning_handler(payload, session, task_id):
        other = factory()
        try:
            queue = ProcessingQueue(other, QUEUE_OPTIONS)
            task = other.get(QueueTask, task_id)
            task.started_at = datetime.utcnow() - timedelta(hours=1)
            other.commit()
            assert queue.requeue_stale_tasks() == 1
            task = other.get(QueueTask, task_id, populate_existing=True)
            task.scheduled_at = datetime.utcnow() - timedelta(seconds=1)
            other.commit()
            assert queue.claim(task_id, "w2")
        finally:
            other.close()
        return {"ok": True}

    worker.register_handler("process-media", _overrunning_handler)
    _enqueue(factory)

    worker.run_once()

    task = _task(factory)
    assert task.state == TaskState.ACTIVE.value
    assert task.worker_id == "w2"
    assert not any(isinstance(e, TaskCompletedEvent) for e in seen)
