from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mediaflow.exceptions.handlers import InvalidStateError, NotFoundError, PermissionError
from mediaflow.media_engine.services.job_record_service import JobRecordService
from mediaflow.media_engine.services.jobs_service import MediaJobsService, media_job_id
from mediaflow.media_engine.services.queue_service import QueueOptions
from mediaflow.models.asset import Asset, AssetStatus
from mediaflow.models.base import Base
from mediaflow.models.job import Job, JobState
from mediaflow.models.queue_task import QueueTask, TaskState


def _session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(
        bind=engine,
        tables=[Asset.__table__, Job.__table__, QueueTask.__table__],
    )
    return sessionmaker(bind=engine, expire_on_commit=False)()


def _service(session) -> MediaJobsService:
    return MediaJobsService(session, QueueOptions(name="media-processing", max_attempts=1))


def _asset(session, asset_id="a1") -> Asset:
    asset = Asset(
        id=asset_id,
        owner_id="u1",
        object_key=f"u/{asset_id}.jpg",
        mime="image/jpeg",
        size=10,
        status=AssetStatus.PENDING.value,
    )
    session.add(asset)
    session.commit()
    return asset


def test_add_job_uses_asset_handle_and_is_idempotent():
    session = _session()
    service = _service(session)

    first = service.add_media_processing_job("a1", "u/a1.jpg", "image/jpeg", "a1.jpg")
    second = service.add_media_processing_job("a1", "u/a1.jpg", "image/jpeg", "a1.jpg")

    assert first == second == media_job_id("a1") == "media-a1"
    assert service.get_stats()["waiting"] == 1


def test_get_job_includes_latest_database_record():
    session = _session()
    _asset(session)
    service = _service(session)
    handle = service.add_media_processing_job("a1", "u/a1.jpg", "image/jpeg", "a1.jpg")
    records = JobRecordService(session)
    job = records.start_attempt("a1", 1)
    records.fail(job, "boom")
    session.commit()

    data = service.get_job(handle)

    assert data["id"] == "media-a1"
    assert data["state"] == TaskState.WAITING.value
    assert data["data"]["asset_id"] == "a1"
    assert data["database_job"]["state"] == JobState.FAILED.value
    assert data["database_job"]["last_error"] == "boom"


def test_get_job_without_history():
    session = _session()
    service = _service(session)
    handle = service.add_media_processing_job("a9", "u/a9.jpg", "image/jpeg", "a9.jpg")
    assert service.get_job(handle)["database_job"] is None


def test_get_unknown_job_raises_not_found():
    with pytest.raises(NotFoundError):
        _service(_session()).get_job("media-missing")


def test_retry_requires_failed_task():
    session = _session()
    service = _service(session)
    handle = service.add_media_processing_job("a1", "u/a1.jpg", "image/jpeg", "a1.jpg")

    with pytest.raises(InvalidStateError):
        service.retry_job(handle)

    assert service.queue.claim(handle, "w1")
    service.queue.fail_task(handle, "boom")
    status = service.retry_job(handle)

    assert status.state == TaskState.WAITING.value
    assert status.retry_count == 1
    assert status.attempts_made == 1


def test_remove_job():
    session = _session()
    service = _service(session)
    handle = service.add_media_processing_job("a1", "u/a1.jpg", "image/jpeg", "a1.jpg")

    service.remove_job(handle)

    assert session.get(QueueTask, handle) is None
    with pytest.raises(NotFoundError):
        service.remove_job(handle)


def test_asset_history_and_paginated_listing():
    session = _session()
    _asset(session, "a1")
    _asset(session, "a2")
    now = datetime.utcnow()
    for n in range(5):
        session.add(
            Job(
                asset_id="a1" if n < 3 else "a2",
                state=JobState.COMPLETED.value,
                attempts=1,
                created_at=now - timedelta(minutes=n),
            )
        )
    session.commit()
    service = _service(session)

    assert len(service.get_asset_jobs("a1")) == 3

    page = service.get_all_jobs(page=2, limit=2)
    assert len(page["jobs"]) == 2
    assert page["pagination"] == {"page": 2, "limit": 2, "total": 5, "pages": 3}

    capped = service.get_all_jobs(page=1, limit=1000)
    assert capped["pagination"]["limit"] == 100


def test_cleanup_removes_only_old_completed_records():
    session = _session()
    _asset(session)
    old = datetime.utcnow() - timedelta(days=45)
    session.add_all(
        [
            Job(asset_id="a1", state=JobState.COMPLETED.value, attempts=1, created_at=old),
            Job(asset_id="a1", state=JobState.FAILED.value, attempts=1, created_at=old),
            Job(asset_id="a1", state=JobState.COMPLETED.value, attempts=1),
        ]
    )
    session.commit()

    deleted = _service(session).cleanup_old_jobs(days=30)

    assert deleted == 1
    assert sorted(j.state for j in session.query(Job).all()) == [
        JobState.COMPLETED.value,
        JobState.FAILED.value,
    ]


def test_owner_scoped_reads():
    session = _session()
    _asset(session, "a1")
    service = _service(session)
    handle = service.add_media_processing_job("a1", "u/a1.jpg", "image/jpeg", "a1.jpg")

    assert service.get_job(handle, owner_id="u1")["data"]["asset_id"] == "a1"
    assert service.get_asset_jobs("a1", owner_id="u1") == []

    with pytest.raises(PermissionError):
        service.get_job(handle, owner_id="u2")
    with pytest.raises(PermissionError):
        service.get_asset_jobs("a1", owner_id="u2")
    with pytest.raises(NotFoundError):
        service.get_asset_jobs("missing", owner_id="u1")
