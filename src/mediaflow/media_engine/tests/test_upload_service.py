from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mediaflow.config.settings import Settings
from mediaflow.exceptions.handlers import PermissionError, ValidationError
from mediaflow.media_engine.services.jobs_service import MediaJobsService, media_job_id
from mediaflow.media_engine.services.queue_service import QueueOptions
from mediaflow.media_engine.services.upload_service import (
    PresignRequest,
    UploadCompleted,
    UploadService,
)
from mediaflow.models.asset import Asset, AssetStatus
from mediaflow.models.base import Base
from mediaflow.models.job import Job
from mediaflow.models.queue_task import QueueTask, TaskState


def _session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(
        bind=engine,
        tables=[Asset.__table__, Job.__table__, QueueTask.__table__],
    )
    return sessionmaker(bind=engine, expire_on_commit=False)


def _session():
    return _session_factory()()


def _service(session, **settings_overrides):
    settings = Settings(
        MAX_FILE_SIZE=1024,
        ALLOWED_MIME_TYPES="image/jpeg,image/png,application/pdf",
        PRESIGN_TTL_SECONDS=900,
        **settings_overrides,
    )
    store = MagicMock()
    store.presign_upload.return_value = "https://signed/upload"
    jobs = MediaJobsService(session, QueueOptions(name="media-processing"))
    return UploadService(session, store=store, jobs=jobs, settings=settings), store


def _completed(**overrides) -> UploadCompleted:
    values = {
        "object_key": "uploads/2024/01/01/abc-photo.jpg",
        "filename": "photo.jpg",
        "content_type": "image/jpeg",
        "file_size": 512,
        "sha256_hash": "0f" * 32,
    }
    values.update(overrides)
    return UploadCompleted(**values)


def test_presign_returns_signed_url_for_generated_key():
    service, store = _service(_session())

    result = service.create_presigned_upload(
        PresignRequest(filename="My Photo.jpg", content_type="image/jpeg", file_size=100),
        "u1",
    )

    assert result["upload_url"] == "https://signed/upload"
    assert result["expires_in"] == 900
    assert result["headers"] == {"Content-Type": "image/jpeg"}
    assert result["object_key"].startswith("uploads/")
    assert result["object_key"].endswith("-My_Photo.jpg")
    store.presign_upload.assert_called_once_with(result["object_key"], "image/jpeg", 900)


def test_presign_rejects_disallowed_type():
    service, store = _service(_session())
    with pytest.raises(ValidationError) as excinfo:
        service.create_presigned_upload(
            PresignRequest(filename="a.exe", content_type="application/x-msdownload", file_size=10),
            "u1",
        )
    assert excinfo.value.details["field"] == "content_type"
    store.presign_upload.assert_not_called()


@pytest.mark.parametrize("size", [0, -1, 1025])
def test_presign_rejects_invalid_size(size):
    service, _ = _service(_session())
    with pytest.raises(ValidationError) as excinfo:
        service.create_presigned_upload(
            PresignRequest(filename="a.jpg", content_type="image/jpeg", file_size=size),
            "u1",
        )
    assert excinfo.value.details["field"] == "file_size"


def test_complete_upload_creates_pending_asset_and_enqueues():
    session = _session()
    service, _ = _service(session)

    result = service.complete_upload(_completed(), "u1")

    asset = session.get(Asset, result["asset_id"])
    assert asset.status == AssetStatus.PENDING.value
    assert asset.owner_id == "u1"
    assert asset.mime == "image/jpeg"
    assert asset.size == 512
    assert asset.meta == {"original_filename": "photo.jpg", "sha256_hash": "0f" * 32}
    assert result["status"] == AssetStatus.PENDING.value
    assert result["job_id"] == media_job_id(asset.id)

    task = session.get(QueueTask, result["job_id"])
    assert task.state == TaskState.WAITING.value
    assert task.payload["object_key"] == asset.object_key
    assert task.payload["original_filename"] == "photo.jpg"


def test_complete_upload_twice_reuses_asset_and_task():
    session = _session()
    service, _ = _service(session)

    first = service.complete_upload(_completed(), "u1")
    second = service.complete_upload(_completed(), "u1")

    assert first["asset_id"] == second["asset_id"]
    assert first["job_id"] == second["job_id"]
    assert session.query(Asset).count() == 1
    assert session.query(QueueTask).count() == 1


def test_complete_upload_by_other_owner_is_denied():
    session = _session()
    service, _ = _service(session)
    service.complete_upload(_completed(), "u1")

    with pytest.raises(PermissionError):
        service.complete_upload(_completed(), "u2")


def test_complete_upload_rejects_malformed_hash():
    service, _ = _service(_session())
    with pytest.raises(ValidationError) as excinfo:
        service.complete_upload(_completed(sha256_hash="xyz"), "u1")
    assert excinfo.value.details["field"] == "sha256_hash"


def test_complete_upload_without_hash():
    session = _session()
    service, _ = _service(session)
    result = service.complete_upload(_completed(sha256_hash=None), "u1")
    assert session.get(Asset, result["asset_id"]).meta["sha256_hash"] is None


def test_complete_upload_refreshes_declared_attributes():
    session = _session()
    service, _ = _service(session)
    first = service.complete_upload(_completed(), "u1")

    service.complete_upload(
        _completed(content_type="image/png", file_size=700, filename="photo.png"), "u1"
    )

    asset = session.get(Asset, first["asset_id"])
    assert asset.mime == "image/png"
    assert asset.size == 700
    assert asset.meta["original_filename"] == "photo.png"
    assert asset.meta["sha256_hash"] == "0f" * 32


def _competing_lookup(factory, service, owner_id):
    """Registers the same object key from another session right after the lookup misses."""
    lookup = service._find_asset
    calls = []

    def _lookup(object_key):
        if not calls:
            calls.append(object_key)
            other = factory()
            try:
                other.add(
                    Asset(
                        id="winner",
                        owner_id=owner_id,
                        object_key=object_key,
                        mime="image/jpeg",
                        size=512,
                        status=AssetStatus.PENDING.value,
                        meta={"original_filename": "photo.jpg"},
                    )
                )
                other.commit()
            finally:
                other.close()
            return None
        return lookup(object_key)

    return _lookup


def test_concurrent_completion_reuses_winning_asset(monkeypatch):
    factory = _session_factory()
    session = factory()
    service, _ = _service(session)
    monkeypatch.setattr(service, "_find_asset", _competing_lookup(factory, service, "u1"))

    result = service.complete_upload(_completed(), "u1")

    assert result["asset_id"] == "winner"
    assert result["job_id"] == media_job_id("winner")
    assert session.query(Asset).count() == 1
    assert session.get(QueueTask, media_job_id("winner")).state == TaskState.WAITING.value


def test_concurrent_completion_by_other_owner_is_denied(monkeypatch):
    factory = _session_factory()
    session = factory()
    service, _ = _service(session)
    monkeypatch.setattr(service, "_find_asset", _competing_lookup(factory, service, "u2"))

    with pytest.raises(PermissionError):
        service.complete_upload(_completed(), "u1")
    assert session.query(Asset).count() == 1
    assert session.query(QueueTask).count() == 0
