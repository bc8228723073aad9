from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mediaflow.api.app import create_app
from mediaflow.api.dependencies.storage import get_store
from mediaflow.config import get_settings
from mediaflow.config.settings import Settings
from mediaflow.database import get_db
from mediaflow.models.asset import Asset, AssetStatus
from mediaflow.models.base import Base
from mediaflow.models.job import Job
from mediaflow.models.queue_task import QueueTask, TaskState

OWNER = {"X-User-Id": "u1"}
OTHER = {"X-User-Id": "u2"}
OPERATOR = {"X-User-Id": "ops"}


@pytest.fixture
def session_factory():
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


@pytest.fixture
def store():
    store = MagicMock()
    store.presign_upload.return_value = "https://signed/put"
    store.presign_download.side_effect = lambda key, ttl=3600: f"https://signed/{key}"
    return store


@pytest.fixture
def client(session_factory, store):
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_settings] = lambda: Settings(OPERATOR_IDS="ops")
    return TestClient(app)


def _complete(client, key="uploads/2024/01/01/x-photo.jpg", headers=OWNER):
    return client.post(
        "/api/v1/uploads/complete",
        json={
            "object_key": key,
            "filename": "photo.jpg",
            "content_type": "image/jpeg",
            "file_size": 2048,
        },
        headers=headers,
    )


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_presign_requires_owner_header(client):
    response = client.post(
        "/api/v1/uploads/presign",
        json={"filename": "a.jpg", "content_type": "image/jpeg", "file_size": 10},
    )
    assert response.status_code == 401


def test_presign_returns_upload_url(client, store):
    response = client.post(
        "/api/v1/uploads/presign",
        json={"filename": "a.jpg", "content_type": "image/jpeg", "file_size": 10},
        headers=OWNER,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["upload_url"] == "https://signed/put"
    assert body["object_key"].startswith("uploads/")


def test_presign_rejects_disallowed_type(client):
    response = client.post(
        "/api/v1/uploads/presign",
        json={"filename": "a.exe", "content_type": "application/x-msdownload", "file_size": 10},
        headers=OWNER,
    )
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


def test_complete_creates_asset_and_task(client, session_factory):
    response = _complete(client)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == AssetStatus.PENDING.value
    assert body["job_id"] == f"media-{body['asset_id']}"

    session = session_factory()
    try:
        assert session.get(QueueTask, body["job_id"]).state == TaskState.WAITING.value
    finally:
        session.close()


def test_asset_read_update_and_delete(client, store):
    asset_id = _complete(client).json()["asset_id"]

    listing = client.get("/api/v1/assets", headers=OWNER).json()
    assert [a["id"] for a in listing["assets"]] == [asset_id]
    assert client.get("/api/v1/assets", headers=OTHER).json()["total"] == 0

    detail = client.get(f"/api/v1/assets/{asset_id}", headers=OWNER)
    assert detail.status_code == 200
    assert detail.json()["download_url"] == "https://signed/uploads/2024/01/01/x-photo.jpg"

    assert client.get(f"/api/v1/assets/{asset_id}", headers=OTHER).status_code == 403
    assert client.get("/api/v1/assets/missing", headers=OWNER).status_code == 404

    updated = client.put(
        f"/api/v1/assets/{asset_id}/status", json={"status": "FAILED"}, headers=OWNER
    )
    assert updated.status_code == 200
    assert updated.json()["status"] == "FAILED"
    bad = client.put(
        f"/api/v1/assets/{asset_id}/status", json={"status": "DONE"}, headers=OWNER
    )
    assert bad.status_code == 422

    assert client.delete(f"/api/v1/assets/{asset_id}", headers=OWNER).status_code == 204
    store.delete.assert_called_once_with("uploads/2024/01/01/x-photo.jpg")
    assert client.get(f"/api/v1/assets/{asset_id}", headers=OWNER).status_code == 404


def test_list_assets_with_invalid_cursor(client):
    response = client.get("/api/v1/assets?cursor=nope", headers=OWNER)
    assert response.status_code == 422


def test_owner_reads_own_job(client):
    body = _complete(client).json()

    job = client.get(f"/api/v1/jobs/{body['job_id']}", headers=OWNER)
    assert job.status_code == 200
    assert job.json()["state"] == TaskState.WAITING.value
    assert job.json()["data"]["asset_id"] == body["asset_id"]
    assert job.json()["database_job"] is None

    history = client.get(f"/api/v1/jobs/assets/{body['asset_id']}", headers=OWNER)
    assert history.status_code == 200
    assert history.json() == []


def test_jobs_of_other_owners_are_hidden(client):
    body = _complete(client).json()

    assert client.get("/api/v1/jobs/stats").status_code == 401
    assert client.get(f"/api/v1/jobs/{body['job_id']}", headers=OTHER).status_code == 403
    assert (
        client.get(f"/api/v1/jobs/assets/{body['asset_id']}", headers=OTHER).status_code
        == 403
    )


def test_operator_commands_require_operator(client):
    job_id = _complete(client).json()["job_id"]

    assert client.get("/api/v1/jobs/stats", headers=OWNER).status_code == 403
    assert client.get("/api/v1/jobs", headers=OWNER).status_code == 403
    assert client.post(f"/api/v1/jobs/{job_id}/retry", headers=OWNER).status_code == 403
    assert client.delete(f"/api/v1/jobs/{job_id}", headers=OTHER).status_code == 403
    assert client.get(f"/api/v1/jobs/{job_id}", headers=OWNER).status_code == 200


def test_operator_job_commands(client):
    body = _complete(client).json()
    job_id = body["job_id"]

    stats = client.get("/api/v1/jobs/stats", headers=OPERATOR).json()
    assert stats["waiting"] == 1

    job = client.get(f"/api/v1/jobs/{job_id}", headers=OPERATOR)
    assert job.status_code == 200
    assert job.json()["data"]["asset_id"] == body["asset_id"]

    retry = client.post(f"/api/v1/jobs/{job_id}/retry", headers=OPERATOR)
    assert retry.status_code == 409
    assert retry.json()["detail"]["code"] == "INVALID_STATE"

    page = client.get("/api/v1/jobs?page=1&limit=10", headers=OPERATOR).json()
    assert page["pagination"]["total"] == 0

    assert client.delete(f"/api/v1/jobs/{job_id}", headers=OPERATOR).status_code == 204
    assert client.get(f"/api/v1/jobs/{job_id}", headers=OPERATOR).status_code == 404


def test_retry_failed_job(client, session_factory):
    job_id = _complete(client).json()["job_id"]
    session = session_factory()
    try:
        task = session.get(QueueTask, job_id)
        task.state = TaskState.FAILED.value
        task.attempts_made = 3
        task.last_error = "boom"
        session.commit()
    finally:
        session.close()

    response = client.post(f"/api/v1/jobs/{job_id}/retry", headers=OPERATOR)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["job"]["state"] == TaskState.WAITING.value
    assert body["job"]["retry_count"] == 1


def test_service_errors_map_to_http_status(client):
    with patch(
        "mediaflow.api.routers.jobs.MediaJobsService"
    ) as MockService:
        from mediaflow.exceptions.handlers import TransientIOError

        MockService.return_value.get_job.side_effect = TransientIOError("db flapping")
        response = client.get("/api/v1/jobs/media-x", headers=OWNER)

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "TRANSIENT_IO_ERROR"
