"""
Upload Service
Presigned upload intake: hands out PUT URLs and turns completed uploads
into PENDING assets with a processing task.
"""

import logging
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mediaflow.config import get_settings
from mediaflow.config.settings import Settings
from mediaflow.exceptions.handlers import PermissionError, ValidationError
from mediaflow.media_engine.services.jobs_service import MediaJobsService
from mediaflow.media_engine.storage import ObjectStore, get_object_store
from mediaflow.media_engine.storage.keys import generate_object_key
from mediaflow.models.asset import Asset, AssetStatus

logger = logging.getLogger(__name__)

_SHA256_RE = re.compile(r"^[a-fA-F0-9]{64}$")


class PresignRequest(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    content_type: str
    file_size: int


class UploadCompleted(BaseModel):
    object_key: str = Field(..., min_length=1, max_length=512)
    filename: str = Field(..., min_length=1, max_length=255)
    content_type: str
    file_size: int
    sha256_hash: Optional[str] = None


class UploadService:
    def __init__(
        self,
        session: Session,
        store: Optional[ObjectStore] = None,
        jobs: Optional[MediaJobsService] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self._store = store
        self.jobs = jobs or MediaJobsService(session)

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            self._store = get_object_store(self.settings)
        return self._store

    def validate_file_type(self, content_type: str) -> None:
        allowed = self.settings.allowed_mime_types()
        if content_type not in allowed:
            raise ValidationError(
                f"File type {content_type} is not allowed. "
                f"Allowed types: {', '.join(allowed)}",
                field="content_type",
            )

    def validate_file_size(self, file_size: int) -> None:
        if file_size <= 0 or file_size > self.settings.MAX_FILE_SIZE:
            raise ValidationError(
                "Invalid file size",
                field="file_size",
                max_file_size=self.settings.MAX_FILE_SIZE,
            )

    def create_presigned_upload(self, request: PresignRequest, owner_id: str) -> Dict[str, Any]:
        self.validate_file_type(request.content_type)
        self.validate_file_size(request.file_size)

        object_key = generate_object_key(request.filename)
        ttl = self.settings.PRESIGN_TTL_SECONDS
        upload_url = self.store.presign_upload(object_key, request.content_type, ttl)
        logger.info(
            f"Generated presigned URL for {request.filename} -> {object_key} (user {owner_id})"
        )
        return {
            "upload_url": upload_url,
            "object_key": object_key,
            "expires_in": ttl,
            "headers": {"Content-Type": request.content_type},
        }

    def _find_asset(self, object_key: str) -> Optional[Asset]:
        return (
            self.session.query(Asset)
            .filter(Asset.object_key == object_key)
            .one_or_none()
        )

    def _reuse_asset(self, asset: Asset, completed: UploadCompleted, owner_id: str) -> Asset:
        """Re-register an existing upload with the latest declared attributes."""
        if asset.owner_id != owner_id:
            raise PermissionError("complete upload", completed.object_key)
        meta = dict(asset.meta or {})
        meta["original_filename"] = completed.filename
        if completed.sha256_hash:
            meta["sha256_hash"] = completed.sha256_hash
        asset.mime = completed.content_type
        asset.size = completed.file_size
        asset.meta = meta
        self.session.add(asset)
        self.session.commit()
        logger.info(
            f"Upload {completed.object_key} already registered as {asset.id}",
            extra={"asset_id": asset.id},
        )
        return asset

    def complete_upload(self, completed: UploadCompleted, owner_id: str) -> Dict[str, Any]:
        """
        Register an uploaded object as a PENDING asset and enqueue processing.

        Completing the same object twice (including concurrently) returns the
        existing asset; the enqueue is idempotent on the asset id.
        """
        self.validate_file_type(completed.content_type)
        self.validate_file_size(completed.file_size)
        if completed.sha256_hash and not _SHA256_RE.match(completed.sha256_hash):
            raise ValidationError("sha256_hash must be 64 hex characters", field="sha256_hash")

        asset = self._find_asset(completed.object_key)
        if asset is not None:
            asset = self._reuse_asset(asset, completed, owner_id)
        else:
            asset = Asset(
                owner_id=owner_id,
                object_key=completed.object_key,
                mime=completed.content_type,
                size=completed.file_size,
                status=AssetStatus.PENDING.value,
                meta={
                    "original_filename": completed.filename,
                    "sha256_hash": completed.sha256_hash,
                },
            )
            self.session.add(asset)
            try:
                self.session.commit()
            except IntegrityError:
                # A concurrent completion registered the same object key first
                self.session.rollback()
                winner = self._find_asset(completed.object_key)
                if winner is None:
                    raise
                asset = self._reuse_asset(winner, completed, owner_id)
            else:
                logger.info(
                    f"Asset created for {completed.filename} with ID: {asset.id}",
                    extra={"asset_id": asset.id},
                )

        job_id = self.jobs.add_media_processing_job(
            asset.id, asset.object_key, asset.mime, completed.filename
        )
        return {
            "asset_id": asset.id,
            "object_key": asset.object_key,
            "status": asset.status,
            "job_id": job_id,
            "message": "File uploaded successfully and queued for processing",
            "completed_at": asset.created_at.isoformat() if asset.created_at else None,
        }
