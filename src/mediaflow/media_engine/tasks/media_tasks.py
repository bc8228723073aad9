"""
Media processing task.

Handler for the ``process-media`` queue task: moves the asset through
PROCESSING to READY or FAILED and records the attempt in the jobs table.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mediaflow.config import get_settings
from mediaflow.config.settings import Settings
from mediaflow.exceptions.handlers import UnsupportedFormatError
from mediaflow.media_engine.services.asset_lifecycle import (
    can_transition,
    transition_asset,
)
from mediaflow.media_engine.services.job_errors import JobFatalError
from mediaflow.media_engine.services.job_record_service import JobRecordService
from mediaflow.media_engine.services.queue_service import ProcessingQueue, mime_category
from mediaflow.media_engine.services.thumbnail_service import (
    ProcessingOptions,
    ThumbnailService,
    compression_ratio,
)
from mediaflow.media_engine.storage import ObjectStore, get_object_store
from mediaflow.media_engine.storage.keys import derive_thumb_key
from mediaflow.models.asset import Asset, AssetStatus
from mediaflow.models.job import Job
from mediaflow.models.queue_task import QueueTask

logger = logging.getLogger(__name__)

IMAGE_FORMATS = {
    "image/jpeg": "jpeg",
    "image/jpg": "jpeg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/tiff": "tiff",
    "image/bmp": "bmp",
}

# Upload-time meta carried over when processing rewrites the blob
_INTAKE_META_KEYS = ("original_filename", "sha256_hash")


def extract_image_format(mime_type: str) -> str:
    fmt = IMAGE_FORMATS.get((mime_type or "").lower())
    if fmt is None:
        raise UnsupportedFormatError(f"Unsupported image type: {mime_type}", format=mime_type)
    return fmt


def _now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


class MediaProcessor:
    def __init__(
        self,
        store: Optional[ObjectStore] = None,
        thumbnails: Optional[ThumbnailService] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._store = store
        self.thumbnails = thumbnails or ThumbnailService.from_settings(self.settings)

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            self._store = get_object_store(self.settings)
        return self._store

    def __call__(
        self, payload: Dict[str, Any], session: Session, task_id: Optional[str] = None
    ) -> Dict[str, Any]:
        asset_id = payload.get("asset_id")
        if not asset_id:
            raise JobFatalError("Missing asset_id in payload")
        asset = session.get(Asset, asset_id)
        if asset is None:
            raise JobFatalError(f"Asset not found: {asset_id}")

        job_id = self._start_job_record(session, asset_id, task_id)
        original_filename = payload.get("original_filename") or (asset.meta or {}).get(
            "original_filename"
        )
        log_ctx = {"asset_id": asset_id, "task_id": task_id}

        try:
            transition_asset(asset, AssetStatus.PROCESSING)
            session.commit()
            logger.info(f"Starting media processing for asset: {asset_id}", extra=log_ctx)

            data = self.store.download(asset.object_key)
            self._progress(session, task_id, 30)

            category = mime_category(asset.mime)
            meta = {
                k: (asset.meta or {}).get(k)
                for k in _INTAKE_META_KEYS
                if (asset.meta or {}).get(k) is not None
            }
            meta["original_filename"] = original_filename
            if category == "image":
                image_meta, thumb_key = self._process_image(asset, data)
                meta.update(image_meta)
            elif category == "document":
                logger.info(f"Processing document: {original_filename}", extra=log_ctx)
                meta.update(
                    {"processed": True, "document_type": "document", "original_size": len(data)}
                )
                thumb_key = None
            else:
                logger.info(f"Processing generic file: {original_filename}", extra=log_ctx)
                meta.update(
                    {"processed": True, "file_type": "generic", "original_size": len(data)}
                )
                thumb_key = None
            meta["processed_at"] = _now_iso()

            asset.meta = meta
            asset.thumb_key = thumb_key
            transition_asset(asset, AssetStatus.READY)
            if job_id:
                job = session.get(Job, job_id)
                if job is not None:
                    JobRecordService(session).complete(job)
            session.commit()
        except Exception as e:
            session.rollback()
            self._record_failure(session, asset_id, job_id, e)
            raise

        logger.info(f"Media processing completed for asset: {asset_id}", extra=log_ctx)
        return {"success": True, "asset_id": asset_id, "status": asset.status, "thumb_key": thumb_key}

    def _process_image(self, asset: Asset, data: bytes) -> Tuple[Dict[str, Any], str]:
        image_format = extract_image_format(asset.mime)
        result = self.thumbnails.process_image_format(
            data,
            image_format,
            ProcessingOptions(
                max_width=self.settings.THUMBNAIL_WIDTH,
                max_height=self.settings.THUMBNAIL_HEIGHT,
                quality=self.settings.THUMBNAIL_QUALITY,
                format=self.settings.THUMBNAIL_FORMAT,
            ),
        )
        thumb_key = derive_thumb_key(asset.object_key, result.format)
        self.store.upload(thumb_key, result.data, f"image/{result.format}")
        logger.debug(f"Uploaded thumbnail {thumb_key}", extra={"asset_id": asset.id})

        source = result.source_metadata
        meta = {
            "processed": True,
            "thumbnail_generated": True,
            "original_size": len(data),
            "thumbnail_size": result.size,
            "original_dimensions": f"{source.get('width')}x{source.get('height')}",
            "thumbnail_dimensions": f"{result.width}x{result.height}",
            "compression_ratio": compression_ratio(len(data), result.size),
            "format": image_format,
            "source_metadata": source,
        }
        return meta, thumb_key

    def _start_job_record(
        self, session: Session, asset_id: str, task_id: Optional[str]
    ) -> Optional[str]:
        attempt = 1
        if task_id:
            task = session.get(QueueTask, task_id)
            if task is not None:
                attempt = task.attempts_made or 1
        try:
            job = JobRecordService(session).start_attempt(asset_id, attempt)
            session.commit()
            return job.id
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(
                f"Could not record job row for asset {asset_id}: {e}",
                extra={"asset_id": asset_id, "task_id": task_id},
            )
            return None

    def _progress(self, session: Session, task_id: Optional[str], progress: int) -> None:
        if task_id:
            ProcessingQueue(session).update_progress(task_id, progress)

    def _record_failure(
        self, session: Session, asset_id: str, job_id: Optional[str], error: Exception
    ) -> None:
        message = str(error) or type(error).__name__
        try:
            asset = session.get(Asset, asset_id)
            if asset is not None:
                if can_transition(asset.status, AssetStatus.FAILED.value):
                    transition_asset(asset, AssetStatus.FAILED, reason=message)
                else:
                    asset.status = AssetStatus.FAILED.value
                meta = dict(asset.meta or {})
                meta.update({"error": message, "failed_at": _now_iso()})
                asset.meta = meta
            if job_id:
                job = session.get(Job, job_id)
                if job is not None:
                    JobRecordService(session).fail(job, message)
            session.commit()
        except SQLAlchemyError as record_err:
            session.rollback()
            logger.error(
                f"Failed to record failure for asset {asset_id}: {record_err}",
                extra={"asset_id": asset_id},
            )
        logger.error(
            f"Media processing failed for asset {asset_id}: {message}",
            extra={"asset_id": asset_id, "error": message},
        )
