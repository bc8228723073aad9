"""
Media Jobs Service
Producer and operator commands for the media-processing queue.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from mediaflow.exceptions.handlers import PermissionError
from mediaflow.media_engine.services.asset_service import AssetService
from mediaflow.media_engine.services.job_record_service import (
    JobRecordService,
    job_to_dict,
)
from mediaflow.media_engine.services.queue_service import (
    ProcessingQueue,
    QueueOptions,
    TaskStatus,
)

logger = logging.getLogger(__name__)

PROCESS_MEDIA_TASK = "process-media"


def media_job_id(asset_id: str) -> str:
    return f"media-{asset_id}"


class MediaJobsService:
    def __init__(self, session: Session, queue_options: Optional[QueueOptions] = None):
        self.session = session
        self.queue = ProcessingQueue(session, queue_options)
        self.records = JobRecordService(session)

    def add_media_processing_job(
        self,
        asset_id: str,
        object_key: str,
        mime_type: str,
        original_filename: str,
    ) -> str:
        """Enqueue processing for an asset; repeated calls while it is outstanding are no-ops."""
        logger.info(
            f"Adding media processing job for asset: {asset_id}",
            extra={"asset_id": asset_id},
        )
        task = self.queue.enqueue(
            PROCESS_MEDIA_TASK,
            {
                "asset_id": asset_id,
                "object_key": object_key,
                "mime_type": mime_type,
                "original_filename": original_filename,
            },
            media_job_id(asset_id),
        )
        return task.id

    def _ensure_owner(self, asset_id: Optional[str], owner_id: Optional[str]) -> None:
        # owner_id None means an unscoped operator read
        if owner_id is None:
            return
        if not asset_id:
            raise PermissionError("access", "job")
        AssetService(self.session).get_owned_asset(asset_id, owner_id)

    def get_job(self, handle: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        status = self.queue.get_status(handle)
        asset_id = status.data.get("asset_id")
        self._ensure_owner(asset_id, owner_id)
        data = status.to_dict()
        db_job = self.records.latest_for_asset(asset_id) if asset_id else None
        data["database_job"] = job_to_dict(db_job) if db_job else None
        return data

    def retry_job(self, handle: str) -> TaskStatus:
        task = self.queue.retry(handle)
        return TaskStatus.from_task(task)

    def remove_job(self, handle: str) -> None:
        self.queue.remove(handle)

    def get_stats(self) -> Dict[str, int]:
        return self.queue.stats()

    def get_asset_jobs(
        self, asset_id: str, owner_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        self._ensure_owner(asset_id, owner_id)
        return [job_to_dict(job) for job in self.records.list_for_asset(asset_id)]

    def get_all_jobs(self, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        result = self.records.list_jobs(page, limit)
        result["jobs"] = [job_to_dict(job) for job in result["jobs"]]
        return result

    def cleanup_old_jobs(self, days: int = 30) -> int:
        return self.records.cleanup_old_jobs(days)
