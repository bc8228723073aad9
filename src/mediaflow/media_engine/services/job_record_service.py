"""
Job Record Service
Execution history for assets. Rows are written by the worker around each
attempt and read by the operator endpoints; they trail the queue and are
never used for scheduling.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from mediaflow.models.job import Job, JobState

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class JobRecordService:
    def __init__(self, session: Session):
        self.session = session

    def start_attempt(self, asset_id: str, attempt: int) -> Job:
        job = Job(asset_id=asset_id, state=JobState.ACTIVE.value, attempts=attempt)
        self.session.add(job)
        self.session.flush()
        return job

    def complete(self, job: Job) -> Job:
        job.state = JobState.COMPLETED.value
        job.last_error = None
        job.updated_at = datetime.utcnow()
        self.session.add(job)
        return job

    def fail(self, job: Job, error: str) -> Job:
        job.state = JobState.FAILED.value
        job.last_error = error
        job.updated_at = datetime.utcnow()
        self.session.add(job)
        return job

    def list_for_asset(self, asset_id: str) -> List[Job]:
        return (
            self.session.query(Job)
            .filter(Job.asset_id == asset_id)
            .order_by(Job.created_at.desc())
            .all()
        )

    def latest_for_asset(self, asset_id: str) -> Optional[Job]:
        return (
            self.session.query(Job)
            .filter(Job.asset_id == asset_id)
            .order_by(Job.created_at.desc())
            .first()
        )

    def list_jobs(self, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        page = max(int(page), 1)
        limit = max(min(int(limit), MAX_PAGE_SIZE), 1)
        query = self.session.query(Job)
        total = query.count()
        jobs = (
            query.order_by(Job.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "jobs": jobs,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    def cleanup_old_jobs(self, days: int = 30) -> int:
        """Delete COMPLETED rows older than the retention window."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        deleted = (
            self.session.query(Job)
            .filter(Job.state == JobState.COMPLETED.value, Job.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.session.commit()
        logger.info("Cleaned up %s completed job record(s) older than %s days", deleted, days)
        return deleted


def job_to_dict(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "asset_id": job.asset_id,
        "state": job.state,
        "attempts": job.attempts,
        "last_error": job.last_error,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }
