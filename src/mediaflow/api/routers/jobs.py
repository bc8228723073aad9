from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from mediaflow.api.dependencies.auth import (
    get_current_owner_id,
    is_operator,
    require_operator,
)
from mediaflow.config import get_settings
from mediaflow.config.settings import Settings
from mediaflow.database import get_db
from mediaflow.exceptions.handlers import MediaflowException
from mediaflow.media_engine.services.jobs_service import MediaJobsService

router = APIRouter(prefix="/jobs", tags=["Jobs"])


def _read_scope(
    owner_id: str = Depends(get_current_owner_id),
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    # Operators read every job; everyone else only jobs of their own assets
    return None if is_operator(owner_id, settings) else owner_id


@router.get("/stats", dependencies=[Depends(require_operator)])
def job_stats(db: Session = Depends(get_db)) -> Dict[str, int]:
    return MediaJobsService(db).get_stats()


@router.get("/assets/{asset_id}")
def asset_jobs(
    asset_id: str,
    scope: Optional[str] = Depends(_read_scope),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    try:
        return MediaJobsService(db).get_asset_jobs(asset_id, owner_id=scope)
    except MediaflowException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc


@router.get("", dependencies=[Depends(require_operator)])
def list_jobs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return MediaJobsService(db).get_all_jobs(page, limit)


@router.get("/{job_id}")
def get_job(
    job_id: str,
    scope: Optional[str] = Depends(_read_scope),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return MediaJobsService(db).get_job(job_id, owner_id=scope)
    except MediaflowException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc


@router.post("/{job_id}/retry", dependencies=[Depends(require_operator)])
def retry_job(job_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        status = MediaJobsService(db).retry_job(job_id)
    except MediaflowException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc
    return {"success": True, "job": status.to_dict()}


@router.delete("/{job_id}", status_code=204, dependencies=[Depends(require_operator)])
def remove_job(job_id: str, db: Session = Depends(get_db)) -> Response:
    try:
        MediaJobsService(db).remove_job(job_id)
    except MediaflowException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc
    return Response(status_code=204)
