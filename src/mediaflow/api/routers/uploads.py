from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from mediaflow.api.dependencies.auth import get_current_owner_id
from mediaflow.api.dependencies.storage import get_store
from mediaflow.database import get_db
from mediaflow.exceptions.handlers import MediaflowException
from mediaflow.media_engine.services.upload_service import (
    PresignRequest,
    UploadCompleted,
    UploadService,
)
from mediaflow.media_engine.storage import ObjectStore

router = APIRouter(prefix="/uploads", tags=["Uploads"])


@router.post("/presign")
def presign_upload(
    req: PresignRequest,
    owner_id: str = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> Dict[str, Any]:
    service = UploadService(db, store=store)
    try:
        return service.create_presigned_upload(req, owner_id)
    except MediaflowException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc


@router.post("/complete", status_code=201)
def complete_upload(
    req: UploadCompleted,
    owner_id: str = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> Dict[str, Any]:
    service = UploadService(db, store=store)
    try:
        return service.complete_upload(req, owner_id)
    except MediaflowException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc
