from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from mediaflow.api.dependencies.auth import get_current_owner_id
from mediaflow.api.dependencies.storage import get_store
from mediaflow.database import get_db
from mediaflow.exceptions.handlers import MediaflowException
from mediaflow.media_engine.services.asset_service import AssetService, MAX_PAGE_SIZE
from mediaflow.media_engine.storage import ObjectStore
from mediaflow.models.asset import AssetStatus

router = APIRouter(prefix="/assets", tags=["Assets"])


class UpdateStatusRequest(BaseModel):
    status: AssetStatus


@router.get("")
def list_assets(
    cursor: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    status: Optional[AssetStatus] = Query(None),
    search: Optional[str] = Query(None),
    mime_type: Optional[str] = Query(None),
    owner_id: str = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> Dict[str, Any]:
    service = AssetService(db, store=store)
    try:
        return service.list_assets(
            owner_id,
            cursor=cursor,
            limit=limit,
            status=status.value if status else None,
            search=search,
            mime_type=mime_type,
        )
    except MediaflowException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc


@router.get("/{asset_id}")
def get_asset(
    asset_id: str,
    owner_id: str = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> Dict[str, Any]:
    service = AssetService(db, store=store)
    try:
        return service.get_asset(asset_id, owner_id)
    except MediaflowException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc


@router.put("/{asset_id}/status")
def update_asset_status(
    asset_id: str,
    req: UpdateStatusRequest,
    owner_id: str = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> Dict[str, Any]:
    service = AssetService(db, store=store)
    try:
        return service.update_status(asset_id, owner_id, req.status.value)
    except MediaflowException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc


@router.delete("/{asset_id}", status_code=204)
def delete_asset(
    asset_id: str,
    owner_id: str = Depends(get_current_owner_id),
    db: Session = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> Response:
    service = AssetService(db, store=store)
    try:
        service.delete_asset(asset_id, owner_id)
    except MediaflowException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc
    return Response(status_code=204)
