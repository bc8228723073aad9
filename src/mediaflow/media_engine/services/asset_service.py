"""
Asset Service
Owner-scoped queries and commands over uploaded assets.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from mediaflow.config import get_settings
from mediaflow.config.settings import Settings
from mediaflow.exceptions.handlers import (
    NotFoundError,
    PermissionError,
    ValidationError,
)
from mediaflow.media_engine.storage import ObjectStore, get_object_store
from mediaflow.models.asset import Asset, AssetStatus

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50


class AssetService:
    def __init__(
        self,
        session: Session,
        store: Optional[ObjectStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self._store = store

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            self._store = get_object_store(self.settings)
        return self._store

    def list_assets(
        self,
        owner_id: str,
        *,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        status: Optional[str] = None,
        search: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Newest-first listing of the owner's assets.

        ``cursor`` is the id of the last asset of the previous page. Pages are
        stable under concurrent inserts because the order is (created_at, id).
        """
        take = max(min(int(limit or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE), 1)

        query = self.session.query(Asset).filter(Asset.owner_id == owner_id)
        if status:
            try:
                status = AssetStatus(status).value
            except ValueError as exc:
                raise ValidationError(f"Unknown status: {status}", field="status") from exc
            query = query.filter(Asset.status == status)
        if mime_type:
            query = query.filter(Asset.mime == mime_type)
        if search:
            query = query.filter(
                Asset.meta["original_filename"].as_string().contains(search, autoescape=True)
            )

        total = query.count()

        if cursor:
            anchor = self.session.get(Asset, cursor)
            if anchor is None or anchor.owner_id != owner_id:
                raise ValidationError("Invalid cursor", field="cursor")
            query = query.filter(
                or_(
                    Asset.created_at < anchor.created_at,
                    and_(Asset.created_at == anchor.created_at, Asset.id < anchor.id),
                )
            )

        rows = (
            query.order_by(Asset.created_at.desc(), Asset.id.desc())
            .limit(take + 1)
            .all()
        )
        has_next = len(rows) > take
        assets = rows[:take]

        return {
            "assets": [self.to_response(asset) for asset in assets],
            "total": total,
            "count": len(assets),
            "next_cursor": assets[-1].id if has_next and assets else None,
            "prev_cursor": assets[0].id if cursor and assets else None,
            "has_next": has_next,
            "has_prev": bool(cursor),
        }

    def get_owned_asset(self, asset_id: str, owner_id: str) -> Asset:
        asset = self.session.get(Asset, asset_id)
        if asset is None:
            raise NotFoundError("Asset", asset_id)
        if asset.owner_id != owner_id:
            raise PermissionError("access", f"asset {asset_id}")
        return asset

    def get_asset(self, asset_id: str, owner_id: str) -> Dict[str, Any]:
        return self.to_response(self.get_owned_asset(asset_id, owner_id))

    def delete_asset(self, asset_id: str, owner_id: str) -> None:
        asset = self.get_owned_asset(asset_id, owner_id)

        # Blob removal never blocks the row deletion
        for key in filter(None, (asset.object_key, asset.thumb_key)):
            try:
                self.store.delete(key)
            except Exception as e:
                logger.warning(
                    f"Failed to delete stored object {key} for asset {asset_id}: {e}",
                    extra={"asset_id": asset_id},
                )

        self.session.delete(asset)
        self.session.commit()
        logger.info(f"Asset {asset_id} deleted by user {owner_id}")

    def update_status(self, asset_id: str, owner_id: str, status: str) -> Dict[str, Any]:
        """Operator override: sets the status without lifecycle checks."""
        try:
            target = AssetStatus(status).value
        except ValueError as exc:
            raise ValidationError(f"Unknown status: {status}", field="status") from exc
        asset = self.get_owned_asset(asset_id, owner_id)
        previous = asset.status
        asset.status = target
        self.session.add(asset)
        self.session.commit()
        logger.info(
            "Asset %s status overridden %s -> %s by %s",
            asset_id,
            previous,
            target,
            owner_id,
            extra={"asset_id": asset_id},
        )
        return self.to_response(asset)

    def to_response(self, asset: Asset) -> Dict[str, Any]:
        ttl = self.settings.PRESIGN_TTL_SECONDS
        download_url = self.store.presign_download(asset.object_key, ttl)
        thumbnail_url = (
            self.store.presign_download(asset.thumb_key, ttl) if asset.thumb_key else None
        )
        return {
            "id": asset.id,
            "owner_id": asset.owner_id,
            "object_key": asset.object_key,
            "mime": asset.mime,
            "size": asset.size,
            "status": asset.status,
            "thumb_key": asset.thumb_key,
            "meta": asset.meta or {},
            "created_at": asset.created_at.isoformat() if asset.created_at else None,
            "updated_at": asset.updated_at.isoformat() if asset.updated_at else None,
            "download_url": download_url,
            "thumbnail_url": thumbnail_url,
        }
