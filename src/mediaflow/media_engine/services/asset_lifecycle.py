"""
Asset status rules.

PENDING -> PROCESSING -> READY | FAILED, and any asset that was picked up
before may be picked up again (reprocessing). The operator override in
AssetService.update_status does not go through these rules.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from mediaflow.exceptions.handlers import InvalidStateError
from mediaflow.models.asset import Asset, AssetStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    AssetStatus.PENDING.value: frozenset({AssetStatus.PROCESSING.value}),
    AssetStatus.PROCESSING.value: frozenset(
        {
            AssetStatus.PROCESSING.value,
            AssetStatus.READY.value,
            AssetStatus.FAILED.value,
        }
    ),
    AssetStatus.READY.value: frozenset({AssetStatus.PROCESSING.value}),
    AssetStatus.FAILED.value: frozenset({AssetStatus.PROCESSING.value}),
}

TERMINAL_STATUSES = frozenset({AssetStatus.READY.value, AssetStatus.FAILED.value})


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition_asset(asset: Asset, target: AssetStatus, *, reason: Optional[str] = None) -> Asset:
    """Move an asset to ``target`` or raise InvalidStateError."""
    current = asset.status
    target_value = AssetStatus(target).value
    if not can_transition(current, target_value):
        raise InvalidStateError(
            f"Asset {asset.id} cannot move from {current} to {target_value}",
            current=current,
            expected=target_value,
            asset_id=asset.id,
        )
    asset.status = target_value
    asset.updated_at = datetime.utcnow()
    logger.info(
        "Asset %s %s -> %s%s",
        asset.id,
        current,
        target_value,
        f" ({reason})" if reason else "",
        extra={"asset_id": asset.id},
    )
    return asset
