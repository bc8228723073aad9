from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException

from mediaflow.config import get_settings
from mediaflow.config.settings import Settings

OWNER_HEADER = "X-User-Id"


def get_current_owner_id(
    x_user_id: Optional[str] = Header(default=None, alias=OWNER_HEADER),
) -> str:
    """
    Resolve the calling owner from the request header.

    Identity is asserted by the gateway in front of the service; this layer
    only requires that it is present.
    """
    owner_id = (x_user_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail=f"Missing {OWNER_HEADER} header")
    return owner_id


def is_operator(owner_id: str, settings: Settings) -> bool:
    return owner_id in settings.operator_ids()


def require_operator(
    owner_id: str = Depends(get_current_owner_id),
    settings: Settings = Depends(get_settings),
) -> str:
    if not is_operator(owner_id, settings):
        raise HTTPException(status_code=403, detail="Operator required")
    return owner_id
