from __future__ import annotations

import os
from pathlib import Path

from fastapi import APIRouter
from sqlalchemy import text

from mediaflow import __version__
from mediaflow.config import get_settings
from mediaflow.database import get_db_session
from mediaflow.media_engine.services.queue_service import ProcessingQueue
from mediaflow.media_engine.storage import get_object_store

router = APIRouter(tags=["system"])


@router.get("/health")
def health() -> dict:
    settings = get_settings()
    return {
        "ok": True,
        "service": "mediaflow",
        "version": __version__,
        "environment": settings.ENVIRONMENT,
        "schema_mode": settings.SCHEMA_MODE,
        "storage_type": settings.STORAGE_TYPE,
    }


@router.get("/health/deps")
def health_deps() -> dict:
    settings = get_settings()
    deps: dict = {}
    overall_ok = True

    try:
        with get_db_session() as db:
            db.execute(text("SELECT 1"))
            deps["queue"] = {"ok": True, **ProcessingQueue(db).stats()}
        deps["db"] = {"ok": True}
    except Exception as exc:
        deps["db"] = {"ok": False, "error": str(exc)}
        overall_ok = False

    storage_info: dict = {"type": settings.STORAGE_TYPE}
    if settings.STORAGE_TYPE == "local":
        storage_path = Path(settings.LOCAL_STORAGE_PATH).resolve()
        writable = os.access(storage_path, os.W_OK)
        storage_info.update(
            {
                "path": str(storage_path),
                "exists": storage_path.exists(),
                "writable": writable,
                "ok": storage_path.exists() and writable,
            }
        )
    else:
        probe_key = "healthcheck/ok.txt"
        try:
            exists = get_object_store(settings).exists(probe_key)
            storage_info.update(
                {
                    "ok": True,
                    "bucket": settings.S3_BUCKET_NAME,
                    "endpoint_url": settings.S3_ENDPOINT_URL,
                    "probe_key": probe_key,
                    "exists": exists,
                }
            )
        except Exception as exc:
            storage_info.update(
                {
                    "ok": False,
                    "bucket": settings.S3_BUCKET_NAME,
                    "endpoint_url": settings.S3_ENDPOINT_URL,
                    "error": str(exc),
                }
            )
    if not storage_info["ok"]:
        overall_ok = False
    deps["storage"] = storage_info

    return {
        "ok": overall_ok,
        "service": "mediaflow",
        "version": __version__,
        "schema_mode": settings.SCHEMA_MODE,
        "deps": deps,
    }
