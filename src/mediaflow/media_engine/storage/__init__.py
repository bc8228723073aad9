from typing import Optional

from mediaflow.config import get_settings
from mediaflow.config.settings import Settings
from mediaflow.exceptions.handlers import ConfigurationError
from mediaflow.media_engine.storage.storage_interface import ObjectStore


def get_object_store(settings: Optional[Settings] = None) -> ObjectStore:
    """Factory function to get the configured ObjectStore."""
    settings = settings or get_settings()
    if settings.STORAGE_TYPE == "local":
        from mediaflow.media_engine.storage.local_storage import LocalObjectStore

        return LocalObjectStore(settings)
    if settings.STORAGE_TYPE == "s3":
        from mediaflow.media_engine.storage.s3_storage import S3ObjectStore

        return S3ObjectStore(settings)
    raise ConfigurationError(
        f"Unsupported STORAGE_TYPE: {settings.STORAGE_TYPE}", config_key="STORAGE_TYPE"
    )


__all__ = ["ObjectStore", "get_object_store"]
