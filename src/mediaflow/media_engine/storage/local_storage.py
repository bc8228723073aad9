"""
Local Object Store
Implements ObjectStore on the local filesystem (development and tests).
"""

import os
from pathlib import Path

from mediaflow.config.settings import Settings
from mediaflow.exceptions.handlers import NotFoundError, ValidationError
from mediaflow.media_engine.storage.storage_interface import ObjectStore


class LocalObjectStore(ObjectStore):
    def __init__(self, settings: Settings):
        self.base_path = Path(settings.LOCAL_STORAGE_PATH)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_url_prefix = settings.LOCAL_STORAGE_PUBLIC_URL_PREFIX.rstrip("/")

    def _full_path(self, key: str) -> Path:
        """Returns the full absolute path for a given key."""
        relative = Path(key.lstrip("/"))
        if ".." in relative.parts:
            raise ValidationError(f"Invalid object key: {key}", field="key")
        return self.base_path / relative

    def _url_for(self, key: str) -> str:
        if self.public_url_prefix:
            return f"{self.public_url_prefix}/{key.lstrip('/')}"
        return self._full_path(key).resolve().as_uri()

    def presign_upload(self, key: str, content_type: str, ttl_seconds: int = 3600) -> str:
        return self._url_for(key)

    def presign_download(self, key: str, ttl_seconds: int = 3600) -> str:
        return self._url_for(key)

    def download(self, key: str) -> bytes:
        full_path = self._full_path(key)
        if not full_path.is_file():
            raise NotFoundError("Object", key)
        return full_path.read_bytes()

    def upload(self, key: str, data: bytes, content_type: str) -> None:
        full_path = self._full_path(key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = full_path.with_name(full_path.name + ".part")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, full_path)

    def delete(self, key: str) -> None:
        full_path = self._full_path(key)
        if full_path.exists():
            os.remove(full_path)

    def exists(self, key: str) -> bool:
        return self._full_path(key).is_file()

    def ensure_bucket(self) -> bool:
        created = not self.base_path.exists()
        self.base_path.mkdir(parents=True, exist_ok=True)
        return created
