from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_DEFAULT_MIME_TYPES = ",".join(
    [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "application/pdf",
        "text/plain",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ]
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MEDIAFLOW_",
        env_file=".env",
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="dev", description="Environment name")
    HOST: str = Field(default="0.0.0.0", description="Bind host")
    PORT: int = Field(default=7920, description="Bind port")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///mediaflow_dev.db")
    SCHEMA_MODE: str = Field(
        default="create_all",
        description="create_all: auto-create tables (dev), migrations: use Alembic only (prod)",
    )

    # Object storage
    STORAGE_TYPE: str = Field(default="local", description="local|s3")
    LOCAL_STORAGE_PATH: str = Field(default="./data/storage")
    LOCAL_STORAGE_PUBLIC_URL_PREFIX: str = Field(default="")

    S3_BUCKET_NAME: str = Field(default="media-inbox")
    S3_ENDPOINT_URL: str = Field(default="http://localhost:9000")
    S3_PUBLIC_ENDPOINT_URL: str = Field(
        default="",
        description="Public S3 endpoint used in presigned URLs; defaults to S3_ENDPOINT_URL",
    )
    S3_ACCESS_KEY_ID: str = Field(default="minioadmin")
    S3_SECRET_ACCESS_KEY: str = Field(default="minioadmin")
    S3_REGION_NAME: str = Field(default="us-east-1")
    S3_FORCE_PATH_STYLE: bool = Field(default=True)
    PRESIGN_TTL_SECONDS: int = Field(default=3600, description="Presigned URL lifetime")

    # Upload intake
    MAX_FILE_SIZE: int = Field(default=104857600, description="Max upload size in bytes")
    ALLOWED_MIME_TYPES: str = Field(
        default=_DEFAULT_MIME_TYPES,
        description="Comma-separated list of accepted content types",
    )

    # Thumbnails
    THUMBNAIL_WIDTH: int = Field(default=300)
    THUMBNAIL_HEIGHT: int = Field(default=300)
    THUMBNAIL_QUALITY: int = Field(default=80)
    THUMBNAIL_FORMAT: str = Field(default="jpeg", description="jpeg|png|webp")
    THUMBNAIL_FIT: str = Field(
        default="cover", description="cover|contain|fill|inside|outside"
    )
    THUMBNAIL_BACKGROUND: str = Field(default="#FFFFFF")

    # Queue
    QUEUE_NAME: str = Field(default="media-processing")
    QUEUE_MAX_ATTEMPTS: int = Field(default=3)
    QUEUE_BACKOFF_SECONDS: int = Field(
        default=2, description="Base delay for exponential retry backoff"
    )
    QUEUE_KEEP_COMPLETED: int = Field(default=100)
    QUEUE_KEEP_FAILED: int = Field(default=50)
    QUEUE_LOCK_TIMEOUT_SECONDS: int = Field(
        default=600,
        description="Active tasks older than this are reclaimed; 0 disables",
    )

    # Worker
    WORKER_CONCURRENCY: int = Field(default=1)
    WORKER_POLL_INTERVAL_SECONDS: float = Field(default=1.0)
    WORKER_SHUTDOWN_GRACE_SECONDS: float = Field(default=5.0)

    # Job history
    JOB_RETENTION_DAYS: int = Field(default=30)

    # Access
    OPERATOR_IDS: str = Field(
        default="",
        description="Comma-separated owner ids allowed to run queue operator commands",
    )

    def allowed_mime_types(self) -> List[str]:
        return [m.strip() for m in self.ALLOWED_MIME_TYPES.split(",") if m.strip()]

    def operator_ids(self) -> List[str]:
        return [o.strip() for o in self.OPERATOR_IDS.split(",") if o.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
