"""
Asset Models
One uploaded file, its derived artifacts and its processing status.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, String, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from mediaflow.models.base import Base


class AssetStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


class Asset(Base):
    __tablename__ = "assets"
    __table_args__ = (
        Index("ix_assets_status_created_at", "status", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(64), nullable=False, index=True)

    # Immutable once set; unique across the bucket
    object_key = Column(String(512), nullable=False, unique=True)
    mime = Column(String(255), nullable=False)
    size = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default=AssetStatus.PENDING.value)
    thumb_key = Column(String(512), nullable=True)
    meta = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    jobs = relationship(
        "Job",
        back_populates="asset",
        cascade="all, delete-orphan",
    )
