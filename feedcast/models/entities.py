"""
SQLAlchemy models for feedcast.

- UploadRecord: one row per artifact stored in the blob store
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import Column, DateTime, Index, Integer, String
from sqlalchemy import Enum as SQLEnum

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadStatus(str, Enum):
    """Ledger state of a stored artifact."""
    PENDING = "pending"
    COMMITTED = "committed"
    ABANDONED = "abandoned"


class UploadRecord(Base):
    """
    Ledger entry for one stored artifact.

    ``key``, ``content_type`` and ``created_at`` never change after insert.
    ``status`` only moves forward from pending.
    """

    __tablename__ = "uploads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column("s3_key", String(512), nullable=False, unique=True)
    content_type = Column("file_type", String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    status = Column(
        SQLEnum(UploadStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=16),
        nullable=False,
        default=UploadStatus.PENDING,
    )
    committed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_uploads_status_created", "status", "created_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "key": self.key,
            "content_type": self.content_type,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "status": self.status.value if self.status else None,
            "committed_at": self.committed_at.isoformat() if self.committed_at else None,
        }

    def __repr__(self) -> str:
        return f"<UploadRecord {self.id} {self.key} {self.status}>"
