"""
Repository classes for feedcast.

This module provides:
- UploadRecordRepository: session-bound queries over the uploads table
- UploadLedger: append-mostly ledger API with pending/committed states,
  one short transaction per call
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import LedgerError
from ..core.logging import get_logger
from .db import DatabaseManager, db_manager
from .entities import UploadRecord, UploadStatus

logger = get_logger("models.repositories")


class UploadRecordRepository:
    """Queries over UploadRecord rows within a caller-owned session."""

    def __init__(self, session: Session):
        self.session = session

    def create_pending(self, key: str, content_type: str) -> UploadRecord:
        """Insert a pending record for a key that is about to be stored."""
        record = UploadRecord(key=key, content_type=content_type, status=UploadStatus.PENDING)
        self.session.add(record)
        self.session.flush()
        return record

    def get_by_id(self, record_id: int) -> UploadRecord | None:
        return self.session.get(UploadRecord, record_id)

    def get_by_key(self, key: str) -> UploadRecord | None:
        return self.session.query(UploadRecord).filter(UploadRecord.key == key).first()

    def transition(self, record_id: int, status: UploadStatus) -> UploadRecord:
        """Move a pending record to ``status``."""
        record = self.get_by_id(record_id)
        if record is None:
            raise LedgerError(f"Upload record {record_id} does not exist")
        if record.status != UploadStatus.PENDING:
            raise LedgerError(f"Upload record {record_id} is already {record.status.value}")
        record.status = status
        if status == UploadStatus.COMMITTED:
            record.committed_at = datetime.now(timezone.utc)
        self.session.flush()
        return record

    def get_pending_before(self, cutoff: datetime, limit: int = 500) -> list[UploadRecord]:
        return self.session.query(UploadRecord).filter(
            UploadRecord.status == UploadStatus.PENDING,
            UploadRecord.created_at < cutoff,
        ).order_by(UploadRecord.created_at.asc()).limit(limit).all()

    def get_committed(self, limit: int = 100, offset: int = 0) -> list[UploadRecord]:
        return self.session.query(UploadRecord).filter(
            UploadRecord.status == UploadStatus.COMMITTED
        ).order_by(UploadRecord.created_at.desc()).limit(limit).offset(offset).all()


class UploadLedger:
    """
    Ledger of stored artifacts.

    Each artifact gets a pending record before its upload and is committed
    after the blob store accepts it. Pending records left behind by a crash or
    a failed upload are picked up by the reconciliation sweep.
    """

    def __init__(self, manager: DatabaseManager | None = None):
        self.manager = manager or db_manager

    def begin(self, key: str, content_type: str) -> UploadRecord:
        """
        Record the intent to store ``key``.

        Raises:
            LedgerError: If the key already exists or the write fails
        """
        try:
            with self.manager.get_session() as session:
                record = UploadRecordRepository(session).create_pending(key, content_type)
                logger.debug("Ledger record pending", key=key, record_id=record.id)
                return record
        except IntegrityError as e:
            raise LedgerError(f"Storage key collision: {key}") from e
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to record upload {key}: {e}") from e

    def commit(self, record_id: int) -> UploadRecord:
        """Mark a pending record as committed."""
        return self._transition(record_id, UploadStatus.COMMITTED)

    def mark_abandoned(self, record_id: int) -> UploadRecord:
        """Mark a pending record whose object never reached storage."""
        return self._transition(record_id, UploadStatus.ABANDONED)

    def _transition(self, record_id: int, status: UploadStatus) -> UploadRecord:
        try:
            with self.manager.get_session() as session:
                return UploadRecordRepository(session).transition(record_id, status)
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to update upload record {record_id}: {e}") from e

    def get_by_key(self, key: str) -> UploadRecord | None:
        try:
            with self.manager.get_session() as session:
                return UploadRecordRepository(session).get_by_key(key)
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to read upload record {key}: {e}") from e

    def list_pending(self, older_than: timedelta) -> list[UploadRecord]:
        """Pending records created more than ``older_than`` ago."""
        cutoff = datetime.now(timezone.utc) - older_than
        try:
            with self.manager.get_session() as session:
                return UploadRecordRepository(session).get_pending_before(cutoff)
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to list pending uploads: {e}") from e

    def list_committed(self, limit: int = 100, offset: int = 0) -> list[UploadRecord]:
        try:
            with self.manager.get_session() as session:
                return UploadRecordRepository(session).get_committed(limit, offset)
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to list uploads: {e}") from e
