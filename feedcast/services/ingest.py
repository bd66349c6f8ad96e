"""
Ingest pipeline for feedcast.

classify -> transform -> for each artifact (ledger begin, store, ledger commit)
-> cleanup. Local files for the request are removed on every exit path.
"""

import asyncio
import os
import secrets
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..adapters.storage_s3 import S3Storage
from ..core.config import Settings, settings
from ..core.exceptions import FeedcastError
from ..core.logging import audit_logger, get_logger, with_logging_context
from ..media.classifier import MediaClass, normalize_extension, require_supported
from ..media.transform import ArtifactRole, DerivedArtifact, MediaAsset, derive_artifacts
from ..models.repositories import UploadLedger
from ..observability.metrics import metrics

logger = get_logger("services.ingest")

BASE_NAME_FORMAT = "%Y-%m-%d-%H-%M-%S"
TOKEN_BYTES = 6

RESPONSE_FIELDS = {
    MediaClass.IMAGE: ("Images uploaded successfully", {"smallImageUrl": ArtifactRole.SMALL, "largeImageUrl": ArtifactRole.LARGE}),
    MediaClass.ANIMATED_IMAGE: ("GIF and preview uploaded successfully", {"gifUrl": ArtifactRole.GIF, "jpgUrl": ArtifactRole.GIF_PREVIEW}),
    MediaClass.VIDEO: ("Video uploaded successfully", {"videoUrl": ArtifactRole.VIDEO}),
    MediaClass.AUDIO: ("Audio uploaded successfully", {"audioUrl": ArtifactRole.AUDIO}),
}


def make_base_name(now: datetime | None = None, token: str | None = None) -> str:
    """``YYYY-MM-DD-HH-MM-SS-<12 hex chars>``; the token keeps same-second uploads apart."""
    now = now or datetime.now(timezone.utc)
    token = token or secrets.token_hex(TOKEN_BYTES)
    return f"{now.strftime(BASE_NAME_FORMAT)}-{token}"


@dataclass
class StoredArtifact:
    key: str
    locator: str
    role: ArtifactRole
    content_type: str
    record_id: int | None = None


@dataclass
class IngestResult:
    """Stored artifacts of one upload."""
    media_class: MediaClass
    base_name: str
    artifacts: list[StoredArtifact] = field(default_factory=list)

    def locator(self, role: ArtifactRole) -> str | None:
        for artifact in self.artifacts:
            if artifact.role == role:
                return artifact.locator
        return None

    def to_response(self) -> dict[str, Any]:
        """JSON body returned by the upload endpoint."""
        message, fields = RESPONSE_FIELDS[self.media_class]
        response = {"message": message}
        for name, role in fields.items():
            response[name] = self.locator(role)
        return response


@dataclass
class ReconcileReport:
    """Outcome of a pending-record sweep."""
    examined: int = 0
    committed: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)


class IngestService:
    """Turns one uploaded file into stored, ledgered artifacts."""

    def __init__(self, storage: S3Storage | None = None, ledger: UploadLedger | None = None, config: Settings | None = None):
        self.config = config or settings
        self.storage = storage or S3Storage(self.config)
        self.ledger = ledger or UploadLedger()

    def _should_record(self, artifact: DerivedArtifact) -> bool:
        if artifact.role == ArtifactRole.GIF_PREVIEW:
            return self.config.media.record_gif_preview
        return True

    async def ingest(
        self,
        source_path: str,
        original_filename: str,
        mime_type: str | None,
        base_name: str | None = None,
    ) -> IngestResult:
        """
        Process an uploaded file that was written to ``source_path``.

        The file at ``source_path`` is owned by this call and removed before it
        returns, whatever the outcome.

        Raises:
            ClassificationError: Unsupported media; nothing is stored or recorded
            TransformError: Processing failed; nothing is stored
            StorageError: Upload failed; the pending record stays for the sweep
            LedgerError: Key collision or ledger write failure
        """
        extension = normalize_extension(os.path.splitext(original_filename or "")[1])
        work_dir = None
        media_class = None
        start_time = time.time()

        try:
            media_class = require_supported(mime_type, extension)
            base_name = base_name or make_base_name()

            with with_logging_context(base_name=base_name, media_class=media_class.value):
                logger.info("Ingesting upload", filename=original_filename, mime_type=mime_type)

                upload_root = Path(self.config.media.upload_dir)
                upload_root.mkdir(parents=True, exist_ok=True)
                work_dir = tempfile.mkdtemp(prefix=f"{base_name}-", dir=upload_root)

                asset = MediaAsset(source_path, mime_type or "", base_name, extension)
                loop = asyncio.get_running_loop()
                artifacts = await loop.run_in_executor(
                    None, derive_artifacts, asset, media_class, work_dir, self.config.media
                )

                result = IngestResult(media_class=media_class, base_name=base_name)
                for artifact in artifacts:
                    result.artifacts.append(await self._store_artifact(artifact))

            metrics.track_media_ingested(media_class.value, True)
            metrics.track_media_processing(media_class.value, "ingest", time.time() - start_time)
            logger.info("Upload ingested", base_name=base_name, artifacts=len(result.artifacts))
            return result

        except FeedcastError as e:
            metrics.track_media_ingested(media_class.value if media_class else MediaClass.UNSUPPORTED.value, False)
            logger.warning("Ingest failed", filename=original_filename, error=str(e), error_type=type(e).__name__)
            raise
        finally:
            if os.path.exists(source_path):
                os.remove(source_path)
            if work_dir:
                shutil.rmtree(work_dir, ignore_errors=True)

    @staticmethod
    async def _run_ledger(func, *args):
        """Run a blocking ledger call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def _store_artifact(self, artifact: DerivedArtifact) -> StoredArtifact:
        record = None
        if self._should_record(artifact):
            record = await self._run_ledger(self.ledger.begin, artifact.target_key, artifact.content_type)

        # A failed store leaves the record pending for reconcile_pending
        locator = await self.storage.store(artifact.local_path, artifact.target_key, artifact.content_type)

        if record is not None:
            await self._run_ledger(self.ledger.commit, record.id)
        audit_logger.log_upload_stored(
            artifact.target_key, artifact.content_type, artifact.role.value, locator,
            record_id=record.id if record is not None else None,
        )
        return StoredArtifact(
            key=artifact.target_key,
            locator=locator,
            role=artifact.role,
            content_type=artifact.content_type,
            record_id=record.id if record is not None else None,
        )

    async def reconcile_pending(self, grace: timedelta = timedelta(minutes=15)) -> ReconcileReport:
        """
        Resolve pending records older than ``grace``.

        A record whose object exists in storage is committed; any other is
        marked abandoned.
        """
        report = ReconcileReport()
        for record in await self._run_ledger(self.ledger.list_pending, grace):
            report.examined += 1
            if await self.storage.exists(record.key):
                await self._run_ledger(self.ledger.commit, record.id)
                report.committed.append(record.key)
            else:
                await self._run_ledger(self.ledger.mark_abandoned, record.id)
                report.abandoned.append(record.key)

        logger.info(
            "Reconciled pending uploads",
            examined=report.examined,
            committed=len(report.committed),
            abandoned=len(report.abandoned),
        )
        return report
