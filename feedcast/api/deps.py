"""
FastAPI dependency providers for feedcast.

This module provides:
- Configuration access
- Admin bearer-token authentication
- Storage, ledger, ingest and publish service providers
"""

import secrets
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status

from ..adapters.storage_s3 import S3Storage
from ..core.config import Settings, settings
from ..core.logging import get_logger
from ..models.db import db_manager
from ..models.repositories import UploadLedger
from ..services.ingest import IngestService
from ..services.publisher import PublishOrchestrator

logger = get_logger("api.deps")


def get_settings() -> Settings:
    """
    Get application settings.

    Returns:
        Settings instance
    """
    return settings


def verify_admin_token(
    authorization: str | None = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Require ``Authorization: Bearer <ADMIN_PASSWORD>``.

    Raises:
        HTTPException: 403 for a missing, malformed or wrong token, and when no
            admin password is configured
    """
    expected = settings.security.admin_password.get_secret_value()
    scheme, _, token = (authorization or "").partition(" ")

    if not expected or scheme.lower() != "bearer" or not token:
        logger.warning("Rejected request without admin token", has_header=bool(authorization))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    if not secrets.compare_digest(token.strip().encode(), expected.encode()):
        logger.warning("Rejected request with wrong admin token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@lru_cache
def get_storage() -> S3Storage:
    """Shared blob store client."""
    return S3Storage(settings)


def get_ledger() -> UploadLedger:
    return UploadLedger(db_manager)


def get_ingest_service(
    storage: S3Storage = Depends(get_storage),
    ledger: UploadLedger = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
) -> IngestService:
    return IngestService(storage=storage, ledger=ledger, config=settings)


def get_publisher(
    storage: S3Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> PublishOrchestrator:
    """A fresh orchestrator per request; platform sessions are never shared."""
    return PublishOrchestrator(storage=storage, config=settings)
