"""
API routes for feedcast.

This module provides:
- Health check endpoint
- Media upload and bucket listing
- Bluesky and Mastodon publish endpoints
- Pydantic request/response schemas
"""

import asyncio
import contextlib
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from pydantic import BaseModel, ConfigDict, Field

from ..adapters.storage_s3 import S3Storage
from ..core.config import Settings
from ..core.logging import get_logger
from ..models.db import db_manager
from ..services.ingest import IngestService
from ..services.publisher import MediaReference, PublishOrchestrator, PublishRequest
from .deps import get_ingest_service, get_publisher, get_settings, get_storage, verify_admin_token

router = APIRouter()
logger = get_logger("api")

UPLOAD_CHUNK_SIZE = 1024 * 1024
DISCONNECT_POLL_INTERVAL = 0.5


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str = Field(description="Application status")
    timestamp: datetime = Field(description="Response timestamp")
    version: str = Field(description="Application version")
    environment: str = Field(description="Environment name")
    services: dict[str, str] = Field(description="Service health status")


class ListObjectsResponse(BaseModel):
    """One page of stored objects, newest first."""

    model_config = ConfigDict(populate_by_name=True)

    contents: list[dict[str, Any]] = Field(default_factory=list, alias="Contents")
    next_continuation_token: str | None = Field(default=None, alias="NextContinuationToken")


class PublishResponse(BaseModel):
    success: str = Field(default="posted")


class PostToMastodonRequest(BaseModel):
    status: str = Field(min_length=1, description="Status text")


class PostMediaToMastodonRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = Field(description="Status text")
    image_url: str = Field(alias="imageUrl", description="Image or GIF to attach")
    description: str | None = Field(default=None, description="Attachment alt text")


class PostImageToBlueskyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = Field(description="Post text")
    image_url: str = Field(alias="imageUrl", description="Image to embed")
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)
    alt: str = Field(default="", description="Image alt text")


class PostLinkToBlueskyRequest(BaseModel):
    status: str = Field(description="Post text")
    url: str = Field(description="Link card target")
    image: str | None = Field(default=None, description="Stored thumbnail URL")
    title: str = Field(default="")
    description: str = Field(default="")


class PostGifToBlueskyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = Field(description="Post text")
    image_url: str = Field(alias="imageUrl", description="GIF or video to post as video")


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: Settings = Depends(get_settings)):
    """Report application and database health."""
    database_ok = db_manager.health_check()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=settings.app.version,
        environment=settings.app.environment,
        services={"database": "healthy" if database_ok else "unhealthy"},
    )


async def _save_upload(file: UploadFile, settings: Settings) -> str:
    """Stream an upload to the upload directory, enforcing the size limit."""
    upload_dir = Path(settings.media.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(file.filename or "").suffix.lower()
    target = upload_dir / f"{uuid.uuid4().hex}{suffix}"
    limit = settings.media.max_file_size_mb * 1024 * 1024

    written = 0
    try:
        with open(target, "wb") as out:
            while chunk := await file.read(UPLOAD_CHUNK_SIZE):
                written += len(chunk)
                if written > limit:
                    raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large.")
                out.write(chunk)
    except BaseException:
        if target.exists():
            os.remove(target)
        raise
    return str(target)


@router.post("/api/upload", dependencies=[Depends(verify_admin_token)])
async def upload_media(
    file: UploadFile | None = File(None),
    ingest: IngestService = Depends(get_ingest_service),
    settings: Settings = Depends(get_settings),
):
    """Store an uploaded image, GIF, video or audio file."""
    if file is None or not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file uploaded.")

    source_path = await _save_upload(file, settings)
    result = await ingest.ingest(source_path, file.filename, file.content_type)
    return result.to_response()


@router.get("/api/list-objects", response_model=ListObjectsResponse, response_model_by_alias=True,
            dependencies=[Depends(verify_admin_token)])
async def list_objects(
    continuation_token: str | None = Query(default=None, alias="continuationToken"),
    storage: S3Storage = Depends(get_storage),
):
    """List stored objects, newest first."""
    page = await storage.list_objects(continuation_token=continuation_token)
    return ListObjectsResponse(contents=page.contents, next_continuation_token=page.next_continuation_token)


@router.post("/api/postToMastodon", response_model=PublishResponse, dependencies=[Depends(verify_admin_token)])
async def post_to_mastodon(body: PostToMastodonRequest, publisher: PublishOrchestrator = Depends(get_publisher)):
    await publisher.post_to_mastodon(PublishRequest(status_text=body.status))
    return PublishResponse()


@router.post("/api/postImageOrGifToMastodon", response_model=PublishResponse, dependencies=[Depends(verify_admin_token)])
async def post_image_or_gif_to_mastodon(
    body: PostMediaToMastodonRequest, publisher: PublishOrchestrator = Depends(get_publisher)
):
    request = PublishRequest(
        status_text=body.status,
        media=MediaReference(url=body.image_url),
        alt_text=body.description or "",
    )
    await publisher.post_to_mastodon(request)
    return PublishResponse()


@router.post("/api/postImageToBluesky", response_model=PublishResponse, dependencies=[Depends(verify_admin_token)])
async def post_image_to_bluesky(
    body: PostImageToBlueskyRequest, publisher: PublishOrchestrator = Depends(get_publisher)
):
    await publisher.post_image_to_bluesky(body.status, body.image_url, body.width, body.height, body.alt)
    return PublishResponse()


@router.post("/api/postToBluesky", response_model=PublishResponse, dependencies=[Depends(verify_admin_token)])
async def post_link_to_bluesky(body: PostLinkToBlueskyRequest, publisher: PublishOrchestrator = Depends(get_publisher)):
    await publisher.post_link_card_to_bluesky(body.status, body.url, body.image, body.title, body.description)
    return PublishResponse()


async def watch_disconnect(request: Request, cancel_event: asyncio.Event, interval: float = DISCONNECT_POLL_INTERVAL):
    """Set ``cancel_event`` once the client has gone away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected, cancelling publish", path=request.url.path)
            cancel_event.set()
            return
        await asyncio.sleep(interval)


@router.post("/api/postGifToBluesky", response_model=PublishResponse, dependencies=[Depends(verify_admin_token)])
async def post_gif_to_bluesky(
    body: PostGifToBlueskyRequest, request: Request, publisher: PublishOrchestrator = Depends(get_publisher)
):
    """Post a GIF or video as a Bluesky video; a client disconnect aborts the processing wait."""
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(watch_disconnect(request, cancel_event))
    try:
        await publisher.post_video_to_bluesky(body.status, body.image_url, cancel_event=cancel_event)
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
    return PublishResponse()
