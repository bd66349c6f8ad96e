"""
Publish orchestrator for feedcast.

Turns a publish request into exactly one post on Bluesky or Mastodon. Each
orchestrator call opens its own platform client and session; nothing is shared
between requests. Post creation is never retried automatically.
"""

import asyncio
import contextlib
import mimetypes
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from ..adapters.bluesky import BlueskyAdapter, BlueskySession, PostRef, external_embed, images_embed
from ..adapters.mastodon import MastodonAdapter, RemoteMedia, fetch_remote_media
from ..adapters.rich_text import RichText, detect_facets
from ..adapters.storage_s3 import S3Storage
from ..core.config import Settings, settings
from ..core.exceptions import FeedcastError
from ..core.logging import audit_logger, get_logger, with_logging_context
from ..observability.metrics import metrics
from .video_publish import Transcoder, VideoPublishStateMachine

logger = get_logger("services.publisher")

VIDEO_LIKE_TYPES = ("image/gif", "video/")


@dataclass
class MediaReference:
    """Media attached to a publish request: inline bytes or a URL."""
    data: bytes | None = None
    url: str | None = None
    content_type: str | None = None
    name: str | None = None

    def __post_init__(self):
        if self.data is None and not self.url:
            raise ValueError("MediaReference needs data or url")


@dataclass
class LinkPreview:
    """External link card."""
    url: str
    title: str = ""
    description: str = ""
    thumbnail: str | None = None


@dataclass
class PublishRequest:
    """What to post."""
    status_text: str
    media: MediaReference | None = None
    dimensions: tuple[int, int] | None = None
    alt_text: str = ""
    link_preview: LinkPreview | None = None
    as_video: bool = False


@dataclass
class PublishResult:
    """Outcome of a successful publish."""
    platform: str
    post_id: str
    uri: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"platform": self.platform, "post_id": self.post_id, "uri": self.uri}


class PublishOrchestrator:
    """Per-request publish driver."""

    def __init__(
        self,
        storage: S3Storage | None = None,
        config: Settings | None = None,
        bluesky_transport: httpx.AsyncBaseTransport | None = None,
        mastodon_transport: httpx.AsyncBaseTransport | None = None,
        media_transport: httpx.AsyncBaseTransport | None = None,
        transcoder: Transcoder | None = None,
    ):
        self.config = config or settings
        self.storage = storage or S3Storage(self.config)
        self.bluesky_transport = bluesky_transport
        self.mastodon_transport = mastodon_transport
        self.media_transport = media_transport
        self.transcoder = transcoder

    # Bluesky

    async def post_to_bluesky(self, request: PublishRequest, cancel_event: asyncio.Event | None = None) -> PublishResult:
        """
        Publish ``request`` to Bluesky with at most one embed.

        Link preview wins over media. Media is posted as a video when
        ``as_video`` is set or its type is an animated image or video.
        """
        embed_kind = self._bluesky_embed_kind(request)
        if embed_kind == "video":
            return await self._post_video_to_bluesky(request, cancel_event)

        async def _publish(adapter: BlueskyAdapter, session: BlueskySession) -> PostRef:
            rich_text = await self._detect_facets(adapter, session, request.status_text)
            embed = None
            if embed_kind == "external":
                embed = await self._link_card_embed(adapter, session, request.link_preview)
            elif embed_kind == "images":
                embed = await self._image_embed(adapter, session, request)
            return await adapter.create_post(session, rich_text.text, facets=rich_text.facets, embed=embed)

        return await self._run_bluesky(embed_kind, _publish)

    async def post_image_to_bluesky(
        self, status: str, image_url: str, width: int | None = None, height: int | None = None, alt: str = ""
    ) -> PublishResult:
        dimensions = (int(width), int(height)) if width and height else None
        return await self.post_to_bluesky(
            PublishRequest(status, media=MediaReference(url=image_url), dimensions=dimensions, alt_text=alt)
        )

    async def post_link_card_to_bluesky(
        self, status: str, url: str, image: str | None, title: str = "", description: str = ""
    ) -> PublishResult:
        return await self.post_to_bluesky(
            PublishRequest(status, link_preview=LinkPreview(url=url, title=title, description=description, thumbnail=image))
        )

    async def post_video_to_bluesky(
        self, status: str, video_url: str, cancel_event: asyncio.Event | None = None
    ) -> PublishResult:
        return await self.post_to_bluesky(
            PublishRequest(status, media=MediaReference(url=video_url), as_video=True), cancel_event=cancel_event
        )

    async def _post_video_to_bluesky(
        self, request: PublishRequest, cancel_event: asyncio.Event | None
    ) -> PublishResult:
        """Fetch and transcode first; log in only once the MP4 exists."""
        machine = VideoPublishStateMachine(config=self.config.bluesky, transcoder=self.transcoder)

        async with contextlib.AsyncExitStack() as stack:
            try:
                media = await self._load_media(request.media)
                video_bytes = await stack.enter_async_context(machine.prepare(media.data, media.filename))
            except FeedcastError as e:
                self._record_failure("bluesky", e)
                raise

            async def _publish(adapter: BlueskyAdapter, session: BlueskySession) -> PostRef:
                rich_text = await self._detect_facets(adapter, session, request.status_text)
                return await machine.publish(
                    adapter, session, video_bytes, rich_text.text, cancel_event=cancel_event,
                    name=media.filename, facets=rich_text.facets,
                )

            return await self._run_bluesky("video", _publish)

    @staticmethod
    async def _detect_facets(adapter: BlueskyAdapter, session: BlueskySession, text: str) -> RichText:
        return await detect_facets(text, lambda handle: adapter.resolve_handle(session, handle))

    @staticmethod
    def _bluesky_embed_kind(request: PublishRequest) -> str:
        if request.link_preview is not None:
            return "external"
        if request.media is None:
            return "none"
        content_type = request.media.content_type or ""
        if request.as_video or content_type.startswith(VIDEO_LIKE_TYPES):
            return "video"
        return "images"

    async def _run_bluesky(
        self, embed_kind: str, publish: Callable[[BlueskyAdapter, BlueskySession], Awaitable[PostRef]]
    ) -> PublishResult:
        start_time = time.time()
        with with_logging_context(platform="bluesky", embed=embed_kind):
            try:
                async with BlueskyAdapter(self.config.bluesky, transport=self.bluesky_transport) as adapter:
                    session = await adapter.login()
                    post = await publish(adapter, session)
            except FeedcastError as e:
                self._record_failure("bluesky", e)
                raise

            result = PublishResult(platform="bluesky", post_id=post.rkey, uri=post.uri)
            metrics.track_post_published("bluesky", embed_kind)
            audit_logger.log_post_published(
                "bluesky", result.post_id, result.uri, embed=embed_kind, duration=time.time() - start_time
            )
            return result

    async def _image_embed(self, adapter: BlueskyAdapter, session: BlueskySession, request: PublishRequest) -> dict[str, Any]:
        media = await self._load_media(request.media)
        blob = await adapter.upload_blob(session, media.data, media.content_type)
        width, height = request.dimensions or (None, None)
        return images_embed([{"blob": blob, "alt": request.alt_text, "width": width, "height": height}])

    async def _link_card_embed(self, adapter: BlueskyAdapter, session: BlueskySession, preview: LinkPreview) -> dict[str, Any]:
        thumb = None
        if preview.thumbnail:
            key = self.storage.resolve_key(preview.thumbnail)
            stored = await self.storage.fetch(key)
            thumb = await adapter.upload_blob(session, stored.data, stored.content_type)
        return external_embed(preview.url, preview.title, preview.description, thumb)

    async def _load_media(self, reference: MediaReference) -> RemoteMedia:
        if reference.data is not None:
            content_type = reference.content_type or "application/octet-stream"
            return RemoteMedia(url=reference.name or "media", data=reference.data, content_type=content_type)

        media = await fetch_remote_media(reference.url, transport=self.media_transport)
        if reference.content_type:
            media.content_type = reference.content_type
        elif media.content_type == "application/octet-stream":
            guessed, _ = mimetypes.guess_type(media.filename)
            media.content_type = guessed or media.content_type
        return media

    # Mastodon

    async def post_to_mastodon(self, request: PublishRequest) -> PublishResult:
        """Post a status, uploading the request's media as one attachment when present."""
        embed_kind = "media" if request.media is not None else "none"
        start_time = time.time()
        with with_logging_context(platform="mastodon", embed=embed_kind):
            try:
                async with MastodonAdapter(self.config.mastodon, transport=self.mastodon_transport) as adapter:
                    media_ids = []
                    if request.media is not None:
                        media = await self._load_media(request.media)
                        media_ids.append(
                            await adapter.upload_media(
                                media.data, media.filename, media.content_type, description=request.alt_text or None
                            )
                        )
                    status = await adapter.create_status(request.status_text, media_ids=media_ids)
            except FeedcastError as e:
                self._record_failure("mastodon", e)
                raise

            result = PublishResult(platform="mastodon", post_id=status.id, uri=status.url or status.uri)
            metrics.track_post_published("mastodon", embed_kind)
            audit_logger.log_post_published(
                "mastodon", result.post_id, result.uri, embed=embed_kind, duration=time.time() - start_time
            )
            return result

    @staticmethod
    def _record_failure(platform: str, error: FeedcastError) -> None:
        metrics.track_post_failed(platform, type(error).__name__)
        audit_logger.log_post_failed(platform, str(error), error_type=type(error).__name__)
