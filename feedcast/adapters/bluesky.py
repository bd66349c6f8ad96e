"""
Bluesky (AT Protocol) adapter for feedcast.

Talks XRPC over httpx: session creation, blob upload, post record creation,
handle resolution, and the video service (service auth, upload, job status).
Every non-2xx answer is raised as BlueskyError carrying the remote status.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import httpx

from ..core.config import BlueskyConfig, settings
from ..core.exceptions import BlueskyAuthError, BlueskyError
from ..core.logging import get_logger, performance_logger
from ..observability.metrics import metrics

logger = get_logger("adapters.bluesky")

POST_COLLECTION = "app.bsky.feed.post"
UPLOAD_BLOB_LXM = "com.atproto.repo.uploadBlob"

EMBED_IMAGES = "app.bsky.embed.images"
EMBED_EXTERNAL = "app.bsky.embed.external"
EMBED_VIDEO = "app.bsky.embed.video"

JOB_STATE_COMPLETED = "JOB_STATE_COMPLETED"
JOB_STATE_FAILED = "JOB_STATE_FAILED"


@dataclass
class BlueskySession:
    """Authenticated session for one publish operation."""
    access_jwt: str
    did: str
    handle: str
    pds_url: str


@dataclass
class PostRef:
    """Reference to a created post record."""
    uri: str
    cid: str | None = None

    @property
    def rkey(self) -> str:
        return self.uri.rsplit("/", 1)[-1]


@dataclass
class VideoJobStatus:
    """Status of a video processing job as reported by the video service."""
    job_id: str
    state: str
    blob: dict[str, Any] | None = None
    error: str | None = None
    message: str | None = None
    progress: int | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "VideoJobStatus":
        return cls(
            job_id=data.get("jobId", ""),
            state=data.get("state", ""),
            blob=data.get("blob"),
            error=data.get("error"),
            message=data.get("message"),
            progress=data.get("progress"),
        )

    @property
    def is_completed(self) -> bool:
        return self.state == JOB_STATE_COMPLETED

    @property
    def is_failed(self) -> bool:
        # A completed job may still carry error="already_exists"
        return self.state == JOB_STATE_FAILED or (bool(self.error) and not self.is_completed)


def images_embed(images: list[dict[str, Any]]) -> dict[str, Any]:
    """Build an images embed from ``[{"blob", "alt", "width", "height"}]``."""
    items = []
    for image in images:
        item = {"alt": image.get("alt", ""), "image": image["blob"]}
        if image.get("width") and image.get("height"):
            item["aspectRatio"] = {"width": int(image["width"]), "height": int(image["height"])}
        items.append(item)
    return {"$type": EMBED_IMAGES, "images": items}


def external_embed(uri: str, title: str, description: str, thumb: dict[str, Any] | None = None) -> dict[str, Any]:
    external = {"uri": uri, "title": title, "description": description}
    if thumb is not None:
        external["thumb"] = thumb
    return {"$type": EMBED_EXTERNAL, "external": external}


def video_embed(blob: dict[str, Any], alt: str | None = None, aspect_ratio: tuple[int, int] | None = None) -> dict[str, Any]:
    embed = {"$type": EMBED_VIDEO, "video": blob}
    if alt:
        embed["alt"] = alt
    if aspect_ratio:
        embed["aspectRatio"] = {"width": aspect_ratio[0], "height": aspect_ratio[1]}
    return embed


class BlueskyAdapter:
    """
    Bluesky XRPC client.

    One adapter instance owns one httpx client and is meant to live for a
    single publish operation:

        async with BlueskyAdapter() as bsky:
            session = await bsky.login()
            ...
    """

    def __init__(self, config: BlueskyConfig | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config or settings.bluesky
        self.service_url = self.config.service_url.rstrip("/")
        self.video_service_url = self.config.video_service_url.rstrip("/")
        self.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout),
            headers={"User-Agent": "feedcast/1.0"},
            transport=transport,
        )

    async def __aenter__(self) -> "BlueskyAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.http_client.aclose()

    async def _xrpc(
        self,
        method: str,
        base_url: str,
        nsid: str,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        content: bytes | None = None,
        content_type: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Make one XRPC call and return the decoded JSON body."""
        url = f"{base_url}/xrpc/{nsid}"
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if content_type:
            headers["Content-Type"] = content_type

        start_time = time.time()
        try:
            response = await self.http_client.request(
                method,
                url,
                params=params,
                json=json,
                content=content,
                headers=headers,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.RequestError as e:
            duration = time.time() - start_time
            metrics.track_external_api_call("bluesky", nsid, 0, duration)
            logger.error("Bluesky request failed", nsid=nsid, error=str(e))
            raise BlueskyError(f"Bluesky request {nsid} failed: {e}") from e

        duration = time.time() - start_time
        metrics.track_external_api_call("bluesky", nsid, response.status_code, duration)
        performance_logger.log_external_api_call("bluesky", nsid, duration, response.status_code)

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        if response.status_code >= 400:
            if isinstance(body, dict) and body.get("jobId") and nsid == "app.bsky.video.uploadVideo":
                # Video service answers 409 with the existing job for a duplicate upload
                logger.info("Video already uploaded", job_id=body.get("jobId"), status=response.status_code)
                return body
            error = body.get("error") if isinstance(body, dict) else None
            message = body.get("message") if isinstance(body, dict) else None
            detail = message or error or response.text or response.reason_phrase
            logger.warning("Bluesky rejected request", nsid=nsid, status=response.status_code, error=error, message=message)
            raise BlueskyError(f"Bluesky {nsid} failed ({response.status_code}): {detail}", status=response.status_code)

        return body

    async def login(self) -> BlueskySession:
        """
        Create a session with the configured identifier and app password.

        Raises:
            BlueskyAuthError: If credentials are missing or rejected
        """
        identifier = self.config.identifier
        password = self.config.password.get_secret_value()
        if not identifier or not password:
            raise BlueskyAuthError("Bluesky credentials not configured")

        try:
            data = await self._xrpc(
                "POST",
                self.service_url,
                "com.atproto.server.createSession",
                json={"identifier": identifier, "password": password},
            )
        except BlueskyError as e:
            raise BlueskyAuthError(str(e), status=e.status) from e

        session = BlueskySession(
            access_jwt=data["accessJwt"],
            did=data["did"],
            handle=data.get("handle", identifier),
            pds_url=self._pds_from_did_doc(data.get("didDoc")) or self.service_url,
        )
        logger.info("Bluesky session created", did=session.did, handle=session.handle, pds=session.pds_url)
        return session

    @staticmethod
    def _pds_from_did_doc(did_doc: dict[str, Any] | None) -> str | None:
        if not did_doc:
            return None
        for service in did_doc.get("service", []):
            if service.get("id", "").endswith("#atproto_pds") and service.get("serviceEndpoint"):
                return service["serviceEndpoint"].rstrip("/")
        return None

    async def resolve_handle(self, session: BlueskySession, handle: str) -> str | None:
        """DID for ``handle``, or None when it does not resolve."""
        try:
            data = await self._xrpc(
                "GET",
                session.pds_url,
                "com.atproto.identity.resolveHandle",
                token=session.access_jwt,
                params={"handle": handle},
            )
        except BlueskyError as e:
            if e.status == 400:
                logger.debug("Handle did not resolve", handle=handle)
                return None
            raise
        return data.get("did")

    async def upload_blob(self, session: BlueskySession, data: bytes, content_type: str) -> dict[str, Any]:
        """Upload bytes to the PDS and return the blob reference."""
        body = await self._xrpc(
            "POST",
            session.pds_url,
            UPLOAD_BLOB_LXM,
            token=session.access_jwt,
            content=data,
            content_type=content_type,
            timeout=self.config.upload_timeout,
        )
        blob = body.get("blob")
        if not blob:
            raise BlueskyError("Bluesky uploadBlob returned no blob")
        logger.info("Uploaded blob", size=len(data), content_type=content_type)
        return blob

    async def create_post(
        self,
        session: BlueskySession,
        text: str,
        facets: list[dict[str, Any]] | None = None,
        embed: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> PostRef:
        """Create an ``app.bsky.feed.post`` record in the session's repo."""
        record: dict[str, Any] = {
            "$type": POST_COLLECTION,
            "text": text,
            "createdAt": (created_at or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z"),
        }
        if facets:
            record["facets"] = facets
        if embed:
            record["embed"] = embed

        data = await self._xrpc(
            "POST",
            session.pds_url,
            "com.atproto.repo.createRecord",
            token=session.access_jwt,
            json={"repo": session.did, "collection": POST_COLLECTION, "record": record},
        )
        post = PostRef(uri=data["uri"], cid=data.get("cid"))
        logger.info("Bluesky post created", uri=post.uri, embed=embed.get("$type") if embed else None)
        return post

    async def get_service_auth(self, session: BlueskySession, aud: str, lxm: str, exp: int | None = None) -> str:
        """Mint a short-lived service token for ``lxm`` audience ``aud``."""
        params: dict[str, Any] = {"aud": aud, "lxm": lxm}
        if exp is not None:
            params["exp"] = exp
        data = await self._xrpc(
            "GET",
            session.pds_url,
            "com.atproto.server.getServiceAuth",
            token=session.access_jwt,
            params=params,
        )
        token = data.get("token")
        if not token:
            raise BlueskyAuthError("Bluesky getServiceAuth returned no token")
        return token

    async def upload_video(self, session: BlueskySession, data: bytes, name: str) -> VideoJobStatus:
        """
        Submit an MP4 to the video service.

        The service token's audience is the session's PDS, since the video
        service writes the processed blob back into the user's repo.
        """
        pds_host = urlparse(session.pds_url).hostname
        token = await self.get_service_auth(
            session,
            aud=f"did:web:{pds_host}",
            lxm=UPLOAD_BLOB_LXM,
            exp=int(time.time()) + self.config.service_auth_ttl,
        )
        body = await self._xrpc(
            "POST",
            self.video_service_url,
            "app.bsky.video.uploadVideo",
            token=token,
            params={"did": session.did, "name": name},
            content=data,
            content_type="video/mp4",
            timeout=self.config.upload_timeout,
        )
        status = VideoJobStatus.from_response(body.get("jobStatus", body))
        if not status.job_id:
            raise BlueskyError("Bluesky uploadVideo returned no job id")
        logger.info("Video submitted", job_id=status.job_id, state=status.state, size=len(data))
        return status

    async def get_job_status(self, session: BlueskySession, job_id: str) -> VideoJobStatus:
        """Current status of a video processing job."""
        body = await self._xrpc(
            "GET",
            self.video_service_url,
            "app.bsky.video.getJobStatus",
            token=session.access_jwt,
            params={"jobId": job_id},
        )
        return VideoJobStatus.from_response(body.get("jobStatus", {}))
