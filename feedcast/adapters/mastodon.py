"""
Mastodon adapter for feedcast.

Uploads media attachments and creates statuses through the Mastodon REST API.
Also provides the helper that downloads remote media referenced by URL in a
publish request.
"""

import time
from dataclasses import dataclass
from typing import Any

import httpx

from ..core.config import MastodonConfig, settings
from ..core.exceptions import MastodonError, MediaFetchError
from ..core.logging import get_logger, performance_logger
from ..observability.metrics import metrics

logger = get_logger("adapters.mastodon")


@dataclass
class MastodonStatus:
    """Created status."""
    id: str
    url: str | None = None
    uri: str | None = None


@dataclass
class RemoteMedia:
    """Media downloaded from a URL."""
    url: str
    data: bytes
    content_type: str

    @property
    def filename(self) -> str:
        name = self.url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
        return name or "media"


class MastodonAdapter:
    """Mastodon REST API adapter."""

    def __init__(self, config: MastodonConfig | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config or settings.mastodon
        self.api_base = self.config.url.rstrip("/")
        self.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout),
            headers={"User-Agent": "feedcast/1.0"},
            transport=transport,
        )

    async def __aenter__(self) -> "MastodonAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.http_client.aclose()

    def _get_access_token(self) -> str:
        token = self.config.access_token.get_secret_value()
        if not token:
            raise MastodonError("Mastodon access token not configured", status=401)
        return token

    async def _make_api_request(
        self,
        path: str,
        data: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """POST to the Mastodon API and return the decoded body."""
        headers = {"Authorization": f"Bearer {self._get_access_token()}"}
        start_time = time.time()
        try:
            response = await self.http_client.post(
                f"{self.api_base}{path}", data=data, json=json, files=files, headers=headers
            )
        except httpx.RequestError as e:
            metrics.track_external_api_call("mastodon", path, 0, time.time() - start_time)
            logger.error("Mastodon request failed", path=path, error=str(e))
            raise MastodonError(f"Mastodon request {path} failed: {e}") from e

        duration = time.time() - start_time
        metrics.track_external_api_call("mastodon", path, response.status_code, duration)
        performance_logger.log_external_api_call("mastodon", path, duration, response.status_code)

        if response.status_code >= 400:
            try:
                detail = response.json().get("error", response.text)
            except ValueError:
                detail = response.text
            logger.warning("Mastodon rejected request", path=path, status=response.status_code, error=detail)
            raise MastodonError(f"Mastodon {path} failed ({response.status_code}): {detail}", status=response.status_code)

        return response.json()

    async def upload_media(self, data: bytes, filename: str, content_type: str, description: str | None = None) -> str:
        """Upload an attachment and return its media id."""
        form = {"description": description} if description else None
        body = await self._make_api_request(
            "/api/v2/media",
            data=form,
            files={"file": (filename, data, content_type)},
        )
        media_id = body.get("id")
        if not media_id:
            raise MastodonError("Mastodon media upload returned no id")
        logger.info("Uploaded Mastodon media", media_id=media_id, size=len(data), content_type=content_type)
        return str(media_id)

    async def create_status(self, status: str, media_ids: list[str] | None = None, visibility: str | None = None) -> MastodonStatus:
        """Post a status."""
        payload: dict[str, Any] = {"status": status, "visibility": visibility or self.config.visibility}
        if media_ids:
            payload["media_ids"] = media_ids
        body = await self._make_api_request("/api/v1/statuses", json=payload)
        result = MastodonStatus(id=str(body["id"]), url=body.get("url"), uri=body.get("uri"))
        logger.info("Mastodon status created", status_id=result.id, media_count=len(media_ids or []))
        return result


async def fetch_remote_media(url: str, timeout: float = 60.0, transport: httpx.AsyncBaseTransport | None = None) -> RemoteMedia:
    """
    Download media from ``url``.

    Raises:
        MediaFetchError: On network failure or a non-2xx response
    """
    start_time = time.time()
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout), follow_redirects=True, transport=transport) as client:
        try:
            response = await client.get(url)
        except httpx.RequestError as e:
            logger.error("Remote media download failed", url=url, error=str(e))
            raise MediaFetchError(f"Failed to fetch {url}: {e}") from e

    metrics.track_external_api_call("remote", "fetch_media", response.status_code, time.time() - start_time)
    if response.status_code >= 400:
        raise MediaFetchError(f"Failed to fetch {url}: HTTP {response.status_code}", status=response.status_code)

    content_type = response.headers.get("Content-Type", "application/octet-stream").split(";")[0].strip()
    logger.info("Fetched remote media", url=url, size=len(response.content), content_type=content_type)
    return RemoteMedia(url=url, data=response.content, content_type=content_type)
