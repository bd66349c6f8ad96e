"""
Unit tests for the Bluesky XRPC adapter.

Tests for:
- Session creation and PDS discovery from the DID document
- Blob upload and post record shape
- Error mapping of XRPC failures
- Video service auth, upload and job status parsing
"""

import json

import httpx
import pytest

from feedcast.adapters.bluesky import (
    EMBED_IMAGES,
    BlueskyAdapter,
    BlueskySession,
    images_embed,
    video_embed,
)
from feedcast.core.config import BlueskyConfig
from feedcast.core.exceptions import BlueskyAuthError, BlueskyError

SESSION = BlueskySession(access_jwt="jwt", did="did:plc:me", handle="feedcast.test", pds_url="https://pds.example.com")


def _adapter(handler, **config):
    return BlueskyAdapter(BlueskyConfig(**config), transport=httpx.MockTransport(handler))


class TestLogin:

    @pytest.mark.asyncio
    async def test_login_uses_pds_from_did_doc(self):
        def handler(request):
            assert request.url.path == "/xrpc/com.atproto.server.createSession"
            body = json.loads(request.content)
            assert body == {"identifier": "feedcast.test", "password": "app-password"}
            return httpx.Response(200, json={
                "accessJwt": "jwt",
                "did": "did:plc:me",
                "handle": "feedcast.test",
                "didDoc": {"service": [{"id": "#atproto_pds", "serviceEndpoint": "https://pds.example.com/"}]},
            })

        async with _adapter(handler) as adapter:
            session = await adapter.login()

        assert session == SESSION

    @pytest.mark.asyncio
    async def test_login_rejected(self):
        def handler(request):
            return httpx.Response(401, json={"error": "AuthenticationRequired", "message": "Invalid password"})

        async with _adapter(handler) as adapter:
            with pytest.raises(BlueskyAuthError) as exc_info:
                await adapter.login()

        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        async with _adapter(lambda r: httpx.Response(500), BLUESKY_IDENTIFIER="") as adapter:
            with pytest.raises(BlueskyAuthError):
                await adapter.login()


class TestRecords:

    @pytest.mark.asyncio
    async def test_upload_blob_sends_raw_bytes(self):
        def handler(request):
            assert request.url.host == "pds.example.com"
            assert request.headers["Content-Type"] == "image/jpeg"
            assert request.headers["Authorization"] == "Bearer jwt"
            assert request.content == b"jpeg"
            return httpx.Response(200, json={"blob": {"$type": "blob", "ref": {"$link": "cid"}}})

        async with _adapter(handler) as adapter:
            blob = await adapter.upload_blob(SESSION, b"jpeg", "image/jpeg")

        assert blob["ref"] == {"$link": "cid"}

    @pytest.mark.asyncio
    async def test_create_post_record(self):
        captured = {}

        def handler(request):
            captured.update(json.loads(request.content))
            return httpx.Response(200, json={"uri": "at://did:plc:me/app.bsky.feed.post/3kabc", "cid": "bafy"})

        embed = images_embed([{"blob": {"ref": "x"}, "alt": "a cat", "width": 800, "height": 533}])
        async with _adapter(handler) as adapter:
            post = await adapter.create_post(SESSION, "hello", facets=[{"f": 1}], embed=embed)

        assert post.rkey == "3kabc"
        assert captured["repo"] == "did:plc:me"
        assert captured["collection"] == "app.bsky.feed.post"
        record = captured["record"]
        assert record["text"] == "hello"
        assert record["createdAt"].endswith("Z")
        assert record["embed"]["$type"] == EMBED_IMAGES
        assert record["embed"]["images"][0]["aspectRatio"] == {"width": 800, "height": 533}

    @pytest.mark.asyncio
    async def test_rejection_raises_bluesky_error(self):
        def handler(request):
            return httpx.Response(400, json={"error": "InvalidRequest", "message": "Record/text must not be longer"})

        async with _adapter(handler) as adapter:
            with pytest.raises(BlueskyError) as exc_info:
                await adapter.create_post(SESSION, "x" * 5000)

        assert exc_info.value.status == 400
        assert "must not be longer" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_failure_raises_bluesky_error(self):
        def handler(request):
            raise httpx.ConnectError("boom")

        async with _adapter(handler) as adapter:
            with pytest.raises(BlueskyError):
                await adapter.upload_blob(SESSION, b"x", "image/png")

    @pytest.mark.asyncio
    async def test_unresolvable_handle_returns_none(self):
        def handler(request):
            return httpx.Response(400, json={"error": "InvalidRequest", "message": "Unable to resolve handle"})

        async with _adapter(handler) as adapter:
            assert await adapter.resolve_handle(SESSION, "ghost.example.com") is None


class TestVideo:

    @pytest.mark.asyncio
    async def test_upload_video_uses_service_auth(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path.endswith("getServiceAuth"):
                assert request.url.params["aud"] == "did:web:pds.example.com"
                assert request.url.params["lxm"] == "com.atproto.repo.uploadBlob"
                return httpx.Response(200, json={"token": "service-token"})
            assert request.url.host == "video.bsky.app"
            assert request.url.params["did"] == "did:plc:me"
            assert request.url.params["name"] == "clip.mp4"
            assert request.headers["Authorization"] == "Bearer service-token"
            assert request.headers["Content-Type"] == "video/mp4"
            return httpx.Response(200, json={"jobId": "job-1", "state": "JOB_STATE_CREATED"})

        async with _adapter(handler) as adapter:
            status = await adapter.upload_video(SESSION, b"mp4", "clip.mp4")

        assert (status.job_id, status.state) == ("job-1", "JOB_STATE_CREATED")
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_duplicate_upload_returns_existing_job(self):
        def handler(request):
            if request.url.path.endswith("getServiceAuth"):
                return httpx.Response(200, json={"token": "t"})
            return httpx.Response(409, json={"jobId": "job-1", "state": "JOB_STATE_COMPLETED", "error": "already_exists"})

        async with _adapter(handler) as adapter:
            status = await adapter.upload_video(SESSION, b"mp4", "clip.mp4")

        assert status.job_id == "job-1"

    @pytest.mark.asyncio
    async def test_job_status_parsing(self):
        def handler(request):
            assert request.url.params["jobId"] == "job-1"
            return httpx.Response(200, json={"jobStatus": {
                "jobId": "job-1", "did": "did:plc:me", "state": "JOB_STATE_COMPLETED",
                "progress": 100, "blob": {"ref": "v"},
            }})

        async with _adapter(handler) as adapter:
            status = await adapter.get_job_status(SESSION, "job-1")

        assert status.is_completed
        assert not status.is_failed
        assert status.blob == {"ref": "v"}

    def test_video_embed(self):
        assert video_embed({"ref": "v"}) == {"$type": "app.bsky.embed.video", "video": {"ref": "v"}}
