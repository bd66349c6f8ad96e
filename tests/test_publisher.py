"""
Unit tests for the publish orchestrator.

Tests for:
- Link card thumbnails resolved from stored URLs
- Image, text-only and video Bluesky posts
- Mastodon media flow
- Failures propagate and nothing is posted
- Video transcode completes before any Bluesky call
"""

import json
from unittest.mock import MagicMock

import httpx
import pytest
from minio.error import S3Error

from feedcast.adapters.storage_s3 import S3Storage
from feedcast.core.exceptions import BlobNotFoundError, BlueskyError, MediaFetchError, TransformError
from feedcast.services.publisher import MediaReference, PublishOrchestrator, PublishRequest

THUMB_KEY = "2024-05-01-12-00-00-abcdef012345-800.jpg"


class FakeBluesky:
    """In-memory XRPC endpoint recording every call."""

    def __init__(self, jobs=None):
        self.calls = []
        self.records = []
        self.blobs = []
        self.jobs = list(jobs or [])

    def __call__(self, request):
        nsid = request.url.path.rsplit("/", 1)[-1]
        self.calls.append(nsid)
        if nsid == "com.atproto.server.createSession":
            return httpx.Response(200, json={"accessJwt": "jwt", "did": "did:plc:me", "handle": "me.test"})
        if nsid == "com.atproto.identity.resolveHandle":
            return httpx.Response(200, json={"did": "did:plc:alice"})
        if nsid == "com.atproto.repo.uploadBlob":
            self.blobs.append((request.headers["Content-Type"], request.content))
            return httpx.Response(200, json={"blob": {"ref": {"$link": f"blob-{len(self.blobs)}"}}})
        if nsid == "com.atproto.server.getServiceAuth":
            return httpx.Response(200, json={"token": "service"})
        if nsid == "app.bsky.video.uploadVideo":
            return httpx.Response(200, json={"jobId": "job-1", "state": "JOB_STATE_CREATED"})
        if nsid == "app.bsky.video.getJobStatus":
            return httpx.Response(200, json={"jobStatus": self.jobs.pop(0)})
        if nsid == "com.atproto.repo.createRecord":
            self.records.append(json.loads(request.content)["record"])
            return httpx.Response(200, json={"uri": f"at://did:plc:me/app.bsky.feed.post/{len(self.records)}"})
        return httpx.Response(404, json={"error": "MethodNotImplemented"})


def _media_transport(content=b"image-bytes", content_type="image/jpeg"):
    return httpx.MockTransport(lambda r: httpx.Response(200, content=content, headers={"Content-Type": content_type}))


@pytest.fixture
def storage(test_settings, minio_client):
    return S3Storage(test_settings, client=minio_client)


def _orchestrator(test_settings, storage, bluesky=None, mastodon=None, media=None, transcoder=None):
    return PublishOrchestrator(
        storage=storage,
        config=test_settings,
        bluesky_transport=httpx.MockTransport(bluesky) if bluesky else None,
        mastodon_transport=httpx.MockTransport(mastodon) if mastodon else None,
        media_transport=media,
        transcoder=transcoder,
    )


class TestLinkCard:

    @pytest.mark.asyncio
    async def test_thumbnail_fetched_from_store(self, test_settings, storage, minio_client):
        """Stored thumbnail URL -> key -> blob -> external embed."""
        response = MagicMock()
        response.read.return_value = b"thumb-bytes"
        response.headers = {"Content-Type": "image/jpeg"}
        minio_client.get_object.return_value = response
        bluesky = FakeBluesky()

        result = await _orchestrator(test_settings, storage, bluesky=bluesky).post_link_card_to_bluesky(
            "new post https://blog.example.com/p",
            "https://blog.example.com/p",
            f"https://test-bucket.s3.amazonaws.com/{THUMB_KEY}",
            "Title",
            "Description",
        )

        assert minio_client.get_object.call_args.kwargs["object_name"] == THUMB_KEY
        assert bluesky.blobs == [("image/jpeg", b"thumb-bytes")]
        (record,) = bluesky.records
        external = record["embed"]["external"]
        assert record["embed"]["$type"] == "app.bsky.embed.external"
        assert external["uri"] == "https://blog.example.com/p"
        assert external["title"] == "Title"
        assert external["thumb"] == {"ref": {"$link": "blob-1"}}
        assert record["facets"][0]["features"][0]["uri"] == "https://blog.example.com/p"
        assert result.platform == "bluesky"
        assert result.post_id == "1"

    @pytest.mark.asyncio
    async def test_unmatched_thumbnail_prefix_fails_without_posting(self, test_settings, storage, minio_client):
        minio_client.get_object.side_effect = S3Error(
            code="NoSuchKey", message="missing", resource="r",
            request_id="q", host_id="h", response=MagicMock(),
        )
        bluesky = FakeBluesky()

        with pytest.raises(BlobNotFoundError):
            await _orchestrator(test_settings, storage, bluesky=bluesky).post_link_card_to_bluesky(
                "x", "https://blog.example.com/p", "https://elsewhere.example.com/thumb.jpg"
            )

        assert minio_client.get_object.call_args.kwargs["object_name"] == "https://elsewhere.example.com/thumb.jpg"
        assert bluesky.records == []


class TestBlueskyPosts:

    @pytest.mark.asyncio
    async def test_image_post(self, test_settings, storage):
        bluesky = FakeBluesky()

        await _orchestrator(test_settings, storage, bluesky=bluesky, media=_media_transport()).post_image_to_bluesky(
            "cat @alice.bsky.social", "https://cdn.example.com/cat.jpg", width=800, height=600, alt="a cat"
        )

        (record,) = bluesky.records
        image = record["embed"]["images"][0]
        assert image["alt"] == "a cat"
        assert image["aspectRatio"] == {"width": 800, "height": 600}
        assert bluesky.blobs == [("image/jpeg", b"image-bytes")]
        assert record["facets"][0]["features"][0]["did"] == "did:plc:alice"

    @pytest.mark.asyncio
    async def test_text_only_post(self, test_settings, storage):
        bluesky = FakeBluesky()

        await _orchestrator(test_settings, storage, bluesky=bluesky).post_to_bluesky(PublishRequest("just words"))

        (record,) = bluesky.records
        assert "embed" not in record
        assert bluesky.calls.count("com.atproto.server.createSession") == 1

    @pytest.mark.asyncio
    async def test_video_post(self, test_settings, storage):
        test_settings.bluesky.video_poll_interval = 0.0
        bluesky = FakeBluesky(jobs=[
            {"jobId": "job-1", "state": "JOB_STATE_ENCODING"},
            {"jobId": "job-1", "state": "JOB_STATE_COMPLETED", "blob": {"ref": {"$link": "vid"}}},
        ])

        async def _transcode(input_path, output_path):
            with open(output_path, "wb") as f:
                f.write(b"mp4")

        await _orchestrator(
            test_settings, storage, bluesky=bluesky, media=_media_transport(b"GIF89a", "image/gif"), transcoder=_transcode,
        ).post_video_to_bluesky("party", "https://cdn.example.com/party.gif")

        assert bluesky.calls.count("app.bsky.video.getJobStatus") == 2
        (record,) = bluesky.records
        assert record["embed"] == {"$type": "app.bsky.embed.video", "video": {"ref": {"$link": "vid"}}}

    @pytest.mark.asyncio
    async def test_video_transcode_failure_makes_no_bluesky_call(self, test_settings, storage):
        bluesky = FakeBluesky()

        async def _broken(input_path, output_path):
            raise TransformError("ffmpeg exploded")

        with pytest.raises(TransformError):
            await _orchestrator(
                test_settings, storage, bluesky=bluesky, media=_media_transport(b"GIF89a", "image/gif"), transcoder=_broken,
            ).post_video_to_bluesky("party @alice.bsky.social", "https://cdn.example.com/party.gif")

        assert bluesky.calls == []

    @pytest.mark.asyncio
    async def test_video_login_happens_after_transcode(self, test_settings, storage):
        test_settings.bluesky.video_poll_interval = 0.0
        bluesky = FakeBluesky(jobs=[{"jobId": "job-1", "state": "JOB_STATE_COMPLETED", "blob": {"ref": {"$link": "vid"}}}])
        calls_at_transcode = []

        async def _transcode(input_path, output_path):
            calls_at_transcode.extend(bluesky.calls)
            with open(output_path, "wb") as f:
                f.write(b"mp4")

        await _orchestrator(
            test_settings, storage, bluesky=bluesky, media=_media_transport(b"GIF89a", "image/gif"), transcoder=_transcode,
        ).post_video_to_bluesky("party", "https://cdn.example.com/party.gif")

        assert calls_at_transcode == []
        assert bluesky.calls[0] == "com.atproto.server.createSession"

    @pytest.mark.asyncio
    async def test_media_fetch_failure(self, test_settings, storage):
        bluesky = FakeBluesky()
        media = httpx.MockTransport(lambda r: httpx.Response(404))

        with pytest.raises(MediaFetchError):
            await _orchestrator(test_settings, storage, bluesky=bluesky, media=media).post_image_to_bluesky(
                "x", "https://cdn.example.com/gone.jpg"
            )

        assert bluesky.records == []

    @pytest.mark.asyncio
    async def test_platform_rejection_propagates(self, test_settings, storage):
        def handler(request):
            if request.url.path.endswith("createSession"):
                return httpx.Response(200, json={"accessJwt": "jwt", "did": "did:plc:me", "handle": "me.test"})
            return httpx.Response(500, json={"error": "InternalServerError"})

        with pytest.raises(BlueskyError):
            await _orchestrator(test_settings, storage, bluesky=handler).post_to_bluesky(PublishRequest("hello"))


class TestMastodon:

    @pytest.mark.asyncio
    async def test_media_status(self, test_settings, storage):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if request.url.path == "/api/v2/media":
                return httpx.Response(200, json={"id": "m1"})
            assert json.loads(request.content)["media_ids"] == ["m1"]
            return httpx.Response(200, json={"id": "s1", "url": "https://mastodon.social/@me/s1"})

        request = PublishRequest("look", media=MediaReference(url="https://cdn.example.com/a.gif"), alt_text="anim")
        result = await _orchestrator(
            test_settings, storage, mastodon=handler, media=_media_transport(b"GIF89a", "image/gif")
        ).post_to_mastodon(request)

        assert calls == ["/api/v2/media", "/api/v1/statuses"]
        assert (result.platform, result.post_id, result.uri) == ("mastodon", "s1", "https://mastodon.social/@me/s1")

    @pytest.mark.asyncio
    async def test_text_status(self, test_settings, storage):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json={"id": "s2"})

        await _orchestrator(test_settings, storage, mastodon=handler).post_to_mastodon(PublishRequest("hi"))

        assert calls == ["/api/v1/statuses"]


class TestMediaReference:

    def test_requires_data_or_url(self):
        with pytest.raises(ValueError):
            MediaReference()
