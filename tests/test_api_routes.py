"""
API tests for feedcast routes.

Tests for:
- Admin bearer authentication
- Upload responses and plain-text errors
- Bucket listing shape
- Publish endpoints success and failure mapping
- Client disconnect cancels a video publish
"""

import asyncio
import io
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from feedcast.adapters.storage_s3 import S3Storage
from feedcast.api.deps import get_ingest_service, get_publisher, get_settings, get_storage
from feedcast.api.routes import watch_disconnect
from feedcast.main import app
from feedcast.services.ingest import IngestService
from feedcast.services.publisher import PublishOrchestrator

AUTH = {"Authorization": "Bearer test-admin-password"}


def _png_bytes(size=(1200, 900)):
    buffer = io.BytesIO()
    Image.new("RGB", size, (10, 120, 200)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def storage(test_settings, minio_client):
    return S3Storage(test_settings, client=minio_client)


@pytest.fixture
def client(test_settings, storage, ledger):
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_ingest_service] = lambda: IngestService(storage, ledger, test_settings)
    yield TestClient(app)
    app.dependency_overrides.clear()


def _use_publisher(test_settings, storage, bluesky=None, mastodon=None):
    app.dependency_overrides[get_publisher] = lambda: PublishOrchestrator(
        storage=storage,
        config=test_settings,
        bluesky_transport=httpx.MockTransport(bluesky) if bluesky else None,
        mastodon_transport=httpx.MockTransport(mastodon) if mastodon else None,
    )


class TestPublicEndpoints:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.text == "Hello, this is the upload server!"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] in ("healthy", "degraded")

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "feedcast_" in response.text


class TestAuth:

    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer wrong"},
        {"Authorization": "Basic test-admin-password"},
    ])
    def test_rejected(self, client, headers):
        response = client.get("/api/list-objects", headers=headers)

        assert response.status_code == 403
        assert response.text == "Forbidden"


class TestUpload:

    def test_image_upload(self, client, minio_client):
        response = client.post(
            "/api/upload", headers=AUTH, files={"file": ("photo.png", _png_bytes(), "image/png")}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Images uploaded successfully"
        assert body["smallImageUrl"].endswith("-800.jpg")
        assert body["largeImageUrl"].endswith("-2000.jpg")
        assert minio_client.fput_object.call_count == 2

    def test_missing_file(self, client):
        response = client.post("/api/upload", headers=AUTH)

        assert response.status_code == 400
        assert response.text == "No file uploaded."

    def test_unsupported_type(self, client, minio_client, test_settings):
        response = client.post(
            "/api/upload", headers=AUTH, files={"file": ("notes.txt", b"hello", "text/plain")}
        )

        assert response.status_code == 400
        assert response.text == "Unsupported file type."
        minio_client.fput_object.assert_not_called()

    def test_too_large(self, client, test_settings):
        test_settings.media.max_file_size_mb = 0

        response = client.post(
            "/api/upload", headers=AUTH, files={"file": ("photo.png", _png_bytes(), "image/png")}
        )

        assert response.status_code == 413


class TestListObjects:

    def test_shape(self, client, minio_client):
        minio_client.list_objects.return_value = iter([])

        response = client.get("/api/list-objects", headers=AUTH, params={"continuationToken": "k"})

        assert response.status_code == 200
        assert response.json() == {"Contents": [], "NextContinuationToken": None}
        assert minio_client.list_objects.call_args.kwargs["start_after"] == "k"


class TestPublish:

    def test_post_to_mastodon(self, client, test_settings, storage):
        _use_publisher(test_settings, storage, mastodon=lambda r: httpx.Response(200, json={"id": "1"}))

        response = client.post("/api/postToMastodon", headers=AUTH, json={"status": "hello"})

        assert response.status_code == 200
        assert response.json() == {"success": "posted"}

    def test_bluesky_failure_is_plain_text(self, client, test_settings, storage):
        _use_publisher(test_settings, storage, bluesky=lambda r: httpx.Response(401, json={"error": "AuthRequired"}))

        response = client.post(
            "/api/postToBluesky",
            headers=AUTH,
            json={"status": "s", "url": "https://blog.example.com", "title": "t", "description": "d"},
        )

        assert response.status_code == 502
        assert response.text == "Error posting to bluesky."

    def test_publish_requires_auth(self, client):
        response = client.post("/api/postGifToBluesky", json={"status": "s", "imageUrl": "https://x/a.gif"})
        assert response.status_code == 403


class RecordingPublisher:
    """Stand-in orchestrator that keeps the cancel event it was given."""

    def __init__(self):
        self.cancel_event = None

    async def post_video_to_bluesky(self, status, video_url, cancel_event=None):
        self.cancel_event = cancel_event


class TestVideoCancellation:

    def test_gif_route_passes_cancel_event(self, client):
        publisher = RecordingPublisher()
        app.dependency_overrides[get_publisher] = lambda: publisher

        response = client.post(
            "/api/postGifToBluesky", headers=AUTH, json={"status": "s", "imageUrl": "https://cdn.example.com/a.gif"}
        )

        assert response.status_code == 200
        assert isinstance(publisher.cancel_event, asyncio.Event)
        assert not publisher.cancel_event.is_set()

    @pytest.mark.asyncio
    async def test_disconnect_sets_cancel_event(self):
        request = MagicMock()
        request.is_disconnected = AsyncMock(side_effect=[False, False, True])
        cancel_event = asyncio.Event()

        await asyncio.wait_for(watch_disconnect(request, cancel_event, interval=0), timeout=1)

        assert cancel_event.is_set()
        assert request.is_disconnected.await_count == 3

    @pytest.mark.asyncio
    async def test_watcher_stops_once_event_set(self):
        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=False)
        cancel_event = asyncio.Event()
        cancel_event.set()

        await asyncio.wait_for(watch_disconnect(request, cancel_event, interval=0), timeout=1)

        request.is_disconnected.assert_not_awaited()
