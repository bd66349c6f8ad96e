"""Shared fixtures. Environment is pinned before feedcast is imported."""

import os

os.environ.update({
    "ENVIRONMENT": "testing",
    "DATABASE_URL": "sqlite://",
    "S3_BUCKET_NAME": "test-bucket",
    "AWS_REGION": "us-east-2",
    "ADMIN_PASSWORD": "test-admin-password",
    "LOG_FORMAT": "console",
    "BLUESKY_IDENTIFIER": "feedcast.test",
    "BLUESKY_PASSWORD": "app-password",
    "MASTODON_ACCESS_TOKEN": "mastodon-token",
})

from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from PIL import Image  # noqa: E402

from feedcast.core.config import Settings  # noqa: E402
from feedcast.models.db import DatabaseManager  # noqa: E402
from feedcast.models.repositories import UploadLedger  # noqa: E402


@pytest.fixture
def test_settings(tmp_path):
    """Settings with uploads written under the test's tmp dir."""
    config = Settings()
    config.media.upload_dir = str(tmp_path / "uploads")
    return config


@pytest.fixture
def ledger():
    """Ledger on a private in-memory SQLite database."""
    manager = DatabaseManager(Settings().database)
    manager.create_tables()
    yield UploadLedger(manager)
    manager.dispose()


@pytest.fixture
def minio_client():
    """MagicMock standing in for a minio.Minio client."""
    return MagicMock()


@pytest.fixture
def make_image(tmp_path):
    """Write a solid-colour image and return its path."""

    def _make(name="photo.png", size=(3000, 2000), color=(200, 30, 30), mode="RGB", fmt=None):
        path = tmp_path / name
        Image.new(mode, size, color).save(path, format=fmt)
        return str(path)

    return _make


@pytest.fixture
def make_gif(tmp_path):
    """Write a two-frame GIF: red frame 0, blue frame 1."""

    def _make(name="anim.gif", size=(120, 80)):
        path = tmp_path / name
        frames = [Image.new("RGB", size, (255, 0, 0)), Image.new("RGB", size, (0, 0, 255))]
        frames[0].save(path, save_all=True, append_images=frames[1:], duration=100, loop=0)
        return str(path)

    return _make
