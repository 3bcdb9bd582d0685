"""Pytest configuration and shared fixtures."""

import io
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from mediaflow.core.config import Settings
from mediaflow.models.media import StoredObject, UploadRequest
from mediaflow.services.error_handler import ErrorHandler
from mediaflow.services.session_manager import UploadSessionManager
from mediaflow.storage.record_store import InMemoryMediaRepository
from mediaflow.storage.temp_files import TempFileManager


@pytest.fixture
def test_settings(tmp_path):
    """Settings isolated under a per-test directory."""
    return Settings(
        ENV="test",
        TEMP_DIR=str(tmp_path / "tmp"),
        LOCAL_STORAGE_PATH=str(tmp_path / "media"),
        PUBLIC_BASE_URL="http://media.test",
    )


@pytest.fixture
def temp_files(test_settings):
    return TempFileManager.from_settings(test_settings)


@pytest.fixture
def session_manager():
    return UploadSessionManager(max_concurrent_uploads=10, max_uploads_per_user=3, retention_seconds=60)


@pytest.fixture
def error_handler(session_manager, temp_files):
    return ErrorHandler(session_manager, temp_files)


@pytest.fixture
def mock_storage():
    """Object storage double that returns a URL derived from the key."""
    storage = MagicMock()
    storage.get_backend_name.return_value = "mock"

    async def upload_file(key, data, content_type, size, metadata=None):
        return StoredObject(url=f"http://media.test/{key}", etag="etag")

    storage.upload_file = AsyncMock(side_effect=upload_file)
    storage.delete_file = AsyncMock()
    return storage


@pytest.fixture
def repository():
    return InMemoryMediaRepository()


def make_image_bytes(width=64, height=48, fmt="JPEG", mode="RGB", color=(200, 40, 40)):
    """Encode a solid-colour image with Pillow."""
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_request(buffer, filename="photo.jpg", mime_type="image/jpeg", user_id="user-1", **kwargs):
    return UploadRequest(buffer=buffer, filename=filename, mime_type=mime_type, user_id=user_id, **kwargs)


@pytest.fixture
def image_bytes():
    """Factory fixture for encoded test images."""
    return make_image_bytes


@pytest.fixture
def upload_request():
    """Factory fixture for UploadRequest values."""
    return make_request
