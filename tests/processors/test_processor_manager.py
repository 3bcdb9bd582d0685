"""Tests for processor routing, strategy selection and the session lifecycle."""

import pytest

from mediaflow.core.config import MB
from mediaflow.core.exceptions import (
    BadRequestError,
    FileValidationError,
    ProcessingError,
    UploadFailedError,
)
from mediaflow.models.media import MediaType, PostprocessResult, PreprocessResult, UploadStrategy
from mediaflow.processors import DocumentProcessor, ImageProcessor, ProcessorManager
from mediaflow.processors.base import BaseProcessor
from mediaflow.services.session_manager import SessionStatus


class TextProcessor(BaseProcessor):
    name = "text"
    media_type = MediaType.DOCUMENT
    default_mime_types = ("text/plain",)

    def __init__(self, *args, error=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.error = error

    async def validate_specific_file(self, request, session_id=None):
        pass

    async def preprocess_file(self, request, session_id=None):
        if session_id:
            path = await self.temp_files.create_temp_file(prefix="text", session_id=session_id)
            await self.temp_files.write_temp_file(path, request.buffer, session_id=session_id)
        if self.error is not None:
            raise self.error
        return PreprocessResult(request=request)

    async def post_process_file(self, request, upload, session_id=None):
        return PostprocessResult()


@pytest.fixture
def build_manager(test_settings, session_manager, error_handler, temp_files, mock_storage, repository):
    def build(*processors):
        processors = processors or (TextProcessor(mock_storage, repository, temp_files, test_settings),)
        return ProcessorManager(test_settings, session_manager, error_handler, temp_files, processors)

    return build


def test_routing_by_mime_type(build_manager, mock_storage, repository, temp_files, test_settings):
    image = ImageProcessor(mock_storage, repository, temp_files, test_settings)
    document = DocumentProcessor(mock_storage, repository, temp_files, test_settings)
    manager = build_manager(image, document)

    assert manager.get_processor("image/JPEG") is image
    assert manager.get_processor("application/pdf") is document
    assert manager.get_processor("text/plain; charset=utf-8") is document
    assert "image/webp" in manager.get_supported_mime_types()
    assert manager.get_processors() == [image, document]

    with pytest.raises(FileValidationError, match="Unsupported file type"):
        manager.get_processor("application/x-msdownload")


def test_later_registration_wins(build_manager, mock_storage, repository, temp_files, test_settings):
    first = TextProcessor(mock_storage, repository, temp_files, test_settings)
    second = TextProcessor(mock_storage, repository, temp_files, test_settings)

    manager = build_manager(first, second)

    assert manager.get_processor("text/plain") is second


@pytest.mark.parametrize(
    "size,expected",
    [
        (MB, UploadStrategy.DIRECT),
        (50 * MB, UploadStrategy.DIRECT),
        (50 * MB + 1, UploadStrategy.STREAM),
        (200 * MB, UploadStrategy.STREAM),
        (200 * MB + 1, UploadStrategy.MEMORY_SAFE),
    ],
)
def test_strategy_selection(build_manager, size, expected):
    assert build_manager().select_strategy(size) == expected


@pytest.mark.asyncio
async def test_process_success(build_manager, session_manager, upload_request):
    manager = build_manager()
    progress = []

    result = await manager.process(
        upload_request(b"hello", filename="a.txt", mime_type="text/plain"), on_progress=progress.append
    )

    assert result.success
    assert result.upload_strategy == UploadStrategy.DIRECT
    assert progress == [10, 100]

    stats = session_manager.get_stats()
    assert stats["completed"] == 1
    assert stats["active"] == 0
    session = next(iter(session_manager._sessions.values()))
    assert session.status == SessionStatus.COMPLETED
    assert session.progress == 100.0
    assert session.processor_name == "text"


@pytest.mark.asyncio
async def test_unsupported_type_is_bad_request(build_manager, session_manager, upload_request):
    with pytest.raises(BadRequestError) as exc_info:
        await build_manager().process(upload_request(b"MZ", filename="a.exe", mime_type="application/x-msdownload"))

    assert exc_info.value.code == "VALIDATION_FAILED"
    assert session_manager.get_stats()["total"] == 0


@pytest.mark.asyncio
async def test_failure_cleans_up_session_and_files(
    build_manager, session_manager, temp_files, mock_storage, repository, test_settings, upload_request
):
    failing = TextProcessor(mock_storage, repository, temp_files, test_settings, error=ProcessingError("encoder crashed"))
    manager = build_manager(failing)

    with pytest.raises(UploadFailedError) as exc_info:
        await manager.process(upload_request(b"hello", filename="a.txt", mime_type="text/plain"))

    error = exc_info.value
    assert error.code == "PROCESSING_FAILED"
    assert error.retryable
    assert error.retry_after_ms == 3000
    assert "encoder crashed" not in error.message
    assert session_manager.get_stats()["total"] == 0
    assert temp_files.get_stats()["total_files"] == 0
    mock_storage.upload_file.assert_not_called()


@pytest.mark.asyncio
async def test_admission_ceiling(build_manager, session_manager, upload_request):
    for index in range(3):
        session_manager.create_session("user-1", f"f{index}.txt", 10, "text", UploadStrategy.DIRECT)

    with pytest.raises(UploadFailedError) as exc_info:
        await build_manager().process(upload_request(b"hello", filename="a.txt", mime_type="text/plain"))

    assert exc_info.value.code == "RESOURCE_EXHAUSTED"
    assert exc_info.value.retry_after_ms == 30000
    assert session_manager.active_count("user-1") == 3
