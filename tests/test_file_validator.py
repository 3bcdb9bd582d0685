"""Tests for request validation and file analysis."""

import pytest

from mediaflow.core.config import MB
from mediaflow.core.exceptions import FileValidationError
from mediaflow.models.media import MediaType, UploadStrategy
from mediaflow.validators.file_validator import (
    UploadValidator,
    detect_format,
    select_strategy,
    validate_file_header,
)
from mediaflow.validators.mime_types import get_media_type, is_extension_matching, normalize_mime_type


@pytest.fixture
def validator(test_settings):
    return UploadValidator(test_settings)


@pytest.mark.parametrize(
    "size,expected",
    [
        (1 * MB, UploadStrategy.DIRECT),
        (50 * MB, UploadStrategy.DIRECT),
        (50 * MB + 1, UploadStrategy.STREAM),
        (200 * MB, UploadStrategy.STREAM),
        (200 * MB + 1, UploadStrategy.MEMORY_SAFE),
    ],
)
def test_select_strategy_boundaries(size, expected):
    assert select_strategy(size, 50 * MB, 200 * MB) == expected


def test_detect_format(image_bytes):
    assert detect_format(image_bytes(fmt="PNG")) == "PNG"
    assert detect_format(image_bytes(fmt="JPEG")) == "JPEG"
    assert detect_format(b"%PDF-1.7 rest") == "PDF"
    assert detect_format(b"\x00\x00\x00\x18ftypmp42") == "MP4"
    assert detect_format(b"plain text") is None


def test_validate_file_header():
    assert validate_file_header(b"\xff\xd8\xff\xe0" + b"\x00" * 20, "image/jpeg")
    assert not validate_file_header(b"\x89PNG" + b"\x00" * 20, "image/jpeg")
    assert validate_file_header(b"\x00\x00\x00\x18ftypisom" + b"\x00" * 8, "video/mp4")
    assert validate_file_header(b"anything", "text/csv")


def test_mime_helpers():
    assert normalize_mime_type("Text/Plain; charset=utf-8") == "text/plain"
    assert get_media_type("video/x-matroska") == MediaType.VIDEO
    assert get_media_type("application/zip") is None
    assert is_extension_matching("image/jpeg", "a.JPEG")
    assert not is_extension_matching("image/png", "a.jpg")
    assert is_extension_matching("text/csv", "anything.dat")


def test_validate_request_accepts_valid_image(validator, image_bytes, upload_request):
    validator.validate_request(upload_request(image_bytes()))


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"filename": ""}, "Filename"),
        ({"mime_type": ""}, "File type"),
        ({"mime_type": "application/zip", "filename": "a.zip"}, "Unsupported file type"),
        ({"filename": "photo.png"}, "does not match extension"),
        ({"filename": "bad<name>.jpg"}, "illegal characters"),
        ({"filename": "x" * 300 + ".jpg"}, "too long"),
    ],
)
def test_validate_request_rejections(validator, image_bytes, upload_request, overrides, message):
    request = upload_request(image_bytes(), **overrides)

    with pytest.raises(FileValidationError, match=message):
        validator.validate_request(request)


def test_validate_request_rejects_tiny_file(validator, upload_request):
    with pytest.raises(FileValidationError, match="too small"):
        validator.validate_request(upload_request(b"\xff\xd8" + b"\x00" * 10))


def test_family_ceiling_capped_by_global_limit(test_settings):
    test_settings.MAX_FILE_SIZE_MB = 20
    validator = UploadValidator(test_settings)

    assert validator.get_max_file_size("image/png") == 20 * MB
    assert validator.get_max_file_size("application/zip") == 10 * MB


def test_allowed_mime_list_is_enforced(test_settings, image_bytes, upload_request):
    test_settings.ALLOWED_MIME_TYPES = "image/png,video/*"
    validator = UploadValidator(test_settings)

    with pytest.raises(FileValidationError, match="not allowed"):
        validator.validate_request(upload_request(image_bytes()))


def test_analyze_file_safe_image(validator, image_bytes, upload_request):
    data = image_bytes(fmt="PNG", width=200, height=200)
    analysis = validator.analyze_file(upload_request(data, filename="a.png", mime_type="image/png"))

    assert analysis.upload_type == MediaType.IMAGE
    assert analysis.is_safe
    assert analysis.risk_level == "low"
    assert analysis.recommended_strategy == UploadStrategy.DIRECT
    assert analysis.detected_format == "PNG"
    assert "thumbnail generation" in analysis.processing_requirements
    assert len(analysis.checksum) == 32


def test_analyze_file_flags_script_content(validator, upload_request):
    data = b"\xff\xd8<script>alert(1)</script>" + b"\x00" * 400
    analysis = validator.analyze_file(upload_request(data))

    assert not analysis.is_safe
    assert analysis.risk_level == "high"
    assert "Contains suspicious script content" in analysis.security_issues


def test_analyze_file_flags_header_mismatch(validator, image_bytes, upload_request):
    analysis = validator.analyze_file(upload_request(image_bytes(fmt="PNG")))

    assert "File header does not match MIME type" in analysis.security_issues
    assert analysis.risk_level == "medium"
