"""Request validation and file analysis, independent of processing."""

import hashlib
import logging
import re
from typing import Optional

from mediaflow.core.config import MB, Settings
from mediaflow.core.exceptions import FileValidationError
from mediaflow.models.media import FileAnalysis, MediaType, UploadRequest, UploadStrategy
from mediaflow.validators.mime_types import (
    get_file_extension,
    get_media_type,
    is_extension_matching,
    normalize_mime_type,
)

logger = logging.getLogger(__name__)

MIN_FILE_SIZE = 100
MAX_FILENAME_LENGTH = 255
ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

# Per-family ceilings, further capped by MAX_FILE_SIZE_MB
FAMILY_MAX_SIZES = {
    MediaType.IMAGE: 50 * MB,
    MediaType.VIDEO: 2048 * MB,
    MediaType.DOCUMENT: 100 * MB,
}
DEFAULT_MAX_SIZE = 10 * MB

# Smallest plausible file per type; anything below is treated as anomalous
MIN_TYPE_SIZES = {
    "image/jpeg": 200,
    "image/png": 67,
    "image/gif": 43,
    "image/webp": 26,
    "video/mp4": 1024,
    "video/webm": 512,
    "video/quicktime": 1024,
}

SUSPICIOUS_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"<script", r"javascript:", r"vbscript:", r"onload=", r"onerror=")
]

MP4_BRANDS = {b"mp41", b"mp42", b"isom", b"avc1", b"dash", b"iso2", b"iso4", b"iso5", b"iso6", b"mmp4", b"M4V ", b"qt  "}

PROCESSING_BASE_TIMES_MS = {
    MediaType.IMAGE: 500,
    MediaType.VIDEO: 2000,
    MediaType.DOCUMENT: 200,
}


def select_strategy(size: int, stream_threshold: int, memory_safe_threshold: int) -> UploadStrategy:
    """Pick the upload strategy from the byte size alone."""
    if size > memory_safe_threshold:
        return UploadStrategy.MEMORY_SAFE
    if size > stream_threshold:
        return UploadStrategy.STREAM
    return UploadStrategy.DIRECT


def strategy_reason(size: int, strategy: UploadStrategy) -> str:
    size_mb = round(size / MB)
    if strategy == UploadStrategy.MEMORY_SAFE:
        return f"Very large file ({size_mb}MB), using the memory-safe strategy"
    if strategy == UploadStrategy.STREAM:
        return f"Large file ({size_mb}MB), using streamed upload"
    return f"Small file ({size_mb}MB), using direct upload"


def detect_format(data: bytes) -> Optional[str]:
    """Best-effort container/format detection from magic bytes."""
    if data[:4] == b"\x89PNG":
        return "PNG"
    if data[:2] == b"\xff\xd8":
        return "JPEG"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "GIF"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "WEBP"
    if data[4:8] == b"ftyp":
        return "MP4"
    if data[:4] == b"\x1a\x45\xdf\xa3":
        return "WEBM"
    if data[:4] == b"%PDF":
        return "PDF"
    if data[:4] == b"PK\x03\x04":
        return "ZIP"
    return None


def validate_file_header(data: bytes, mime_type: str) -> bool:
    """Check that the leading bytes agree with the declared MIME type."""
    header = data[:20]
    if mime_type == "image/jpeg":
        return header[:2] == b"\xff\xd8"
    if mime_type == "image/png":
        return header[:4] == b"\x89PNG"
    if mime_type == "image/gif":
        return header[:6] in (b"GIF87a", b"GIF89a")
    if mime_type == "image/webp":
        return header[:4] == b"RIFF" and header[8:12] == b"WEBP"
    if mime_type == "video/mp4":
        return header[4:8] == b"ftyp" and header[8:12] in MP4_BRANDS
    if mime_type == "video/webm":
        return header[:4] == b"\x1a\x45\xdf\xa3"
    if mime_type == "video/quicktime":
        return header[4:8] in (b"ftyp", b"moov", b"mdat", b"free", b"wide")
    if mime_type == "application/pdf":
        return header[:4] == b"%PDF"
    return True


class UploadValidator:
    """Structural and semantic checks on an UploadRequest."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def validate_request(self, request: UploadRequest) -> None:
        """Raise FileValidationError on the first failed check."""
        if not request.filename:
            raise FileValidationError("Filename must not be empty")
        if not request.buffer:
            raise FileValidationError("File content is empty")
        if not request.mime_type:
            raise FileValidationError("File type must not be empty")

        self._validate_file_size(request)
        self._validate_file_type(request)
        self._validate_filename(request.filename)

    def get_max_file_size(self, mime_type: str) -> int:
        media_type = get_media_type(mime_type)
        family_max = FAMILY_MAX_SIZES.get(media_type, DEFAULT_MAX_SIZE)
        return min(family_max, self.settings.max_file_size_bytes)

    def _validate_file_size(self, request: UploadRequest) -> None:
        max_size = self.get_max_file_size(request.mime_type)
        if request.size > max_size:
            raise FileValidationError(
                f"File size exceeds limit: {round(request.size / MB)}MB, maximum allowed: {round(max_size / MB)}MB"
            )
        if request.size < MIN_FILE_SIZE:
            raise FileValidationError("File is too small and may be damaged")

    def _validate_file_type(self, request: UploadRequest) -> None:
        mime_type = normalize_mime_type(request.mime_type)
        if get_media_type(mime_type) is None:
            raise FileValidationError(f"Unsupported file type: {request.mime_type}")

        allowed = self.settings.allowed_mime_types
        if allowed is not None and mime_type not in allowed and f"{mime_type.split('/')[0]}/*" not in allowed:
            raise FileValidationError(f"File type not allowed: {request.mime_type}")

        if not is_extension_matching(mime_type, request.filename):
            raise FileValidationError(
                f"File type does not match extension: {request.mime_type} vs .{get_file_extension(request.filename)}"
            )

    def _validate_filename(self, filename: str) -> None:
        if len(filename) > MAX_FILENAME_LENGTH:
            raise FileValidationError(f"Filename is too long, maximum {MAX_FILENAME_LENGTH} characters")
        if ILLEGAL_FILENAME_CHARS.search(filename):
            raise FileValidationError("Filename contains illegal characters")
        if "." not in filename:
            raise FileValidationError("Filename must include an extension")

    def analyze_file(self, request: UploadRequest) -> FileAnalysis:
        mime_type = normalize_mime_type(request.mime_type)
        upload_type = get_media_type(mime_type)
        threats, risk_level = self.perform_security_check(request.buffer, mime_type)
        strategy = select_strategy(
            request.size,
            self.settings.stream_threshold_bytes,
            self.settings.memory_safe_threshold_bytes,
        )

        analysis = FileAnalysis(
            filename=request.filename,
            mime_type=mime_type,
            size=request.size,
            upload_type=upload_type,
            is_safe=not threats,
            security_issues=threats,
            risk_level=risk_level,
            needs_processing=upload_type is not None,
            processing_requirements=self._processing_requirements(upload_type, request),
            recommended_strategy=strategy,
            strategy_reason=strategy_reason(request.size, strategy),
            estimated_processing_time_ms=self._estimate_processing_time(upload_type, request.size),
            estimated_storage_size=request.size,
            checksum=hashlib.md5(request.buffer).hexdigest(),
            detected_format=detect_format(request.buffer),
        )
        if threats:
            logger.warning(
                "Upload failed security analysis",
                extra={"user_id": request.user_id, "context": {"filename": request.filename, "threats": threats}},
            )
        return analysis

    def perform_security_check(self, data: bytes, mime_type: str) -> tuple[list[str], str]:
        threats: list[str] = []
        risk_level = "low"

        if not validate_file_header(data, mime_type):
            threats.append("File header does not match MIME type")
            risk_level = "medium"

        if self._contains_suspicious_content(data):
            threats.append("Contains suspicious script content")
            risk_level = "high"

        if self._is_size_anomalous(data, mime_type):
            threats.append("Anomalous file size")
            if risk_level == "low":
                risk_level = "medium"

        return threats, risk_level

    @staticmethod
    def _contains_suspicious_content(data: bytes) -> bool:
        content = data[:1024].decode("utf-8", errors="ignore")
        return any(pattern.search(content) for pattern in SUSPICIOUS_PATTERNS)

    @staticmethod
    def _is_size_anomalous(data: bytes, mime_type: str) -> bool:
        size = len(data)
        if size < MIN_TYPE_SIZES.get(mime_type, 50):
            return True
        if mime_type.startswith("image/") and size > FAMILY_MAX_SIZES[MediaType.IMAGE]:
            return True
        if mime_type.startswith("video/") and size > FAMILY_MAX_SIZES[MediaType.VIDEO]:
            return True
        return False

    @staticmethod
    def _estimate_processing_time(upload_type: Optional[MediaType], size: int) -> int:
        base_time = PROCESSING_BASE_TIMES_MS.get(upload_type, 100)
        return round(base_time * max(1, size / MB))

    def _processing_requirements(self, upload_type: Optional[MediaType], request: UploadRequest) -> list[str]:
        if upload_type == MediaType.IMAGE:
            requirements = ["image processing"]
            if request.options.generate_thumbnails:
                requirements.append("thumbnail generation")
            return requirements
        if upload_type == MediaType.VIDEO:
            return ["video processing", "codec validation"]
        if upload_type == MediaType.DOCUMENT:
            return ["document processing"]
        return []
