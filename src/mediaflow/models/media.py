"""Pipeline data model: requests, stage outputs, results."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional


class MediaType(str, Enum):
    """Media families handled by a processor."""

    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    DOCUMENT = "DOCUMENT"


class UploadStrategy(str, Enum):
    """How a processor is driven, selected by file size."""

    DIRECT = "DIRECT"
    STREAM = "STREAM"
    MEMORY_SAFE = "MEMORY_SAFE"


class ProcessingStatus(str, Enum):
    """Processing state stored with a media record."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class UploadOptions:
    """Per-request processing knobs."""

    generate_thumbnails: bool = True
    max_width: Optional[int] = None
    max_height: Optional[int] = None
    quality: Optional[int] = None
    auto_transcode: bool = True
    force_transcode: bool = False
    thumbnail_time: Optional[float] = None


@dataclass(frozen=True)
class UploadRequest:
    """Immutable pipeline input.

    Stages that change the effective format return a new request built
    with ``dataclasses.replace`` instead of mutating this one.
    """

    buffer: bytes
    filename: str
    mime_type: str
    user_id: str
    post_id: Optional[str] = None
    options: UploadOptions = field(default_factory=UploadOptions)

    @property
    def size(self) -> int:
        return len(self.buffer)


@dataclass(frozen=True)
class PreprocessResult:
    """Output of the preprocess stage: effective request plus metadata."""

    request: UploadRequest
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def buffer(self) -> bytes:
        return self.request.buffer


@dataclass(frozen=True)
class PostprocessResult:
    """Output of the postprocess stage."""

    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    thumbnail_url: Optional[str] = None
    thumbnail_sizes: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class StoredObject(NamedTuple):
    """What the object storage returns for an uploaded key."""

    url: str
    cdn_url: Optional[str] = None
    etag: Optional[str] = None


@dataclass
class MediaRecord:
    """Record handed to the persistence collaborator."""

    filename: str
    original_name: str
    mime_type: str
    file_size: int
    url: str
    storage_key: str
    file_hash: str
    uploaded_by: str
    media_type: MediaType
    cdn_url: Optional[str] = None
    post_id: Optional[str] = None
    is_processed: bool = True
    processing_status: ProcessingStatus = ProcessingStatus.COMPLETED
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    thumbnail_url: Optional[str] = None
    video_codec: Optional[str] = None
    bitrate: Optional[int] = None
    frame_rate: Optional[float] = None
    original_codec: Optional[str] = None
    is_transcoded: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class UploadResult:
    """Uniform terminal output of a processor run."""

    success: bool
    file_id: str
    url: str
    filename: str
    mime_type: str
    size: int
    original_size: int
    storage_key: str
    file_hash: str
    media_type: MediaType
    processing_status: ProcessingStatus
    processed_at: datetime
    cdn_url: Optional[str] = None
    processed_size: Optional[int] = None
    is_processed: bool = True
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    thumbnail_url: Optional[str] = None
    thumbnail_sizes: Dict[str, str] = field(default_factory=dict)
    upload_strategy: Optional[UploadStrategy] = None
    compression_applied: bool = False
    compression_ratio: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FileAnalysis:
    """Derived view of a request produced by validation."""

    filename: str
    mime_type: str
    size: int
    upload_type: Optional[MediaType]
    is_safe: bool
    security_issues: list[str]
    risk_level: str
    needs_processing: bool
    processing_requirements: list[str]
    recommended_strategy: UploadStrategy
    strategy_reason: str
    estimated_processing_time_ms: int
    estimated_storage_size: int
    checksum: str
    detected_format: Optional[str] = None
