"""Shared processor skeleton: validate, preprocess, store, postprocess, persist."""

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, NamedTuple, Optional

from mediaflow.core.config import MB, Settings
from mediaflow.core.exceptions import FileValidationError, UploadProcessingError
from mediaflow.core.logging import get_logger, log_context
from mediaflow.models.media import (
    MediaRecord,
    MediaType,
    PostprocessResult,
    PreprocessResult,
    ProcessingStatus,
    StoredObject,
    UploadRequest,
    UploadResult,
    UploadStrategy,
)
from mediaflow.storage.base import MediaRepository, ObjectStorage
from mediaflow.storage.temp_files import TempFileManager
from mediaflow.validators.mime_types import get_media_type, normalize_mime_type

logger = logging.getLogger(__name__)


class StoredUpload(NamedTuple):
    """Where the preprocessed buffer ended up."""

    storage_key: str
    file_hash: str
    stored: StoredObject


def compute_fingerprint(data: bytes) -> str:
    """SHA-256 content fingerprint."""
    return hashlib.sha256(data).hexdigest()


def sanitize_filename(filename: str) -> str:
    """Remove path traversal and dangerous characters."""
    safe = filename.replace("../", "").replace("..\\", "")
    safe = safe.replace("/", "_").replace("\\", "_")
    safe = re.sub(r"[^a-zA-Z0-9._-]", "_", safe)
    return safe[:255] or "file"


def build_storage_key(file_hash: str, user_id: str, filename: str, media_type: Optional[MediaType] = None) -> str:
    """Deterministic key: same content, owner and filename give the same key."""
    folder = f"{media_type.value.lower()}s" if media_type else "files"
    return f"{folder}/{sanitize_filename(user_id)}/{file_hash}/{sanitize_filename(filename)}"


def derive_key(storage_key: str, suffix: str, extension: Optional[str] = None) -> str:
    """Sibling key for a derived asset, e.g. ``photo.webp`` -> ``photo_small.webp``."""
    path = PurePosixPath(storage_key)
    ext = extension if extension is not None else path.suffix
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    return str(path.with_name(f"{path.stem}{suffix}{ext}"))


def estimate_processing_time(size: int) -> int:
    """Rough processing time in milliseconds."""
    return max(1000, round(size / MB * 100))


class BaseProcessor(ABC):
    """Template for one media family.

    Subclasses implement ``validate_specific_file``, ``preprocess_file``
    and ``post_process_file``; ``process_upload`` runs the fixed skeleton.
    """

    name: str = "base"
    media_type: MediaType
    default_mime_types: tuple[str, ...] = ()

    def __init__(
        self,
        storage: ObjectStorage,
        repository: MediaRepository,
        temp_files: TempFileManager,
        settings: Settings,
        supported_mime_types: Optional[Iterable[str]] = None,
    ):
        self.storage = storage
        self.repository = repository
        self.temp_files = temp_files
        self.settings = settings
        self.supported_mime_types = frozenset(
            normalize_mime_type(mt) for mt in (supported_mime_types or self.default_mime_types)
        )
        self.log = get_logger(f"{__name__}.{self.name}", processor=self.name)

    def supports(self, mime_type: str) -> bool:
        return normalize_mime_type(mime_type) in self.supported_mime_types

    async def process_upload(
        self,
        request: UploadRequest,
        session_id: Optional[str] = None,
        strategy: Optional[UploadStrategy] = None,
    ) -> UploadResult:
        """Run the pipeline for one request.

        Any failure is re-raised as UploadProcessingError carrying the
        original message; callers route it through the ErrorHandler.
        """
        with log_context(user_id=request.user_id, session_id=session_id, action="process_upload"):
            try:
                with self.log.timed("process_upload", filename=request.filename, size=request.size):
                    await self.validate_file(request, session_id=session_id)

                    preprocessed = await self.preprocess_file(request, session_id=session_id)
                    effective = preprocessed.request

                    file_hash = compute_fingerprint(effective.buffer)
                    storage_key = build_storage_key(file_hash, effective.user_id, effective.filename, self.media_type)

                    stored = await self.upload_to_storage(storage_key, effective, file_hash, preprocessed.metadata)
                    upload = StoredUpload(storage_key=storage_key, file_hash=file_hash, stored=stored)

                    postprocessed = await self.post_process_file(effective, upload, session_id=session_id)

                    record_id = await self.save_to_database(request, preprocessed, upload, postprocessed)
                    return self.build_result(request, preprocessed, upload, postprocessed, record_id, strategy)
            except Exception as e:
                raise UploadProcessingError(f"File processing failed: {e}") from e

    async def validate_file(self, request: UploadRequest, session_id: Optional[str] = None) -> None:
        if not request.buffer:
            raise FileValidationError("File content is empty")
        if not request.filename:
            raise FileValidationError("Filename must not be empty")
        if not request.mime_type:
            raise FileValidationError("File type must not be empty")
        if not self.supports(request.mime_type):
            raise FileValidationError(f"Unsupported file type for {self.name}: {request.mime_type}")

        await self.validate_specific_file(request, session_id=session_id)

    @abstractmethod
    async def validate_specific_file(self, request: UploadRequest, session_id: Optional[str] = None) -> None:
        """Type-specific checks (signature, dimensions, duration, size)."""
        pass

    @abstractmethod
    async def preprocess_file(self, request: UploadRequest, session_id: Optional[str] = None) -> PreprocessResult:
        """Transform the buffer; return the effective request and metadata."""
        pass

    @abstractmethod
    async def post_process_file(
        self,
        request: UploadRequest,
        upload: StoredUpload,
        session_id: Optional[str] = None,
    ) -> PostprocessResult:
        """Type-specific enrichment after the main object is stored."""
        pass

    async def upload_to_storage(
        self,
        storage_key: str,
        request: UploadRequest,
        file_hash: str,
        metadata: Dict[str, Any],
    ) -> StoredObject:
        object_metadata = {
            **{k: v for k, v in metadata.items() if isinstance(v, (str, int, float, bool))},
            "processor": self.name,
            "fileHash": file_hash,
            "uploadedAt": datetime.utcnow().isoformat() + "Z",
        }
        return await self.storage.upload_file(
            key=storage_key,
            data=request.buffer,
            content_type=request.mime_type,
            size=request.size,
            metadata=object_metadata,
        )

    async def save_to_database(
        self,
        original: UploadRequest,
        preprocessed: PreprocessResult,
        upload: StoredUpload,
        postprocessed: PostprocessResult,
    ) -> str:
        effective = preprocessed.request
        details = {**preprocessed.metadata, **postprocessed.metadata}
        record = MediaRecord(
            filename=effective.filename,
            original_name=original.filename,
            mime_type=effective.mime_type,
            file_size=effective.size,
            url=upload.stored.url,
            cdn_url=upload.stored.cdn_url,
            storage_key=upload.storage_key,
            file_hash=upload.file_hash,
            uploaded_by=original.user_id,
            post_id=original.post_id,
            media_type=self.media_type,
            is_processed=True,
            processing_status=ProcessingStatus.COMPLETED,
            width=postprocessed.width,
            height=postprocessed.height,
            duration=postprocessed.duration,
            thumbnail_url=postprocessed.thumbnail_url,
            video_codec=details.get("codec"),
            bitrate=details.get("bitrate"),
            frame_rate=details.get("framerate"),
            original_codec=details.get("original_codec"),
            is_transcoded=bool(details.get("is_transcoded", False)),
            metadata=details,
        )
        return await self.repository.create(record)

    def build_result(
        self,
        original: UploadRequest,
        preprocessed: PreprocessResult,
        upload: StoredUpload,
        postprocessed: PostprocessResult,
        record_id: str,
        strategy: Optional[UploadStrategy] = None,
    ) -> UploadResult:
        effective = preprocessed.request
        metadata = {**preprocessed.metadata, **postprocessed.metadata}
        return UploadResult(
            success=True,
            file_id=record_id,
            url=upload.stored.url,
            cdn_url=upload.stored.cdn_url,
            filename=effective.filename,
            mime_type=effective.mime_type,
            size=effective.size,
            original_size=original.size,
            processed_size=effective.size,
            is_processed=True,
            processing_status=ProcessingStatus.COMPLETED,
            width=postprocessed.width,
            height=postprocessed.height,
            duration=postprocessed.duration,
            storage_key=upload.storage_key,
            thumbnail_url=postprocessed.thumbnail_url,
            thumbnail_sizes=dict(postprocessed.thumbnail_sizes),
            file_hash=upload.file_hash,
            media_type=self.media_type,
            upload_strategy=strategy,
            compression_applied=bool(metadata.get("compression_applied", False)),
            compression_ratio=metadata.get("compression_ratio"),
            processed_at=datetime.utcnow(),
            metadata=metadata,
        )

    @staticmethod
    def get_media_type(mime_type: str) -> Optional[MediaType]:
        return get_media_type(mime_type)

    @staticmethod
    def estimate_processing_time(size: int) -> int:
        return estimate_processing_time(size)
