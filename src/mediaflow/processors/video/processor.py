"""Video processor: probe, H.264 normalisation and thumbnail."""

import asyncio
import logging
from contextvars import ContextVar
from dataclasses import replace
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, Optional

from mediaflow.core.config import MB, Settings
from mediaflow.core.exceptions import (
    FileValidationError,
    ProbeError,
    StorageError,
    ThumbnailError,
    ToolTimeoutError,
)
from mediaflow.models.media import MediaType, PostprocessResult, PreprocessResult, UploadRequest, UploadResult, UploadStrategy
from mediaflow.processors.base import BaseProcessor, StoredUpload, derive_key
from mediaflow.processors.video.codec_validator import CodecValidator, is_codec_compatible
from mediaflow.processors.video.encoder import H264Config, transcode_to_h264
from mediaflow.processors.video.probe import VideoMetadata, probe_video
from mediaflow.processors.video.thumbnails import calculate_thumbnail_size, extract_thumbnail, thumbnail_offset
from mediaflow.storage.base import MediaRepository, ObjectStorage
from mediaflow.storage.temp_files import TempFileManager

logger = logging.getLogger(__name__)

# Probe results for the buffers of the request currently being processed.
_probed: ContextVar[Optional[Dict[int, VideoMetadata]]] = ContextVar("video_probed", default=None)

VIDEO_MIME_TYPES = (
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-ms-wmv",
    "video/x-flv",
    "video/webm",
    "video/x-matroska",
    "video/x-m4v",
)


class VideoProcessor(BaseProcessor):
    """Every stage works on temp files; ffprobe and ffmpeg need paths."""

    name = "video"
    media_type = MediaType.VIDEO
    default_mime_types = VIDEO_MIME_TYPES

    def __init__(
        self,
        storage: ObjectStorage,
        repository: MediaRepository,
        temp_files: TempFileManager,
        settings: Settings,
        supported_mime_types: Optional[Iterable[str]] = None,
        codec_validator: Optional[CodecValidator] = None,
    ):
        super().__init__(storage, repository, temp_files, settings, supported_mime_types)
        self.codec_validator = codec_validator
        self.h264_config = H264Config.from_settings(settings)

    async def _spool(self, data: bytes, prefix: str, filename: str, session_id: Optional[str]) -> Path:
        suffix = PurePosixPath(filename).suffix or ".mp4"
        path = await self.temp_files.create_temp_file(
            prefix=prefix, extension=suffix, purpose="video_processing", session_id=session_id
        )
        await self.temp_files.write_temp_file(path, data, purpose="video_processing", session_id=session_id)
        return path

    async def process_upload(
        self,
        request: UploadRequest,
        session_id: Optional[str] = None,
        strategy: Optional[UploadStrategy] = None,
    ) -> UploadResult:
        token = _probed.set({})
        try:
            return await super().process_upload(request, session_id=session_id, strategy=strategy)
        finally:
            _probed.reset(token)

    async def _probe(self, path: Path) -> VideoMetadata:
        return await probe_video(path, self.settings.FFPROBE_PATH, self.settings.FFPROBE_TIMEOUT_SECONDS)

    @staticmethod
    def _remember(data: bytes, metadata: VideoMetadata) -> None:
        probed = _probed.get()
        if probed is not None:
            probed[id(data)] = metadata

    @staticmethod
    def _recall(data: bytes) -> Optional[VideoMetadata]:
        probed = _probed.get()
        return probed.get(id(data)) if probed is not None else None

    async def _probe_buffer(self, data: bytes, prefix: str, filename: str, session_id: Optional[str]) -> VideoMetadata:
        metadata = self._recall(data)
        if metadata is None:
            path = await self._spool(data, prefix, filename, session_id)
            try:
                metadata = await self._probe(path)
            finally:
                await self.temp_files.cleanup_file(path)
            self._remember(data, metadata)
        return metadata

    async def validate_specific_file(self, request: UploadRequest, session_id: Optional[str] = None) -> None:
        max_size = self.settings.video_max_size_bytes
        if request.size > max_size:
            raise FileValidationError(
                f"Video file too large: {round(request.size / MB)}MB, maximum {round(max_size / MB)}MB"
            )

        try:
            metadata = await self._probe_buffer(request.buffer, "video_validate", request.filename, session_id)
        except (ProbeError, ToolTimeoutError) as e:
            raise FileValidationError(f"Video file is corrupt or unreadable: {e}") from e

        if metadata.duration <= 0:
            raise FileValidationError("Video file is corrupt: duration is zero")
        if metadata.width <= 0 or metadata.height <= 0:
            raise FileValidationError("Video file is corrupt: dimensions are zero")

        max_duration = self.settings.VIDEO_MAX_DURATION_SECONDS
        if metadata.duration > max_duration:
            raise FileValidationError(
                f"Video is too long: {round(metadata.duration)}s, maximum {max_duration}s"
            )

    async def _needs_transcoding(
        self,
        request: UploadRequest,
        metadata: VideoMetadata,
        session_id: Optional[str],
    ) -> tuple[bool, str]:
        if request.options.force_transcode:
            return True, "forced"
        if not (request.options.auto_transcode and self.settings.AUTO_TRANSCODE):
            return False, "disabled"
        if self.codec_validator is not None:
            detection = await self.codec_validator.detect(request.buffer, request.filename, session_id)
            return detection.needs_transcoding, detection.method
        return not is_codec_compatible(metadata.codec), "ffprobe"

    async def preprocess_file(self, request: UploadRequest, session_id: Optional[str] = None) -> PreprocessResult:
        source = await self._probe_buffer(request.buffer, "video_input", request.filename, session_id)
        needs_transcoding, decided_by = await self._needs_transcoding(request, source, session_id)

        metadata: Dict[str, Any] = {
            "original_codec": source.codec,
            "original_size": request.size,
            "original_width": source.width,
            "original_height": source.height,
            "container": source.format,
            "transcode_decision": decided_by,
        }

        if not needs_transcoding:
            metadata.update(
                codec=source.codec,
                is_transcoded=False,
                processed_size=request.size,
                bitrate=source.bitrate,
                framerate=source.framerate,
            )
            return PreprocessResult(request=request, metadata=metadata)

        source_path = await self._spool(request.buffer, "video_input", request.filename, session_id)
        output_path: Optional[Path] = None
        try:
            logger.info(
                "Video needs H.264 normalisation",
                extra={"session_id": session_id, "context": {"filename": request.filename, "codec": source.codec}},
            )
            output_path = await self.temp_files.create_temp_file(
                prefix="video_transcoded", extension=".mp4", purpose="video_transcode", session_id=session_id
            )
            result = await transcode_to_h264(
                source_path,
                output_path,
                source,
                self.h264_config,
                ffmpeg_path=self.settings.FFMPEG_PATH,
                ffprobe_path=self.settings.FFPROBE_PATH,
                timeout=self.settings.FFMPEG_TIMEOUT_SECONDS,
                probe_timeout=self.settings.FFPROBE_TIMEOUT_SECONDS,
            )
            await self.temp_files.refresh_size(output_path)
            transcoded = await asyncio.to_thread(output_path.read_bytes)

            metadata.update(
                codec="h264",
                is_transcoded=True,
                transcoded_size=len(transcoded),
                processed_size=len(transcoded),
                bitrate=result.metadata.bitrate,
                framerate=result.metadata.framerate,
                quality_score=result.quality_score,
                transcode_time_ms=result.processing_time_ms,
                compression_applied=True,
                compression_ratio=round((request.size - len(transcoded)) / request.size * 100, 2),
            )
            converted = replace(
                request,
                buffer=transcoded,
                filename=str(PurePosixPath(request.filename).with_suffix(".mp4")),
                mime_type="video/mp4",
            )
            self._remember(transcoded, result.metadata)
            return PreprocessResult(request=converted, metadata=metadata)
        finally:
            await self.temp_files.cleanup_file(source_path)
            if output_path is not None:
                await self.temp_files.cleanup_file(output_path)

    async def post_process_file(
        self,
        request: UploadRequest,
        upload: StoredUpload,
        session_id: Optional[str] = None,
    ) -> PostprocessResult:
        final = await self._probe_buffer(request.buffer, "video_final", request.filename, session_id)

        thumbnail_url = None
        if request.options.generate_thumbnails:
            video_path = await self._spool(request.buffer, "video_final", request.filename, session_id)
            try:
                thumbnail_url = await self.generate_thumbnail(request, video_path, final, upload.storage_key, session_id)
            finally:
                await self.temp_files.cleanup_file(video_path)

        return PostprocessResult(
            width=final.width,
            height=final.height,
            duration=final.duration,
            thumbnail_url=thumbnail_url,
            thumbnail_sizes={"thumbnail": thumbnail_url} if thumbnail_url else {},
            metadata={
                "codec": final.codec,
                "bitrate": final.bitrate,
                "framerate": final.framerate,
                "audio_codec": final.audio_codec,
            },
        )

    async def generate_thumbnail(
        self,
        request: UploadRequest,
        video_path: Path,
        metadata: VideoMetadata,
        storage_key: str,
        session_id: Optional[str] = None,
    ) -> Optional[str]:
        """Extract and upload one JPEG frame; failures are logged, not raised."""
        thumb_path = await self.temp_files.create_temp_file(
            prefix="video_thumbnail", extension=".jpg", purpose="video_thumbnail", session_id=session_id
        )
        thumb_key = derive_key(storage_key, "_thumbnail", "jpg")
        try:
            offset = thumbnail_offset(
                metadata.duration,
                request.options.thumbnail_time,
                cap=self.settings.VIDEO_THUMBNAIL_TIME_SECONDS,
            )
            size = calculate_thumbnail_size(metadata.width, metadata.height, self.settings.VIDEO_THUMBNAIL_WIDTH)
            await extract_thumbnail(
                video_path,
                thumb_path,
                offset,
                size,
                ffmpeg_path=self.settings.FFMPEG_PATH,
                timeout=self.settings.FFPROBE_TIMEOUT_SECONDS * 2,
            )
            await self.temp_files.refresh_size(thumb_path)
            data = await asyncio.to_thread(thumb_path.read_bytes)
            stored = await self.storage.upload_file(
                key=thumb_key,
                data=data,
                content_type="image/jpeg",
                size=len(data),
                metadata={"parent": storage_key, "offsetSeconds": offset},
            )
            return stored.url
        except (ThumbnailError, ToolTimeoutError, StorageError, OSError) as e:
            logger.warning(
                "Video thumbnail generation failed",
                extra={
                    "session_id": session_id,
                    "context": {"filename": request.filename, "object_name": thumb_key},
                    "error": {"type": type(e).__name__, "message": str(e)},
                },
            )
            return None
        finally:
            await self.temp_files.cleanup_file(thumb_path)
