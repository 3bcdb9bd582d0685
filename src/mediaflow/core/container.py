"""Composition root: builds and owns the pipeline components."""

import logging
from dataclasses import dataclass
from typing import Optional

from mediaflow.core.config import Settings
from mediaflow.processors.document import DocumentProcessor
from mediaflow.processors.image import ImageProcessor
from mediaflow.processors.manager import ProcessorManager
from mediaflow.processors.video import CodecValidator, VideoProcessor
from mediaflow.providers.permissions import InMemoryUsageProvider, PermissionChecker, SystemLimits
from mediaflow.services.error_handler import ErrorHandler
from mediaflow.services.session_manager import UploadSessionManager
from mediaflow.storage.base import MediaRepository, ObjectStorage
from mediaflow.storage.factory import get_object_storage
from mediaflow.storage.record_store import InMemoryMediaRepository
from mediaflow.storage.temp_files import TempFileManager
from mediaflow.validators.file_validator import UploadValidator

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    temp_files: TempFileManager
    session_manager: UploadSessionManager
    error_handler: ErrorHandler
    storage: ObjectStorage
    repository: MediaRepository
    processor_manager: ProcessorManager
    validator: UploadValidator
    usage: InMemoryUsageProvider
    permissions: PermissionChecker

    async def start(self, start_sweeps: bool = True) -> None:
        await self.temp_files.initialize(start_sweep=start_sweeps)
        if start_sweeps:
            self.session_manager.start()
        logger.info(
            "Upload pipeline started",
            extra={
                "storage_backend": self.storage.get_backend_name(),
                "processors": [p.name for p in self.processor_manager.get_processors()],
            },
        )

    async def shutdown(self) -> None:
        await self.session_manager.stop()
        await self.temp_files.destroy()
        logger.info("Upload pipeline stopped")


def build_container(
    settings: Settings,
    storage: Optional[ObjectStorage] = None,
    repository: Optional[MediaRepository] = None,
    usage: Optional[InMemoryUsageProvider] = None,
) -> Container:
    """Wire every component from ``settings``.

    ``storage``, ``repository`` and ``usage`` replace the defaults when given.
    """
    temp_files = TempFileManager.from_settings(settings)
    session_manager = UploadSessionManager.from_settings(settings)
    error_handler = ErrorHandler(session_manager, temp_files)
    storage = storage or get_object_storage(settings)
    repository = repository or InMemoryMediaRepository()

    codec_validator = None
    if settings.VIDEO_STRICT_CODEC_CHECK:
        codec_validator = CodecValidator(
            temp_files,
            ffprobe_path=settings.FFPROBE_PATH,
            probe_timeout=settings.FFPROBE_TIMEOUT_SECONDS,
            max_attempts=settings.MAX_RETRIES,
            retry_wait_seconds=settings.RETRY_DELAY_MS / 1000,
        )

    processors = [
        ImageProcessor(storage, repository, temp_files, settings),
        VideoProcessor(storage, repository, temp_files, settings, codec_validator=codec_validator),
        DocumentProcessor(storage, repository, temp_files, settings),
    ]
    processor_manager = ProcessorManager(settings, session_manager, error_handler, temp_files, processors)

    usage = usage or InMemoryUsageProvider(
        SystemLimits(
            global_max_file_size=settings.max_file_size_bytes,
            global_max_daily_uploads=settings.MAX_DAILY_UPLOADS,
        )
    )

    return Container(
        settings=settings,
        temp_files=temp_files,
        session_manager=session_manager,
        error_handler=error_handler,
        storage=storage,
        repository=repository,
        processor_manager=processor_manager,
        validator=UploadValidator(settings),
        usage=usage,
        permissions=PermissionChecker(usage),
    )
