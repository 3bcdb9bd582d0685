"""Routes requests to a processor by MIME type and drives it with a strategy."""

import logging
from typing import Callable, Dict, Iterable, Optional

from mediaflow.core.config import Settings
from mediaflow.core.exceptions import FileValidationError
from mediaflow.core.logging import log_context
from mediaflow.models.media import UploadRequest, UploadResult, UploadStrategy
from mediaflow.processors.base import BaseProcessor
from mediaflow.processors.strategies import (
    DirectStrategy,
    MemorySafeStrategy,
    StrategyHandler,
    StreamStrategy,
)
from mediaflow.services.error_handler import ErrorHandler, UploadContext
from mediaflow.services.session_manager import SessionStatus, UploadSessionManager
from mediaflow.storage.temp_files import TempFileManager
from mediaflow.validators.file_validator import select_strategy
from mediaflow.validators.mime_types import normalize_mime_type

logger = logging.getLogger(__name__)


class ProcessorManager:
    """MIME-type registry plus strategy dispatch.

    MIME type picks the processor, file size picks the strategy; the two
    are independent.
    """

    def __init__(
        self,
        settings: Settings,
        session_manager: UploadSessionManager,
        error_handler: ErrorHandler,
        temp_files: TempFileManager,
        processors: Iterable[BaseProcessor] = (),
    ):
        self.settings = settings
        self.session_manager = session_manager
        self.error_handler = error_handler
        self._registry: Dict[str, BaseProcessor] = {}
        self._processors: list[BaseProcessor] = []
        self.strategies: Dict[UploadStrategy, StrategyHandler] = {
            UploadStrategy.DIRECT: DirectStrategy(),
            UploadStrategy.STREAM: StreamStrategy(settings.chunk_size_bytes),
            UploadStrategy.MEMORY_SAFE: MemorySafeStrategy(temp_files, settings.memory_safe_batch_size_bytes),
        }
        for processor in processors:
            self.register(processor)

    def register(self, processor: BaseProcessor) -> None:
        for mime_type in processor.supported_mime_types:
            existing = self._registry.get(mime_type)
            if existing is not None and existing is not processor:
                logger.warning(
                    "MIME type re-registered",
                    extra={"mime_type": mime_type, "previous": existing.name, "processor": processor.name},
                )
            self._registry[mime_type] = processor
        self._processors.append(processor)

    def get_processor(self, mime_type: str) -> BaseProcessor:
        processor = self._registry.get(normalize_mime_type(mime_type))
        if processor is None:
            raise FileValidationError(f"Unsupported file type: {mime_type}")
        return processor

    def get_supported_mime_types(self) -> list[str]:
        return sorted(self._registry)

    def get_processors(self) -> list[BaseProcessor]:
        return list(self._processors)

    def select_strategy(self, size: int) -> UploadStrategy:
        return select_strategy(
            size,
            self.settings.stream_threshold_bytes,
            self.settings.memory_safe_threshold_bytes,
        )

    async def process(
        self,
        request: UploadRequest,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> UploadResult:
        """Admit, run and complete one upload.

        Every failure, admission included, goes through the ErrorHandler
        and surfaces as an ApiError.
        """
        context = UploadContext(
            user_id=request.user_id,
            filename=request.filename,
            file_size=request.size,
        )

        async def run() -> UploadResult:
            processor = self.get_processor(request.mime_type)
            strategy = self.select_strategy(request.size)
            context.processor_name = processor.name
            context.metadata["strategy"] = strategy.value

            session_id = self.session_manager.create_session(
                user_id=request.user_id,
                filename=request.filename,
                size=request.size,
                processor_name=processor.name,
                strategy=strategy,
            )
            context.session_id = session_id
            self.session_manager.update_session(session_id, status=SessionStatus.PROCESSING)

            def report(progress: float) -> None:
                self.session_manager.update_session(session_id, progress=progress)
                if on_progress is not None:
                    on_progress(progress)

            with log_context(session_id=session_id, user_id=request.user_id):
                logger.info(
                    "Processing upload",
                    extra={
                        "action": "process",
                        "context": {
                            "filename": request.filename,
                            "size": request.size,
                            "processor": processor.name,
                            "strategy": strategy.value,
                        },
                    },
                )
                result = await self.strategies[strategy].execute(processor, request, session_id, report)

            await self.session_manager.complete_session(session_id, success=True)
            return result

        return await self.error_handler.wrap_async(run, context)
