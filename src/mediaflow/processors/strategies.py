"""Upload strategies: how a processor run is driven for a given file size."""

import asyncio
import hashlib
import logging
import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

from mediaflow.models.media import UploadRequest, UploadResult, UploadStrategy
from mediaflow.processors.base import BaseProcessor
from mediaflow.storage.temp_files import TempFileManager
from mediaflow.validators.mime_types import get_file_extension

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


def _report(on_progress: Optional[ProgressCallback], progress: float) -> None:
    if on_progress is not None:
        on_progress(round(progress, 2))


class StrategyHandler(ABC):
    strategy: UploadStrategy

    @abstractmethod
    async def execute(
        self,
        processor: BaseProcessor,
        request: UploadRequest,
        session_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        pass


class DirectStrategy(StrategyHandler):
    """Single-shot processing for small files."""

    strategy = UploadStrategy.DIRECT

    async def execute(self, processor, request, session_id=None, on_progress=None):
        _report(on_progress, 10)
        result = await processor.process_upload(request, session_id=session_id, strategy=self.strategy)
        _report(on_progress, 100)
        return result


class StreamStrategy(StrategyHandler):
    """Walks the buffer in fixed-size chunks to pace progress reporting.

    The whole buffer stays in memory; chunking only drives the 0-80%
    progress band before the processor runs.
    """

    strategy = UploadStrategy.STREAM

    def __init__(self, chunk_size: int):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    async def execute(self, processor, request, session_id=None, on_progress=None):
        total_chunks = max(1, math.ceil(request.size / self.chunk_size))
        for index in range(total_chunks):
            walked = min(request.size, (index + 1) * self.chunk_size)
            _report(on_progress, walked / max(1, request.size) * 80)
            await asyncio.sleep(0)

        logger.debug(
            "Streamed upload chunks walked",
            extra={"session_id": session_id, "context": {"chunks": total_chunks, "chunk_size": self.chunk_size}},
        )

        _report(on_progress, 85)
        result = await processor.process_upload(request, session_id=session_id, strategy=self.strategy)
        _report(on_progress, 100)
        return result


class MemorySafeStrategy(StrategyHandler):
    """Spools the buffer to a managed temp file and reads it back in batches.

    The temp file is removed whatever the outcome.
    """

    strategy = UploadStrategy.MEMORY_SAFE

    def __init__(self, temp_files: TempFileManager, batch_size: int):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.temp_files = temp_files
        self.batch_size = batch_size

    async def execute(self, processor, request, session_id=None, on_progress=None):
        extension = get_file_extension(request.filename)
        path = await self.temp_files.create_temp_file(
            prefix="upload",
            extension=f".{extension}" if extension else "",
            purpose="memory_safe_upload",
            session_id=session_id,
        )
        try:
            await self.temp_files.write_temp_file(path, request.buffer, purpose="memory_safe_upload", session_id=session_id)
            _report(on_progress, 10)

            checksum = await self._read_in_batches(path, request.size, on_progress)
            logger.debug(
                "Spooled upload verified",
                extra={"session_id": session_id, "context": {"path": str(path), "md5": checksum}},
            )

            result = await processor.process_upload(request, session_id=session_id, strategy=self.strategy)
            _report(on_progress, 100)
            return result
        finally:
            await self.temp_files.cleanup_file(path)

    async def _read_in_batches(self, path: Path, size: int, on_progress: Optional[ProgressCallback]) -> str:
        total_batches = max(1, math.ceil(size / self.batch_size))
        digest = hashlib.md5()
        fh = await asyncio.to_thread(open, path, "rb")
        try:
            for index in range(total_batches):
                batch = await asyncio.to_thread(fh.read, self.batch_size)
                digest.update(batch)
                _report(on_progress, 10 + (index + 1) / total_batches * 50)
        finally:
            await asyncio.to_thread(fh.close)
        return digest.hexdigest()
