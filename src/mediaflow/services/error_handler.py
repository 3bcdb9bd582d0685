"""Failure classification, cleanup and mapping to API errors."""

import asyncio
import inspect
import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, NamedTuple, NoReturn, Optional, TypeVar, Union

from mediaflow.core.exceptions import (
    ApiError,
    BadRequestError,
    FileValidationError,
    ForbiddenError,
    InternalServerError,
    MediaFlowException,
    PermissionDeniedError,
    ProcessingError,
    RateLimitExceeded,
    StorageError,
    UploadFailedError,
    UploadProcessingError,
)
from mediaflow.services.session_manager import UploadSessionManager
from mediaflow.storage.temp_files import TempFileManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UploadErrorType(str, Enum):
    """Closed failure taxonomy."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    RESOURCE_ERROR = "RESOURCE_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class ErrorPolicy(NamedTuple):
    code: str
    user_message: str
    retryable: bool
    retry_delay_ms: Optional[int]


ERROR_POLICIES: Dict[UploadErrorType, ErrorPolicy] = {
    UploadErrorType.VALIDATION_ERROR: ErrorPolicy(
        "VALIDATION_FAILED", "File validation failed, please check the file format and size", False, None
    ),
    UploadErrorType.STORAGE_ERROR: ErrorPolicy(
        "STORAGE_FAILED", "File storage failed, please retry later", True, 5000
    ),
    UploadErrorType.PROCESSING_ERROR: ErrorPolicy(
        "PROCESSING_FAILED", "File processing failed, please check whether the file is damaged", True, 3000
    ),
    UploadErrorType.NETWORK_ERROR: ErrorPolicy(
        "NETWORK_FAILED", "Network connection failed, please check your network and retry", True, 2000
    ),
    UploadErrorType.TIMEOUT_ERROR: ErrorPolicy(
        "TIMEOUT", "The operation timed out, please retry later", True, 10000
    ),
    UploadErrorType.RESOURCE_ERROR: ErrorPolicy(
        "RESOURCE_EXHAUSTED", "System resources are exhausted, please retry later", True, 30000
    ),
    UploadErrorType.PERMISSION_ERROR: ErrorPolicy(
        "PERMISSION_DENIED", "You do not have permission to perform this operation", False, None
    ),
    UploadErrorType.SYSTEM_ERROR: ErrorPolicy(
        "SYSTEM_ERROR", "Internal system error, please contact support", False, None
    ),
}


def _types(*classes: type) -> Callable[[BaseException], bool]:
    return lambda error: isinstance(error, classes)


def _text(message: tuple[str, ...] = (), name: tuple[str, ...] = ()) -> Callable[[BaseException], bool]:
    def predicate(error: BaseException) -> bool:
        error_message = str(error).lower()
        error_name = type(error).__name__.lower()
        return any(p in error_message for p in message) or any(p in error_name for p in name)

    return predicate


# Evaluated top to bottom; new failure modes are added here.
ERROR_RULES: list[tuple[Callable[[BaseException], bool], UploadErrorType]] = [
    (_types(FileValidationError), UploadErrorType.VALIDATION_ERROR),
    (_types(PermissionDeniedError, PermissionError), UploadErrorType.PERMISSION_ERROR),
    (_types(RateLimitExceeded, MemoryError), UploadErrorType.RESOURCE_ERROR),
    (_types(StorageError), UploadErrorType.STORAGE_ERROR),
    (_types(TimeoutError, asyncio.TimeoutError, subprocess.TimeoutExpired), UploadErrorType.TIMEOUT_ERROR),
    (_types(ProcessingError), UploadErrorType.PROCESSING_ERROR),
    (_types(ConnectionError), UploadErrorType.NETWORK_ERROR),
    (_text(message=("validation", "invalid", "unsupported")), UploadErrorType.VALIDATION_ERROR),
    (_text(message=("storage", "upload", "s3", "r2")), UploadErrorType.STORAGE_ERROR),
    (_text(message=("ffmpeg", "transcode", "thumbnail", "processing")), UploadErrorType.PROCESSING_ERROR),
    (_text(message=("timeout", "connection", "econnreset"), name=("network",)), UploadErrorType.NETWORK_ERROR),
    (_text(message=("timed out",), name=("timeout",)), UploadErrorType.TIMEOUT_ERROR),
    (_text(message=("memory", "disk", "space", "limit")), UploadErrorType.RESOURCE_ERROR),
    (_text(message=("permission", "unauthorized", "forbidden")), UploadErrorType.PERMISSION_ERROR),
]


@dataclass
class UploadContext:
    """What the error handler needs to know to clean up after a failure."""

    session_id: Optional[str] = None
    user_id: Optional[str] = None
    filename: Optional[str] = None
    file_size: Optional[int] = None
    processor_name: Optional[str] = None
    temp_files: list[Union[str, Path]] = field(default_factory=list)
    cleanup: Optional[Callable[[], Union[None, Awaitable[None]]]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorDetails:
    """Classified view of a failure."""

    type: UploadErrorType
    code: str
    user_message: str
    technical_message: str
    retryable: bool
    retry_delay_ms: Optional[int] = None
    context: Optional[UploadContext] = None


class UploadError(MediaFlowException):
    """Failure whose classification is already known."""

    def __init__(self, details: ErrorDetails):
        super().__init__(details.technical_message)
        self.details = details


def _error_chain(error: BaseException) -> list[BaseException]:
    """Outermost first, following explicit causes."""
    chain = []
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        chain.append(current)
        seen.add(id(current))
        current = current.__cause__
    return chain


def classify_error(error: BaseException) -> UploadErrorType:
    """Map an exception onto the taxonomy.

    The pipeline wrapper is skipped so the failure it carries decides the
    class; otherwise the outermost classifiable exception wins.
    """
    for candidate in _error_chain(error):
        if isinstance(candidate, UploadProcessingError):
            continue
        for predicate, error_type in ERROR_RULES:
            if predicate(candidate):
                return error_type
    return UploadErrorType.SYSTEM_ERROR


class ErrorHandler:
    """Classifies failures, cleans up after them and raises API errors."""

    def __init__(self, session_manager: UploadSessionManager, temp_files: TempFileManager):
        self.session_manager = session_manager
        self.temp_files = temp_files

    @staticmethod
    def create_upload_error(
        error_type: UploadErrorType,
        technical_message: str,
        context: Optional[UploadContext] = None,
        user_message: Optional[str] = None,
    ) -> UploadError:
        policy = ERROR_POLICIES[error_type]
        return UploadError(
            ErrorDetails(
                type=error_type,
                code=policy.code,
                user_message=user_message or policy.user_message,
                technical_message=technical_message,
                retryable=policy.retryable,
                retry_delay_ms=policy.retry_delay_ms,
                context=context,
            )
        )

    def analyze_error(self, error: BaseException, context: Optional[UploadContext] = None) -> ErrorDetails:
        for candidate in _error_chain(error):
            if isinstance(candidate, UploadError):
                return candidate.details

        error_type = classify_error(error)
        policy = ERROR_POLICIES[error_type]
        return ErrorDetails(
            type=error_type,
            code=policy.code,
            user_message=policy.user_message,
            technical_message=str(error) or type(error).__name__,
            retryable=policy.retryable,
            retry_delay_ms=policy.retry_delay_ms,
            context=context,
        )

    async def handle_upload_error(self, error: BaseException, context: UploadContext) -> NoReturn:
        """Log, clean up, then raise the API error for ``error``.

        Cleanup failures are logged and never replace the original error.
        """
        if isinstance(error, ApiError):
            await self.perform_cleanup(context)
            raise error

        try:
            details = self.analyze_error(error, context)
        except Exception:
            logger.error("Error classification failed", exc_info=True)
            details = self.create_upload_error(UploadErrorType.SYSTEM_ERROR, str(error), context).details

        logger.error(
            details.technical_message,
            exc_info=(type(error), error, error.__traceback__),
            extra={
                "session_id": context.session_id,
                "user_id": context.user_id,
                "action": "upload",
                "context": {
                    "filename": context.filename,
                    "fileSize": context.file_size,
                    "processor": context.processor_name,
                    **context.metadata,
                },
                "error": {
                    "category": details.type.value,
                    "code": details.code,
                    "retryable": details.retryable,
                },
            },
        )

        await self.perform_cleanup(context)
        raise self.to_api_error(details) from error

    async def perform_cleanup(self, context: UploadContext) -> None:
        steps: list[tuple[str, Awaitable[Any]]] = []
        if context.session_id:
            steps.append(("cancel_session", self.session_manager.cancel_session(context.session_id)))
        for path in context.temp_files:
            steps.append((f"temp_file:{path}", self._cleanup_temp_file(path)))
        if context.session_id:
            steps.append(("session_files", self.temp_files.cleanup_session_files(context.session_id)))
        if context.cleanup is not None:
            steps.append(("custom_cleanup", self._run_custom_cleanup(context.cleanup)))

        if not steps:
            return

        results = await asyncio.gather(*(step for _, step in steps), return_exceptions=True)
        for (label, _), result in zip(steps, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Cleanup step failed",
                    extra={
                        "session_id": context.session_id,
                        "context": {"step": label},
                        "error": {"type": type(result).__name__, "message": str(result)},
                    },
                )

    async def _cleanup_temp_file(self, path: Union[str, Path]) -> None:
        if not await self.temp_files.cleanup_file(path):
            raise OSError(f"Temp file could not be deleted: {path}")

    @staticmethod
    async def _run_custom_cleanup(cleanup: Callable[[], Union[None, Awaitable[None]]]) -> None:
        result = cleanup()
        if inspect.isawaitable(result):
            await result

    @staticmethod
    def to_api_error(details: ErrorDetails) -> ApiError:
        if details.type == UploadErrorType.VALIDATION_ERROR:
            return BadRequestError(details.user_message, code=details.code)
        if details.type == UploadErrorType.PERMISSION_ERROR:
            return ForbiddenError(details.user_message, code=details.code)
        if details.type == UploadErrorType.SYSTEM_ERROR:
            return InternalServerError(details.user_message, code=details.code)
        return UploadFailedError(
            details.user_message,
            code=details.code,
            retryable=details.retryable,
            retry_after_ms=details.retry_delay_ms,
        )

    async def wrap_async(self, operation: Callable[[], Awaitable[T]], context: UploadContext) -> T:
        """Run ``operation`` and route any failure through handle_upload_error."""
        try:
            return await operation()
        except Exception as e:
            await self.handle_upload_error(e, context)
