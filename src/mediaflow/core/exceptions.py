"""Exceptions raised by the mediaflow pipeline."""


class MediaFlowException(Exception):
    """Base exception for the upload pipeline."""
    pass


class FileValidationError(MediaFlowException):
    """Exception raised when an upload fails structural or semantic validation."""
    pass


class RateLimitExceeded(MediaFlowException):
    """Exception raised when a concurrency ceiling refuses admission."""
    pass


class PermissionDeniedError(MediaFlowException):
    """Exception raised when a user may not perform an upload."""
    pass


class StorageError(MediaFlowException):
    """Exception raised when object storage or persistence fails."""
    pass


class ProcessingError(MediaFlowException):
    """Exception raised when a media transformation fails."""
    pass


class ProbeError(ProcessingError):
    """Exception raised when ffprobe cannot read a media file."""
    pass


class TranscodeError(ProcessingError):
    """Exception raised when ffmpeg transcoding fails."""
    pass


class ThumbnailError(ProcessingError):
    """Exception raised when thumbnail extraction fails."""
    pass


class ToolTimeoutError(ProcessingError, TimeoutError):
    """Exception raised when ffprobe or ffmpeg exceeds its timeout."""
    pass


class UploadProcessingError(MediaFlowException):
    """Internal error wrapping any failure inside a processor pipeline."""
    pass


class ConfigurationError(MediaFlowException):
    """Exception raised when the loaded configuration is invalid."""
    pass


class ApiError(MediaFlowException):
    """Error surfaced to API callers.

    Only ``message`` (the user-facing text) leaves the process; the
    technical cause stays on ``__cause__`` and in the logs.
    """

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        retryable: bool = False,
        retry_after_ms: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.retryable = retryable
        self.retry_after_ms = retry_after_ms

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.retry_after_ms is not None:
            payload["retry_after_ms"] = self.retry_after_ms
        return payload


class BadRequestError(ApiError):
    status_code = 400
    default_code = "BAD_REQUEST"


class ForbiddenError(ApiError):
    status_code = 403
    default_code = "FORBIDDEN"


class UploadFailedError(ApiError):
    """Business failure the caller may retry after ``retry_after_ms``."""

    status_code = 422
    default_code = "UPLOAD_FAILED"


class InternalServerError(ApiError):
    status_code = 500
    default_code = "INTERNAL_ERROR"
