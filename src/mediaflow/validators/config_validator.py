"""Semantic validation of pipeline configuration."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from mediaflow.core.config import MB, Settings
from mediaflow.validators.mime_types import MIME_MEDIA_TYPE_MAP

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = frozenset(MIME_MEDIA_TYPE_MAP)

EXECUTABLE_MIME_TYPES = frozenset(
    [
        "application/x-executable",
        "application/x-msdownload",
        "application/x-msdos-program",
        "application/x-sh",
        "text/x-script",
    ]
)

LOG_LEVELS = frozenset(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])

MIN_FILE_SIZE_MB = 1
MAX_FILE_SIZE_MB = 4096


@dataclass
class ConfigValidationResult:
    """Outcome of a configuration check."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class ConfigValidator:
    """Validates a Settings instance independently of any processing."""

    def validate(self, config: Settings) -> ConfigValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        try:
            self._validate_file_size(config, errors, warnings)
            self._validate_mime_types(config, errors, warnings)
            self._validate_strategy(config, errors, warnings)
            self._validate_sessions(config, errors)
            self._validate_temp_files(config, errors, warnings)
            self._validate_image(config, errors)
            self._validate_video(config, errors)
            self._validate_misc(config, errors, warnings)
        except Exception as e:
            errors.append(f"Configuration check failed: {e}")

        result = ConfigValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
        if errors:
            logger.warning(
                "Configuration validation failed",
                extra={"context": {"errors": errors, "warnings": warnings}},
            )
        return result

    def _validate_file_size(self, config: Settings, errors: list[str], warnings: list[str]) -> None:
        if config.MAX_FILE_SIZE_MB <= 0:
            errors.append("MAX_FILE_SIZE_MB must be positive")
            return
        if config.MAX_FILE_SIZE_MB < MIN_FILE_SIZE_MB:
            errors.append(f"MAX_FILE_SIZE_MB must be at least {MIN_FILE_SIZE_MB}")
        if config.MAX_FILE_SIZE_MB > MAX_FILE_SIZE_MB:
            errors.append(f"MAX_FILE_SIZE_MB must not exceed {MAX_FILE_SIZE_MB}")
        if config.MAX_FILE_SIZE_MB > 50:
            warnings.append("Files above 50MB may slow down uploads")
        if config.MAX_FILES_PER_UPLOAD <= 0:
            errors.append("MAX_FILES_PER_UPLOAD must be positive")
        if config.MAX_DAILY_UPLOADS <= 0:
            errors.append("MAX_DAILY_UPLOADS must be positive")

    def _validate_mime_types(self, config: Settings, errors: list[str], warnings: list[str]) -> None:
        allowed = config.allowed_mime_types
        if allowed is None:
            return
        if not allowed:
            errors.append("At least one allowed MIME type is required")
            return

        unknown = [mt for mt in allowed if mt not in SUPPORTED_MIME_TYPES and not mt.endswith("/*")]
        if unknown:
            warnings.append(f"MIME types may not be supported: {', '.join(unknown)}")
        if "image/jpg" in allowed:
            warnings.append("image/jpg is non-standard, use image/jpeg")
        if any(mt in EXECUTABLE_MIME_TYPES or "script" in mt for mt in allowed):
            errors.append("Executable file types must not be allowed")
        if len(allowed) > 20:
            warnings.append("A long MIME allow-list slows down validation")

    def _validate_strategy(self, config: Settings, errors: list[str], warnings: list[str]) -> None:
        if config.CHUNK_SIZE_MB <= 0:
            errors.append("CHUNK_SIZE_MB must be positive")
        if config.STREAM_THRESHOLD_MB <= 0 or config.MEMORY_SAFE_THRESHOLD_MB <= 0:
            errors.append("Strategy thresholds must be positive")
            return
        if config.STREAM_THRESHOLD_MB >= config.MEMORY_SAFE_THRESHOLD_MB:
            errors.append("STREAM_THRESHOLD_MB must be below MEMORY_SAFE_THRESHOLD_MB")
        if config.CHUNK_SIZE_MB > config.STREAM_THRESHOLD_MB:
            errors.append("CHUNK_SIZE_MB must not exceed STREAM_THRESHOLD_MB")
        if config.MEMORY_SAFE_BATCH_SIZE_MB <= 0:
            errors.append("MEMORY_SAFE_BATCH_SIZE_MB must be positive")
        if config.MEMORY_SAFE_THRESHOLD_MB > config.MAX_FILE_SIZE_MB and config.MAX_FILE_SIZE_MB > 0:
            warnings.append("MEMORY_SAFE strategy is unreachable below MAX_FILE_SIZE_MB")

    def _validate_sessions(self, config: Settings, errors: list[str]) -> None:
        if config.MAX_CONCURRENT_UPLOADS <= 0 or config.MAX_UPLOADS_PER_USER <= 0:
            errors.append("Session ceilings must be positive")
        elif config.MAX_UPLOADS_PER_USER > config.MAX_CONCURRENT_UPLOADS:
            errors.append("MAX_UPLOADS_PER_USER must not exceed MAX_CONCURRENT_UPLOADS")
        if config.SESSION_TIMEOUT_SECONDS <= 0 or config.SESSION_SWEEP_INTERVAL_SECONDS <= 0:
            errors.append("Session timers must be positive")
        if config.SESSION_RETENTION_SECONDS < 0:
            errors.append("SESSION_RETENTION_SECONDS must not be negative")

    def _validate_temp_files(self, config: Settings, errors: list[str], warnings: list[str]) -> None:
        if not config.TEMP_DIR.strip():
            errors.append("TEMP_DIR must not be empty")
        elif ".." in config.TEMP_DIR:
            warnings.append("TEMP_DIR contains a relative parent segment")
        if config.TEMP_MAX_FILES <= 0 or config.TEMP_MAX_TOTAL_SIZE_MB <= 0:
            errors.append("Temp file limits must be positive")
        if config.TEMP_MAX_AGE_SECONDS <= 0 or config.TEMP_CLEANUP_INTERVAL_SECONDS <= 0:
            errors.append("Temp file timers must be positive")

    def _validate_image(self, config: Settings, errors: list[str]) -> None:
        for name in (
            "WEBP_LOSSY_QUALITY",
            "WEBP_LARGE_LOSSY_QUALITY",
            "WEBP_ANIMATED_QUALITY",
            "THUMBNAIL_QUALITY",
        ):
            value = getattr(config, name)
            if not 1 <= value <= 100:
                errors.append(f"{name} must be between 1 and 100")
        if not 0 <= config.WEBP_EFFORT <= 6:
            errors.append("WEBP_EFFORT must be between 0 and 6")
        if config.IMAGE_MAX_WIDTH <= 0 or config.IMAGE_MAX_HEIGHT <= 0:
            errors.append("Image resize maxima must be positive")
        if max(config.IMAGE_MAX_WIDTH, config.IMAGE_MAX_HEIGHT) > config.IMAGE_MAX_DIMENSION:
            errors.append("Image resize maxima must not exceed IMAGE_MAX_DIMENSION")
        try:
            sizes = config.thumbnail_sizes
        except ValueError:
            errors.append("THUMBNAIL_SIZES must look like name:px,name:px")
            return
        if any(px <= 0 for px in sizes.values()):
            errors.append("Thumbnail sizes must be positive")

    def _validate_video(self, config: Settings, errors: list[str]) -> None:
        if not 0 <= config.VIDEO_CRF <= 51:
            errors.append("VIDEO_CRF must be between 0 and 51")
        if config.FFMPEG_TIMEOUT_SECONDS <= 0 or config.FFPROBE_TIMEOUT_SECONDS <= 0:
            errors.append("ffmpeg timeouts must be positive")
        if config.VIDEO_MAX_BITRATE_KBPS <= 0 or config.VIDEO_BUFFER_SIZE_KBPS <= 0:
            errors.append("Video bitrate ceiling and buffer size must be positive")
        if config.VIDEO_MAX_SIZE_MB <= 0 or config.VIDEO_MAX_DURATION_SECONDS <= 0:
            errors.append("Video limits must be positive")

    def _validate_misc(self, config: Settings, errors: list[str], warnings: list[str]) -> None:
        if config.LOG_LEVEL.upper() not in LOG_LEVELS:
            errors.append(f"Unknown LOG_LEVEL: {config.LOG_LEVEL}")
        if config.MAX_RETRIES < 0 or config.RETRY_DELAY_MS < 0:
            errors.append("Retry policy values must not be negative")
        if config.STORAGE_BACKEND not in ("local", "gcs"):
            errors.append(f"Unknown STORAGE_BACKEND: {config.STORAGE_BACKEND}")
        elif config.STORAGE_BACKEND == "gcs" and not config.GCS_BUCKET_NAME:
            errors.append("GCS_BUCKET_NAME is required for the gcs backend")
        if config.max_file_size_bytes > 10 * MB:
            warnings.append("Large uploads are allowed; consider enabling virus scanning upstream")

    def quick_validate(self, config: Settings) -> bool:
        """Cheap sanity check without collecting messages."""
        return (
            config.MAX_FILE_SIZE_MB > 0
            and config.STREAM_THRESHOLD_MB < config.MEMORY_SAFE_THRESHOLD_MB
            and config.MAX_UPLOADS_PER_USER <= config.MAX_CONCURRENT_UPLOADS
            and bool(config.TEMP_DIR.strip())
        )

    def health_check(self, config: Settings) -> dict:
        result = self.validate(config)
        return {
            "status": "healthy" if result.is_valid else "error",
            "last_checked": datetime.now(timezone.utc).isoformat(),
            "issues": result.errors,
            "recommendations": result.warnings,
        }
