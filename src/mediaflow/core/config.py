"""Configuration management for the mediaflow upload pipeline."""

from pydantic_settings import BaseSettings, SettingsConfigDict

MB = 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    ENV: str = "local"
    SERVICE_NAME: str = "mediaflow"
    SERVICE_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    SETTINGS_FILE: str = ""  # YAML file with persisted setting overrides, empty = none

    # Storage Configuration
    STORAGE_BACKEND: str = "local"  # "gcs" or "local"
    LOCAL_STORAGE_PATH: str = "data/media"
    PUBLIC_BASE_URL: str = "http://localhost:8080/media"
    CDN_DOMAIN: str = ""
    GCP_PROJECT_ID: str = ""
    GCS_BUCKET_NAME: str = ""

    # Upload Constraints
    MAX_FILE_SIZE_MB: int = 2048
    MAX_FILES_PER_UPLOAD: int = 10
    MAX_DAILY_UPLOADS: int = 100
    ALLOWED_MIME_TYPES: str = ""  # Comma-separated, empty = every type a processor supports

    # Upload Strategy
    CHUNK_SIZE_MB: int = 5
    STREAM_THRESHOLD_MB: int = 50
    MEMORY_SAFE_THRESHOLD_MB: int = 200
    MEMORY_SAFE_BATCH_SIZE_MB: int = 10

    # Session Admission
    MAX_CONCURRENT_UPLOADS: int = 10
    MAX_UPLOADS_PER_USER: int = 3
    SESSION_TIMEOUT_SECONDS: int = 1800
    SESSION_SWEEP_INTERVAL_SECONDS: int = 300
    SESSION_RETENTION_SECONDS: int = 60

    # Temporary Files
    TEMP_DIR: str = "temp/upload-processing"
    TEMP_MAX_AGE_SECONDS: int = 7200
    TEMP_CLEANUP_INTERVAL_SECONDS: int = 600
    TEMP_MAX_FILES: int = 1000
    TEMP_MAX_TOTAL_SIZE_MB: int = 10240

    # Image Processing
    IMAGE_MAX_DIMENSION: int = 8192
    IMAGE_MAX_WIDTH: int = 2048
    IMAGE_MAX_HEIGHT: int = 2048
    ENABLE_COMPRESSION: bool = True
    WEBP_LOSSY_QUALITY: int = 85
    WEBP_LARGE_LOSSY_QUALITY: int = 75
    WEBP_ANIMATED_QUALITY: int = 80
    WEBP_EFFORT: int = 4  # Pillow "method", 0 (fast) to 6 (small)
    WEBP_LARGE_FILE_THRESHOLD_MB: float = 2.0
    ENABLE_THUMBNAIL_GENERATION: bool = True
    THUMBNAIL_SIZES: str = "small:150,medium:300,large:600"
    THUMBNAIL_QUALITY: int = 80

    # Video Processing
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    FFMPEG_TIMEOUT_SECONDS: int = 300
    FFPROBE_TIMEOUT_SECONDS: int = 30
    VIDEO_MAX_SIZE_MB: int = 1024
    VIDEO_MAX_DURATION_SECONDS: int = 3600
    VIDEO_CRF: int = 23
    VIDEO_PRESET: str = "medium"
    VIDEO_MAX_BITRATE_KBPS: int = 5000
    VIDEO_BUFFER_SIZE_KBPS: int = 10000
    VIDEO_MAX_WIDTH: int = 1920
    VIDEO_MAX_HEIGHT: int = 1080
    VIDEO_AUDIO_BITRATE: str = "128k"
    VIDEO_THUMBNAIL_TIME_SECONDS: float = 10.0
    VIDEO_THUMBNAIL_WIDTH: int = 320
    AUTO_TRANSCODE: bool = True
    VIDEO_STRICT_CODEC_CHECK: bool = False  # use the CodecValidator cascade for the transcode decision

    # Document Processing
    DOCUMENT_MAX_SIZE_MB: int = 50

    # Retry Policy
    MAX_RETRIES: int = 3
    RETRY_DELAY_MS: int = 1000
    EXPONENTIAL_BACKOFF: bool = True

    @property
    def allowed_mime_types(self) -> list[str] | None:
        """Parse ALLOWED_MIME_TYPES into a list."""
        if not self.ALLOWED_MIME_TYPES:
            return None
        return [mt.strip() for mt in self.ALLOWED_MIME_TYPES.split(",") if mt.strip()]

    @property
    def thumbnail_sizes(self) -> dict[str, int]:
        """Parse THUMBNAIL_SIZES ("name:px,...") into an ordered mapping."""
        sizes: dict[str, int] = {}
        for item in self.THUMBNAIL_SIZES.split(","):
            if not item.strip():
                continue
            name, _, value = item.partition(":")
            sizes[name.strip()] = int(value)
        return sizes

    @property
    def max_file_size_bytes(self) -> int:
        return self.MAX_FILE_SIZE_MB * MB

    @property
    def chunk_size_bytes(self) -> int:
        return self.CHUNK_SIZE_MB * MB

    @property
    def stream_threshold_bytes(self) -> int:
        return self.STREAM_THRESHOLD_MB * MB

    @property
    def memory_safe_threshold_bytes(self) -> int:
        return self.MEMORY_SAFE_THRESHOLD_MB * MB

    @property
    def memory_safe_batch_size_bytes(self) -> int:
        return self.MEMORY_SAFE_BATCH_SIZE_MB * MB

    @property
    def temp_max_total_size_bytes(self) -> int:
        return self.TEMP_MAX_TOTAL_SIZE_MB * MB

    @property
    def webp_large_file_threshold_bytes(self) -> int:
        return int(self.WEBP_LARGE_FILE_THRESHOLD_MB * MB)

    @property
    def video_max_size_bytes(self) -> int:
        return self.VIDEO_MAX_SIZE_MB * MB

    @property
    def document_max_size_bytes(self) -> int:
        return self.DOCUMENT_MAX_SIZE_MB * MB


# Singleton settings instance
settings = Settings()
