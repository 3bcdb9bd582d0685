"""Layered configuration loading: defaults, environment, persisted settings."""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import ValidationError

from mediaflow.core.config import Settings
from mediaflow.core.exceptions import ConfigurationError
from mediaflow.validators.config_validator import ConfigValidator

logger = logging.getLogger(__name__)

# Persisted setting keys mapped to Settings fields
DATABASE_KEY_MAP: Dict[str, str] = {
    "upload_max_file_size_mb": "MAX_FILE_SIZE_MB",
    "upload_max_files_per_upload": "MAX_FILES_PER_UPLOAD",
    "upload_max_daily_uploads": "MAX_DAILY_UPLOADS",
    "upload_allowed_mime_types": "ALLOWED_MIME_TYPES",
    "upload_chunk_size_mb": "CHUNK_SIZE_MB",
    "upload_stream_threshold_mb": "STREAM_THRESHOLD_MB",
    "upload_memory_safe_threshold_mb": "MEMORY_SAFE_THRESHOLD_MB",
    "upload_max_concurrent_uploads": "MAX_CONCURRENT_UPLOADS",
    "upload_max_uploads_per_user": "MAX_UPLOADS_PER_USER",
    "upload_session_timeout_seconds": "SESSION_TIMEOUT_SECONDS",
    "upload_enable_compression": "ENABLE_COMPRESSION",
    "upload_compression_quality": "WEBP_LOSSY_QUALITY",
    "upload_enable_thumbnail_generation": "ENABLE_THUMBNAIL_GENERATION",
    "upload_thumbnail_sizes": "THUMBNAIL_SIZES",
    "upload_auto_transcode": "AUTO_TRANSCODE",
    "upload_log_level": "LOG_LEVEL",
    "upload_max_retries": "MAX_RETRIES",
    "upload_retry_delay_ms": "RETRY_DELAY_MS",
    "upload_exponential_backoff": "EXPONENTIAL_BACKOFF",
    "cdn_domain": "CDN_DOMAIN",
}

# Lower number merges first
SOURCE_PRIORITY = {"default": 0, "environment": 1, "database": 2}


class SettingsSource(ABC):
    """Persisted settings provider (a settings table, a file, ...)."""

    @abstractmethod
    async def load(self) -> Dict[str, Any]:
        """Return raw persisted items keyed by their stable setting key.

        Values are JSON-encoded strings.
        """
        pass


class InMemorySettingsSource(SettingsSource):
    """Settings source backed by a dict, used for tests and embedding."""

    def __init__(self, items: Dict[str, Any] | None = None):
        self.items: Dict[str, Any] = dict(items or {})

    async def load(self) -> Dict[str, Any]:
        return dict(self.items)


class YamlSettingsSource(SettingsSource):
    """Settings source reading the persisted key space from a YAML file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    async def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file must hold a mapping: {self.path}")
        # YAML values are already typed; re-encode so every source speaks JSON
        return {key: json.dumps(value) for key, value in data.items()}


class ConfigLoader:
    """Merges configuration layers in ascending priority.

    defaults < environment variables < persisted settings
    """

    def __init__(self, source: SettingsSource | None = None, validator: ConfigValidator | None = None):
        self.source = source
        self.validator = validator or ConfigValidator()
        self._cached: Settings | None = None

    @staticmethod
    def load_defaults() -> Dict[str, Any]:
        return {
            name: field.default
            for name, field in Settings.model_fields.items()
        }

    @staticmethod
    def load_from_environment() -> Dict[str, Any]:
        """Values set through the environment or .env, without defaults."""
        return Settings().model_dump(exclude_defaults=True)

    async def load_from_database(self) -> Dict[str, Any]:
        if self.source is None:
            return {}

        try:
            items = await self.source.load()
        except Exception as e:
            logger.warning(
                "Failed to load persisted settings, continuing without them",
                extra={"error": {"type": type(e).__name__, "message": str(e)}},
            )
            return {}

        overrides: Dict[str, Any] = {}
        for key, raw in items.items():
            field_name = DATABASE_KEY_MAP.get(key)
            if field_name is None:
                logger.debug("Ignoring unknown persisted setting", extra={"setting": key})
                continue
            try:
                value = json.loads(raw) if isinstance(raw, str) else raw
            except json.JSONDecodeError:
                logger.warning("Skipping malformed persisted setting", extra={"setting": key})
                continue
            if isinstance(value, list):
                value = ",".join(str(v) for v in value)
            overrides[field_name] = value
        return overrides

    @staticmethod
    def merge_configs(layers: list[tuple[str, Dict[str, Any]]]) -> Settings:
        merged: Dict[str, Any] = {}
        for source, values in sorted(layers, key=lambda layer: SOURCE_PRIORITY.get(layer[0], 0)):
            merged.update(values)
        # Init kwargs outrank the environment, so the merged view is final
        return Settings(**merged)

    async def load_full_config(self, validate: bool = True, fallback_to_defaults: bool = True) -> Settings:
        defaults = self.load_defaults()
        environment = self.load_from_environment()
        layers = [("default", defaults), ("environment", environment)]

        database = await self.load_from_database()
        if database:
            layers.append(("database", database))

        try:
            config = self.merge_configs(layers)
        except ValidationError as e:
            if not fallback_to_defaults:
                raise ConfigurationError(f"Invalid configuration: {e}") from e
            logger.error("Persisted settings rejected, using environment configuration", exc_info=True)
            config = self.merge_configs(layers[:2])

        if validate:
            result = self.validator.validate(config)
            if not result.is_valid:
                if not fallback_to_defaults:
                    raise ConfigurationError("; ".join(result.errors))
                logger.error(
                    "Configuration invalid, falling back to environment configuration",
                    extra={"context": {"errors": result.errors}},
                )
                config = self.merge_configs(layers[:2])

        logger.info(
            "Configuration loaded",
            extra={"context": {"sources": [name for name, _ in layers], "overrides": sorted(database)}},
        )
        self._cached = config
        return config

    async def get_config(self) -> Settings:
        if self._cached is None:
            return await self.load_full_config()
        return self._cached

    async def reload(self) -> Settings:
        self._cached = None
        return await self.load_full_config()
