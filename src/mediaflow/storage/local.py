"""Local filesystem object storage."""

import asyncio
import hashlib
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from mediaflow.core.exceptions import StorageError
from mediaflow.models.media import StoredObject
from mediaflow.storage.base import ObjectStorage

logger = logging.getLogger(__name__)


class LocalObjectStorage(ObjectStorage):
    """Stores objects below a base directory, one file per key."""

    def __init__(self, base_path: Path | str = "data/media", public_base_url: str = "", cdn_domain: str = ""):
        self.base_path = Path(base_path)
        self.public_base_url = public_base_url.rstrip("/")
        self.cdn_domain = cdn_domain.rstrip("/")

    def get_target_path(self, key: str) -> Path:
        segments = [self._sanitize_segment(part) for part in key.split("/") if part not in ("", ".", "..")]
        if not segments:
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.base_path.joinpath(*segments)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        retry=retry_if_exception_type(OSError),
        reraise=True,
    )
    def _write(self, target_path: Path, data: bytes) -> None:
        target_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target_path.with_name(target_path.name + ".part")
        tmp_path.write_bytes(data)
        tmp_path.replace(target_path)

    async def upload_file(
        self,
        key: str,
        data: bytes,
        content_type: str,
        size: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredObject:
        target_path = self.get_target_path(key)
        try:
            await asyncio.to_thread(self._write, target_path, data)
        except OSError as e:
            logger.error(
                "Failed to write object to local storage",
                extra={"object_name": key, "error": {"type": type(e).__name__, "message": str(e)}},
            )
            raise StorageError(f"Local storage upload failed: {e}") from e

        logger.info(
            "Object stored",
            extra={"object_name": key, "content_type": content_type, "size_bytes": size},
        )
        relative = target_path.relative_to(self.base_path).as_posix()
        return StoredObject(
            url=f"{self.public_base_url}/{relative}" if self.public_base_url else str(target_path),
            cdn_url=f"https://{self.cdn_domain}/{relative}" if self.cdn_domain else None,
            etag=hashlib.md5(data).hexdigest(),
        )

    async def delete_file(self, key: str) -> None:
        target_path = self.get_target_path(key)
        await asyncio.to_thread(target_path.unlink, missing_ok=True)

    def get_backend_name(self) -> str:
        return "local"

    @staticmethod
    def _sanitize_segment(segment: str) -> str:
        """Remove dangerous characters from one key segment."""
        safe = segment.replace("\\", "_")
        safe = re.sub(r"[^a-zA-Z0-9._-]", "_", safe)
        return safe[:255]
