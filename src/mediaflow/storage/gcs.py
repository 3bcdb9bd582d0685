"""Google Cloud Storage object storage."""

import asyncio
import logging
from typing import Any, Dict, Optional

import requests
from google.api_core.exceptions import InternalServerError, ServiceUnavailable, TooManyRequests
from google.cloud import storage
from google.cloud.exceptions import Forbidden, NotFound
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from mediaflow.core.exceptions import StorageError
from mediaflow.models.media import StoredObject
from mediaflow.storage.base import ObjectStorage

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    ServiceUnavailable,
    TooManyRequests,
    InternalServerError,
    requests.exceptions.ConnectionError,
    ConnectionError,
)


class GCSObjectStorage(ObjectStorage):
    """Object storage on a single GCS bucket."""

    def __init__(self, bucket_name: str, project_id: str | None = None, cdn_domain: str = ""):
        if not bucket_name:
            raise ValueError("GCS_BUCKET_NAME not configured")
        self.bucket_name = bucket_name
        self.project_id = project_id or None
        self.cdn_domain = cdn_domain.rstrip("/")
        self._client: Optional[storage.Client] = None
        self._bucket: Optional[storage.Bucket] = None

    def _get_bucket(self) -> storage.Bucket:
        """Lazy-load and cache the GCS bucket."""
        if self._bucket is None:
            self._client = storage.Client(project=self.project_id)
            self._bucket = self._client.bucket(self.bucket_name)
        return self._bucket

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    def _upload_blob(self, key: str, data: bytes, content_type: str, metadata: Dict[str, str]) -> str:
        blob = self._get_bucket().blob(key)
        blob.metadata = metadata
        blob.upload_from_string(data, content_type=content_type)
        return blob.etag or ""

    async def upload_file(
        self,
        key: str,
        data: bytes,
        content_type: str,
        size: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredObject:
        blob_metadata = {k: str(v) for k, v in (metadata or {}).items() if v is not None}
        try:
            etag = await asyncio.to_thread(self._upload_blob, key, data, content_type, blob_metadata)
        except Forbidden as e:
            logger.error("Access forbidden to GCS bucket", extra={"bucket": self.bucket_name, "object_name": key})
            raise StorageError(f"Storage access denied: gs://{self.bucket_name}/{key}") from e
        except Exception as e:
            logger.error(
                "Failed to upload object to GCS",
                extra={"bucket": self.bucket_name, "object_name": key, "error": {"message": str(e)}},
            )
            raise StorageError(f"GCS storage upload failed: {e}") from e

        logger.info(
            "Object uploaded to GCS",
            extra={"bucket": self.bucket_name, "object_name": key, "size_bytes": size},
        )
        return StoredObject(
            url=f"https://storage.googleapis.com/{self.bucket_name}/{key}",
            cdn_url=f"https://{self.cdn_domain}/{key}" if self.cdn_domain else None,
            etag=etag or None,
        )

    async def delete_file(self, key: str) -> None:
        blob = self._get_bucket().blob(key)
        try:
            await asyncio.to_thread(blob.delete)
        except NotFound:
            pass

    def get_backend_name(self) -> str:
        return "gcs"
