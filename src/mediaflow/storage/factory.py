"""Object storage selection."""

from mediaflow.core.config import Settings
from mediaflow.storage.base import ObjectStorage
from mediaflow.storage.gcs import GCSObjectStorage
from mediaflow.storage.local import LocalObjectStorage


def get_object_storage(settings: Settings) -> ObjectStorage:
    """Return the backend named by STORAGE_BACKEND."""
    if settings.STORAGE_BACKEND == "gcs":
        return GCSObjectStorage(
            bucket_name=settings.GCS_BUCKET_NAME,
            project_id=settings.GCP_PROJECT_ID,
            cdn_domain=settings.CDN_DOMAIN,
        )
    if settings.STORAGE_BACKEND == "local":
        return LocalObjectStorage(
            base_path=settings.LOCAL_STORAGE_PATH,
            public_base_url=settings.PUBLIC_BASE_URL,
            cdn_domain=settings.CDN_DOMAIN,
        )
    raise ValueError(f"Unknown storage backend: {settings.STORAGE_BACKEND}")
