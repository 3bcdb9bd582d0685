"""Abstract collaborators: object storage and media record persistence."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from mediaflow.models.media import MediaRecord, StoredObject


class ObjectStorage(ABC):
    """Abstract base class for object storage backends."""

    @abstractmethod
    async def upload_file(
        self,
        key: str,
        data: bytes,
        content_type: str,
        size: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredObject:
        """Store ``data`` under ``key``.

        Must be idempotent for identical keys; keys are derived from the
        content fingerprint.

        Args:
            key: Storage key
            data: Object bytes
            content_type: MIME type
            size: Declared byte size
            metadata: Custom metadata stored with the object

        Returns:
            Public URL, optional CDN URL and etag
        """
        pass

    @abstractmethod
    async def delete_file(self, key: str) -> None:
        """Remove the object stored under ``key`` if present."""
        pass

    @abstractmethod
    def get_backend_name(self) -> str:
        """Return backend identifier."""
        pass


class MediaRepository(ABC):
    """Persistence collaborator for processed media records."""

    @abstractmethod
    async def create(self, record: MediaRecord) -> str:
        """Persist a record and return its id."""
        pass

    @abstractmethod
    async def get(self, record_id: str) -> Optional[MediaRecord]:
        """Fetch a record by id."""
        pass

    @abstractmethod
    async def find_by_hash(self, file_hash: str, user_id: str) -> Optional[MediaRecord]:
        """Find an earlier record of the same content for the same owner."""
        pass
