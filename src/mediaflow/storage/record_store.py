"""In-memory media record store."""

import uuid
from datetime import datetime
from typing import Dict, Optional

from mediaflow.models.media import MediaRecord
from mediaflow.storage.base import MediaRepository


class InMemoryMediaRepository(MediaRepository):
    """In-memory store for processed media records."""

    def __init__(self):
        self._records: Dict[str, MediaRecord] = {}

    async def create(self, record: MediaRecord) -> str:
        record.id = record.id or str(uuid.uuid4())
        record.created_at = record.created_at or datetime.utcnow()
        self._records[record.id] = record
        return record.id

    async def get(self, record_id: str) -> Optional[MediaRecord]:
        return self._records.get(record_id)

    async def find_by_hash(self, file_hash: str, user_id: str) -> Optional[MediaRecord]:
        for record in self._records.values():
            if record.file_hash == file_hash and record.uploaded_by == user_id:
                return record
        return None

    def list_all(self) -> list[MediaRecord]:
        return list(self._records.values())
