"""In-memory registry and admission control for in-flight uploads."""

import asyncio
import inspect
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from mediaflow.core.config import Settings
from mediaflow.core.exceptions import RateLimitExceeded
from mediaflow.models.media import UploadStrategy

logger = logging.getLogger(__name__)

SessionCallback = Callable[[], Union[None, Awaitable[None]]]


class SessionStatus(str, Enum):
    """Upload session status. Moves forward only."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


_STATUS_RANK = {
    SessionStatus.PENDING: 0,
    SessionStatus.PROCESSING: 1,
    SessionStatus.COMPLETED: 2,
    SessionStatus.FAILED: 2,
}

ACTIVE_STATUSES = (SessionStatus.PENDING, SessionStatus.PROCESSING)


@dataclass
class UploadSession:
    """One tracked upload."""

    id: str
    user_id: str
    filename: str
    size: int
    processor_name: str
    strategy: UploadStrategy
    status: SessionStatus
    progress: float
    started_at: float
    created_at: datetime
    updated_at: datetime
    cancel: Optional[SessionCallback] = None
    cleanup: Optional[SessionCallback] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


async def _invoke(callback: SessionCallback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class UploadSessionManager:
    """Process-local admission controller for uploads.

    Ceilings apply per process; there is no coordination across
    replicas. Callbacks run outside of any registry mutation.
    """

    def __init__(
        self,
        max_concurrent_uploads: int = 10,
        max_uploads_per_user: int = 3,
        session_timeout_seconds: float = 30 * 60,
        sweep_interval_seconds: float = 5 * 60,
        retention_seconds: float = 60,
    ):
        self.max_concurrent_uploads = max_concurrent_uploads
        self.max_uploads_per_user = max_uploads_per_user
        self.session_timeout_seconds = session_timeout_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.retention_seconds = retention_seconds
        self._sessions: Dict[str, UploadSession] = {}
        self._deletions: Dict[str, asyncio.TimerHandle] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "UploadSessionManager":
        return cls(
            max_concurrent_uploads=settings.MAX_CONCURRENT_UPLOADS,
            max_uploads_per_user=settings.MAX_UPLOADS_PER_USER,
            session_timeout_seconds=settings.SESSION_TIMEOUT_SECONDS,
            sweep_interval_seconds=settings.SESSION_SWEEP_INTERVAL_SECONDS,
            retention_seconds=settings.SESSION_RETENTION_SECONDS,
        )

    def create_session(
        self,
        user_id: str,
        filename: str,
        size: int,
        processor_name: str,
        strategy: UploadStrategy,
    ) -> str:
        """Admit a new upload or raise RateLimitExceeded."""
        active = [s for s in self._sessions.values() if s.is_active]
        if len(active) >= self.max_concurrent_uploads:
            logger.warning(
                "Global upload limit reached",
                extra={"user_id": user_id, "active_uploads": len(active)},
            )
            raise RateLimitExceeded(
                f"Too many concurrent uploads: limit {self.max_concurrent_uploads} reached"
            )

        user_active = sum(1 for s in active if s.user_id == user_id)
        if user_active >= self.max_uploads_per_user:
            logger.warning(
                "Per-user upload limit reached",
                extra={"user_id": user_id, "active_uploads": user_active},
            )
            raise RateLimitExceeded(
                f"Too many concurrent uploads for user: limit {self.max_uploads_per_user} reached"
            )

        now = datetime.utcnow()
        session = UploadSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            filename=filename,
            size=size,
            processor_name=processor_name,
            strategy=strategy,
            status=SessionStatus.PENDING,
            progress=0.0,
            started_at=time.time(),
            created_at=now,
            updated_at=now,
        )
        self._sessions[session.id] = session
        logger.info(
            "Upload session created",
            extra={
                "session_id": session.id,
                "user_id": user_id,
                "context": {"filename": filename, "size": size, "processor": processor_name, "strategy": strategy.value},
            },
        )
        return session.id

    def get_session(self, session_id: str) -> Optional[UploadSession]:
        return self._sessions.get(session_id)

    def update_session(
        self,
        session_id: str,
        status: Optional[SessionStatus] = None,
        progress: Optional[float] = None,
        cancel: Optional[SessionCallback] = None,
        cleanup: Optional[SessionCallback] = None,
        **metadata: Any,
    ) -> None:
        """Merge a partial update. Unknown ids are logged, never raised."""
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("Update for unknown upload session", extra={"session_id": session_id})
            return

        if status is not None:
            if _STATUS_RANK[status] >= _STATUS_RANK[session.status] and not (
                session.status in (SessionStatus.COMPLETED, SessionStatus.FAILED) and status != session.status
            ):
                session.status = status
            else:
                logger.warning(
                    "Ignoring backwards session status change",
                    extra={"session_id": session_id, "context": {"from": session.status.value, "to": status.value}},
                )
        if progress is not None:
            session.progress = min(100.0, max(0.0, float(progress)))
        if cancel is not None:
            session.cancel = cancel
        if cleanup is not None:
            session.cleanup = cleanup
        if metadata:
            session.metadata.update(metadata)
        session.updated_at = datetime.utcnow()

    async def complete_session(self, session_id: str, success: bool) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("Completion for unknown upload session", extra={"session_id": session_id})
            return

        session.status = SessionStatus.COMPLETED if success else SessionStatus.FAILED
        if success:
            session.progress = 100.0
        session.updated_at = datetime.utcnow()

        if session.cleanup is not None:
            try:
                await _invoke(session.cleanup)
            except Exception as e:
                logger.warning(
                    "Session cleanup callback failed",
                    extra={"session_id": session_id, "error": {"type": type(e).__name__, "message": str(e)}},
                )

        self._schedule_deletion(session_id)
        logger.info(
            "Upload session finished",
            extra={
                "session_id": session_id,
                "user_id": session.user_id,
                "context": {"success": success},
                "metrics": {"durationMs": round((time.time() - session.started_at) * 1000, 2)},
            },
        )

    async def cancel_session(self, session_id: str) -> bool:
        """Run cancel then cleanup callbacks and drop the session now."""
        session = self._sessions.get(session_id)
        if session is None:
            return False

        for label, callback in (("cancel", session.cancel), ("cleanup", session.cleanup)):
            if callback is None:
                continue
            try:
                await _invoke(callback)
            except Exception as e:
                logger.warning(
                    f"Session {label} callback failed",
                    extra={"session_id": session_id, "error": {"type": type(e).__name__, "message": str(e)}},
                )

        session.status = SessionStatus.FAILED
        self._sessions.pop(session_id, None)
        handle = self._deletions.pop(session_id, None)
        if handle is not None:
            handle.cancel()
        logger.info("Upload session cancelled", extra={"session_id": session_id, "user_id": session.user_id})
        return True

    def _schedule_deletion(self, session_id: str) -> None:
        previous = self._deletions.pop(session_id, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._deletions[session_id] = loop.call_later(self.retention_seconds, self._delete, session_id)

    def _delete(self, session_id: str) -> None:
        self._deletions.pop(session_id, None)
        self._sessions.pop(session_id, None)

    async def sweep_expired(self) -> int:
        """Cancel active sessions older than the timeout."""
        now = time.time()
        expired = [
            s.id for s in self._sessions.values()
            if s.is_active and now - s.started_at > self.session_timeout_seconds
        ]
        for session_id in expired:
            logger.warning("Upload session timed out", extra={"session_id": session_id})
            await self.cancel_session(session_id)
        return len(expired)

    def active_count(self, user_id: Optional[str] = None) -> int:
        return sum(
            1 for s in self._sessions.values()
            if s.is_active and (user_id is None or s.user_id == user_id)
        )

    def get_stats(self) -> dict:
        sessions = list(self._sessions.values())
        by_status = Counter(s.status.value for s in sessions)
        return {
            "total": len(sessions),
            "active": sum(1 for s in sessions if s.is_active),
            "pending": by_status.get(SessionStatus.PENDING.value, 0),
            "processing": by_status.get(SessionStatus.PROCESSING.value, 0),
            "completed": by_status.get(SessionStatus.COMPLETED.value, 0),
            "failed": by_status.get(SessionStatus.FAILED.value, 0),
            "by_user": dict(Counter(s.user_id for s in sessions if s.is_active)),
            "by_processor": dict(Counter(s.processor_name for s in sessions if s.is_active)),
        }

    def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        for handle in self._deletions.values():
            handle.cancel()
        self._deletions.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep_expired()
            except Exception:
                logger.error("Session sweep failed", exc_info=True)
