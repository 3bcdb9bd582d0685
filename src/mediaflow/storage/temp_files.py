"""Lifecycle management for on-disk temporary files."""

import asyncio
import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from mediaflow.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class TempFileInfo:
    """Tracked metadata for one temporary file."""

    path: Path
    created_at: float
    size: int
    purpose: str
    session_id: Optional[str] = None
    cleaned: bool = False


class TempFileManager:
    """Sole owner of temporary files under a managed root directory.

    Every file is registered before bytes are written so that success,
    failure, periodic sweeps and restart scans all converge on cleanup.
    The registry is process-local.
    """

    def __init__(
        self,
        temp_dir: Path | str,
        max_age_seconds: float = 2 * 60 * 60,
        cleanup_interval_seconds: float = 10 * 60,
        max_files: int = 1000,
        max_total_size: int = 10 * 1024 * 1024 * 1024,
    ):
        self.temp_dir = Path(temp_dir)
        self.max_age_seconds = max_age_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.max_files = max_files
        self.max_total_size = max_total_size
        self._files: Dict[str, TempFileInfo] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "TempFileManager":
        return cls(
            temp_dir=settings.TEMP_DIR,
            max_age_seconds=settings.TEMP_MAX_AGE_SECONDS,
            cleanup_interval_seconds=settings.TEMP_CLEANUP_INTERVAL_SECONDS,
            max_files=settings.TEMP_MAX_FILES,
            max_total_size=settings.temp_max_total_size_bytes,
        )

    async def initialize(self, start_sweep: bool = True) -> None:
        """Create the managed directory, adopt leftovers and start the sweep."""
        await asyncio.to_thread(self.temp_dir.mkdir, parents=True, exist_ok=True)
        await self.scan_existing_files()
        if start_sweep and self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Temp file manager initialized",
            extra={"temp_dir": str(self.temp_dir), "tracked_files": len(self._files)},
        )

    async def create_temp_file(
        self,
        prefix: str = "upload",
        extension: str = "",
        purpose: str = "processing",
        session_id: Optional[str] = None,
    ) -> Path:
        """Reserve a collision-resistant path and register it.

        Limits are enforced before the new entry is added.
        """
        await self.check_limits()

        if extension and not extension.startswith("."):
            extension = f".{extension}"
        filename = f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}{extension}"
        path = self.temp_dir / filename

        self._files[str(path)] = TempFileInfo(
            path=path,
            created_at=time.time(),
            size=0,
            purpose=purpose,
            session_id=session_id,
        )
        logger.debug("Temp file registered", extra={"path": str(path), "purpose": purpose})
        return path

    async def write_temp_file(
        self,
        path: Path | str,
        data: bytes,
        purpose: str = "processing",
        session_id: Optional[str] = None,
    ) -> None:
        path = Path(path)
        info = self._files.get(str(path))
        if info is None:
            info = TempFileInfo(
                path=path,
                created_at=time.time(),
                size=0,
                purpose=purpose,
                session_id=session_id,
            )
            self._files[str(path)] = info

        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        info.size = len(data)

    async def refresh_size(self, path: Path | str) -> int:
        """Re-read the on-disk size of a file written by an external tool."""
        info = self._files.get(str(path))
        if info is None:
            return 0
        try:
            stat = await asyncio.to_thread(os.stat, info.path)
        except FileNotFoundError:
            return info.size
        info.size = stat.st_size
        return info.size

    async def cleanup_file(self, path: Path | str) -> bool:
        """Delete and unregister a file.

        Returns True when the file is gone (including when it was never
        tracked or already cleaned) and False when the OS refused.
        """
        key = str(path)
        info = self._files.get(key)
        if info is None or info.cleaned:
            return True

        try:
            await asyncio.to_thread(info.path.unlink, missing_ok=True)
        except OSError as e:
            logger.error(
                "Failed to delete temp file",
                extra={"path": key, "error": {"type": type(e).__name__, "message": str(e)}},
            )
            return False

        info.cleaned = True
        self._files.pop(key, None)
        logger.debug("Temp file cleaned", extra={"path": key, "purpose": info.purpose})
        return True

    async def cleanup_session_files(self, session_id: str) -> int:
        paths = [key for key, info in self._files.items() if info.session_id == session_id]
        cleaned = 0
        for key in paths:
            if await self.cleanup_file(key):
                cleaned += 1
        if paths:
            logger.info(
                "Session temp files cleaned",
                extra={"session_id": session_id, "cleaned": cleaned, "tracked": len(paths)},
            )
        return cleaned

    def _active_files(self) -> list[TempFileInfo]:
        return [info for info in self._files.values() if not info.cleaned]

    async def check_limits(self) -> None:
        """Evict oldest 10% at the count ceiling, largest 10% at the size ceiling."""
        active = self._active_files()

        if len(active) >= self.max_files:
            evict = max(1, int(self.max_files * 0.1))
            oldest = sorted(active, key=lambda info: info.created_at)[:evict]
            logger.warning(
                "Temp file count limit reached, evicting oldest files",
                extra={"active_files": len(active), "max_files": self.max_files, "evicting": len(oldest)},
            )
            for info in oldest:
                await self.cleanup_file(info.path)
            active = self._active_files()

        total_size = sum(info.size for info in active)
        if total_size >= self.max_total_size:
            evict = max(1, int(len(active) * 0.1))
            largest = sorted(active, key=lambda info: info.size, reverse=True)[:evict]
            logger.warning(
                "Temp file size limit reached, evicting largest files",
                extra={"total_size": total_size, "max_total_size": self.max_total_size, "evicting": len(largest)},
            )
            for info in largest:
                await self.cleanup_file(info.path)

    async def perform_cleanup(self) -> Dict[str, int]:
        """Delete expired tracked files, then untracked files on disk."""
        now = time.time()
        expired = [
            info for info in self._active_files()
            if now - info.created_at > self.max_age_seconds
        ]
        expired_count = 0
        for info in expired:
            if await self.cleanup_file(info.path):
                expired_count += 1

        orphaned_count = await self._cleanup_orphans()

        if expired_count or orphaned_count:
            logger.info(
                "Temp file sweep finished",
                extra={"expired": expired_count, "orphaned": orphaned_count},
            )
        return {"expired": expired_count, "orphaned": orphaned_count}

    async def _cleanup_orphans(self) -> int:
        try:
            on_disk = await asyncio.to_thread(self._list_directory)
        except FileNotFoundError:
            return 0

        # Files register before any bytes land, so the map is read after listing.
        tracked = {info.path.name for info in self._files.values()}
        removed = 0
        for entry in on_disk:
            if entry.name in tracked:
                continue
            try:
                await asyncio.to_thread(entry.unlink, missing_ok=True)
                removed += 1
            except OSError as e:
                logger.warning(
                    "Failed to delete orphaned temp file",
                    extra={"path": str(entry), "error": {"message": str(e)}},
                )
        return removed

    def _list_directory(self) -> list[Path]:
        return [entry for entry in self.temp_dir.iterdir() if entry.is_file()]

    async def scan_existing_files(self) -> int:
        """Adopt files left by a previous process as purpose "existing"."""
        try:
            entries = await asyncio.to_thread(self._list_directory)
        except FileNotFoundError:
            return 0

        adopted = 0
        for entry in entries:
            if str(entry) in self._files:
                continue
            try:
                stat = await asyncio.to_thread(os.stat, entry)
            except FileNotFoundError:
                continue
            self._files[str(entry)] = TempFileInfo(
                path=entry,
                created_at=stat.st_mtime,
                size=stat.st_size,
                purpose="existing",
            )
            adopted += 1
        return adopted

    def is_tracked(self, path: Path | str) -> bool:
        return str(path) in self._files

    def get_file_info(self, path: Path | str) -> Optional[TempFileInfo]:
        return self._files.get(str(path))

    def get_stats(self) -> dict:
        active = self._active_files()
        created = [info.created_at for info in active]
        return {
            "total_files": len(self._files),
            "active_files": len(active),
            "total_size": sum(info.size for info in active),
            "oldest_file": min(created) if created else None,
            "newest_file": max(created) if created else None,
        }

    @asynccontextmanager
    async def temp_file(
        self,
        prefix: str = "upload",
        extension: str = "",
        purpose: str = "processing",
        session_id: Optional[str] = None,
        data: Optional[bytes] = None,
    ) -> AsyncIterator[Path]:
        """Yield a managed path that is cleaned up on exit, whatever happens."""
        path = await self.create_temp_file(prefix, extension, purpose, session_id)
        try:
            if data is not None:
                await self.write_temp_file(path, data, purpose, session_id)
            yield path
        finally:
            await self.cleanup_file(path)

    async def cleanup_all(self) -> int:
        cleaned = 0
        for key in list(self._files):
            if await self.cleanup_file(key):
                cleaned += 1
        return cleaned

    async def destroy(self) -> None:
        """Stop the sweep and force-clean every tracked file."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        cleaned = await self.cleanup_all()
        logger.info("Temp file manager destroyed", extra={"cleaned": cleaned})

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                await self.perform_cleanup()
            except Exception:
                logger.error("Temp file sweep failed", exc_info=True)
