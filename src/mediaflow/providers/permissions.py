"""Upload permission and quota checks run before the pipeline."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Dict, Optional

from mediaflow.core.config import MB

logger = logging.getLogger(__name__)


class UserLevel(str, Enum):
    GUEST = "GUEST"
    USER = "USER"
    VIP = "VIP"
    CREATOR = "CREATOR"
    ADMIN = "ADMIN"


FEATURES = ("advanced_features", "priority_upload", "batch_upload", "stream_upload")


@dataclass(frozen=True)
class UserUploadLimits:
    """Effective upload limits for one user."""

    max_file_size: int
    max_files_per_upload: int
    max_daily_uploads: int
    allowed_mime_types: tuple[str, ...] = ("image/*", "video/*")
    enable_advanced_features: bool = False
    enable_priority_upload: bool = False
    enable_batch_upload: bool = True
    enable_stream_upload: bool = True

    def feature_enabled(self, feature: str) -> bool:
        return bool(getattr(self, f"enable_{feature}", False))


DEFAULT_USER_LEVEL_LIMITS: Dict[UserLevel, UserUploadLimits] = {
    UserLevel.GUEST: UserUploadLimits(
        max_file_size=10 * MB,
        max_files_per_upload=1,
        max_daily_uploads=5,
        allowed_mime_types=("image/*",),
        enable_batch_upload=False,
        enable_stream_upload=False,
    ),
    UserLevel.USER: UserUploadLimits(
        max_file_size=100 * MB,
        max_files_per_upload=9,
        max_daily_uploads=50,
    ),
    UserLevel.VIP: UserUploadLimits(
        max_file_size=500 * MB,
        max_files_per_upload=20,
        max_daily_uploads=200,
        allowed_mime_types=("image/*", "video/*", "application/pdf", "text/plain"),
        enable_advanced_features=True,
        enable_priority_upload=True,
    ),
    UserLevel.CREATOR: UserUploadLimits(
        max_file_size=1024 * MB,
        max_files_per_upload=50,
        max_daily_uploads=500,
        allowed_mime_types=("image/*", "video/*", "application/*", "text/*"),
        enable_advanced_features=True,
        enable_priority_upload=True,
    ),
    UserLevel.ADMIN: UserUploadLimits(
        max_file_size=2048 * MB,
        max_files_per_upload=100,
        max_daily_uploads=10_000,
        allowed_mime_types=("*",),
        enable_advanced_features=True,
        enable_priority_upload=True,
    ),
}


@dataclass
class UserRestrictions:
    """Per-user overrides; they can only tighten the level defaults."""

    max_file_size: Optional[int] = None
    max_files_per_upload: Optional[int] = None
    max_daily_uploads: Optional[int] = None
    disabled_features: list[str] = field(default_factory=list)


@dataclass
class SystemLimits:
    global_max_file_size: Optional[int] = None
    global_max_daily_uploads: Optional[int] = None


@dataclass
class StorageQuota:
    used_storage: int = 0
    storage_quota: int = -1  # -1 means unlimited


@dataclass(frozen=True)
class UsageLimits:
    daily_uploads_used: int
    daily_uploads_limit: int
    storage_used: int
    storage_limit: int


@dataclass(frozen=True)
class UploadVerdict:
    allowed: bool
    reason: Optional[str] = None
    limits: Optional[UsageLimits] = None


class UsageProvider(ABC):
    """Read side of per-user usage accounting."""

    @abstractmethod
    async def get_daily_upload_count(self, user_id: str) -> int:
        pass

    @abstractmethod
    async def get_storage_quota(self, user_id: str) -> Optional[StorageQuota]:
        pass

    @abstractmethod
    async def get_user_restrictions(self, user_id: str) -> Optional[UserRestrictions]:
        pass

    @abstractmethod
    async def get_system_limits(self) -> Optional[SystemLimits]:
        pass


class InMemoryUsageProvider(UsageProvider):
    """Process-local usage counters; daily counts reset with the calendar day."""

    def __init__(self, system_limits: Optional[SystemLimits] = None):
        self._daily: Dict[tuple[str, date], int] = {}
        self._quotas: Dict[str, StorageQuota] = {}
        self._restrictions: Dict[str, UserRestrictions] = {}
        self._system_limits = system_limits

    async def get_daily_upload_count(self, user_id: str) -> int:
        return self._daily.get((user_id, date.today()), 0)

    async def get_storage_quota(self, user_id: str) -> Optional[StorageQuota]:
        return self._quotas.get(user_id)

    async def get_user_restrictions(self, user_id: str) -> Optional[UserRestrictions]:
        return self._restrictions.get(user_id)

    async def get_system_limits(self) -> Optional[SystemLimits]:
        return self._system_limits

    def set_storage_quota(self, user_id: str, storage_quota: int, used_storage: int = 0) -> None:
        self._quotas[user_id] = StorageQuota(used_storage=used_storage, storage_quota=storage_quota)

    def set_user_restrictions(self, user_id: str, restrictions: UserRestrictions) -> None:
        self._restrictions[user_id] = restrictions

    def set_daily_upload_count(self, user_id: str, count: int) -> None:
        self._daily[(user_id, date.today())] = count

    def record_upload(self, user_id: str, size: int) -> None:
        key = (user_id, date.today())
        self._daily[key] = self._daily.get(key, 0) + 1
        quota = self._quotas.setdefault(user_id, StorageQuota())
        quota.used_storage += size


def format_file_size(size: int) -> str:
    if size == 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def is_mime_type_allowed(mime_type: str, allowed_types: tuple[str, ...]) -> bool:
    if "*" in allowed_types or mime_type in allowed_types:
        return True
    return f"{mime_type.split('/')[0]}/*" in allowed_types


class PermissionChecker:
    """Pre-flight gate answering whether a user may upload a file."""

    def __init__(
        self,
        usage: UsageProvider,
        level_limits: Optional[Dict[UserLevel, UserUploadLimits]] = None,
    ):
        self.usage = usage
        self.level_limits = level_limits or DEFAULT_USER_LEVEL_LIMITS

    async def get_effective_limits(self, user_id: str, user_level: UserLevel) -> UserUploadLimits:
        limits = self.level_limits[user_level]

        restrictions = await self.usage.get_user_restrictions(user_id)
        if restrictions:
            limits = self._apply_restrictions(limits, restrictions)

        system_limits = await self.usage.get_system_limits()
        if system_limits:
            limits = self._apply_system_limits(limits, system_limits)

        return limits

    @staticmethod
    def _apply_restrictions(limits: UserUploadLimits, restrictions: UserRestrictions) -> UserUploadLimits:
        changes = {}
        if restrictions.max_file_size and restrictions.max_file_size < limits.max_file_size:
            changes["max_file_size"] = restrictions.max_file_size
        if restrictions.max_files_per_upload and restrictions.max_files_per_upload < limits.max_files_per_upload:
            changes["max_files_per_upload"] = restrictions.max_files_per_upload
        if restrictions.max_daily_uploads and restrictions.max_daily_uploads < limits.max_daily_uploads:
            changes["max_daily_uploads"] = restrictions.max_daily_uploads
        for feature in restrictions.disabled_features:
            if feature in FEATURES:
                changes[f"enable_{feature}"] = False
        return replace(limits, **changes) if changes else limits

    @staticmethod
    def _apply_system_limits(limits: UserUploadLimits, system_limits: SystemLimits) -> UserUploadLimits:
        changes = {}
        if system_limits.global_max_file_size and limits.max_file_size > system_limits.global_max_file_size:
            changes["max_file_size"] = system_limits.global_max_file_size
        if system_limits.global_max_daily_uploads and limits.max_daily_uploads > system_limits.global_max_daily_uploads:
            changes["max_daily_uploads"] = system_limits.global_max_daily_uploads
        return replace(limits, **changes) if changes else limits

    async def can_user_upload(
        self,
        user_id: str,
        user_level: UserLevel,
        file_size: int,
        file_count: int = 1,
        mime_type: Optional[str] = None,
    ) -> UploadVerdict:
        try:
            limits = await self.get_effective_limits(user_id, user_level)

            if file_size > limits.max_file_size:
                return UploadVerdict(
                    allowed=False,
                    reason=(
                        f"File size exceeds limit ({format_file_size(file_size)} > "
                        f"{format_file_size(limits.max_file_size)})"
                    ),
                )

            if file_count > limits.max_files_per_upload:
                return UploadVerdict(
                    allowed=False,
                    reason=f"Too many files in one upload ({file_count} > {limits.max_files_per_upload})",
                )

            if mime_type and not is_mime_type_allowed(mime_type, limits.allowed_mime_types):
                return UploadVerdict(allowed=False, reason=f"File type not allowed: {mime_type}")

            daily_uploads = await self.usage.get_daily_upload_count(user_id)
            quota = await self.usage.get_storage_quota(user_id) or StorageQuota()
            usage = UsageLimits(
                daily_uploads_used=daily_uploads,
                daily_uploads_limit=limits.max_daily_uploads,
                storage_used=quota.used_storage,
                storage_limit=quota.storage_quota,
            )

            if daily_uploads + file_count > limits.max_daily_uploads:
                return UploadVerdict(
                    allowed=False,
                    reason=f"Daily upload limit reached ({daily_uploads}/{limits.max_daily_uploads})",
                    limits=usage,
                )

            if quota.storage_quota > 0 and quota.used_storage + file_size > quota.storage_quota:
                return UploadVerdict(allowed=False, reason="Storage quota exceeded", limits=usage)

            return UploadVerdict(allowed=True, limits=usage)

        except Exception as e:
            logger.error(
                "Upload permission check failed",
                extra={"user_id": user_id, "error": {"type": type(e).__name__, "message": str(e)}},
            )
            return UploadVerdict(allowed=False, reason="An error occurred while checking upload permissions")

    async def has_feature_permission(self, user_id: str, user_level: UserLevel, feature: str) -> bool:
        if feature not in FEATURES:
            return False
        try:
            limits = await self.get_effective_limits(user_id, user_level)
        except Exception as e:
            logger.error(
                "Feature permission check failed",
                extra={"user_id": user_id, "context": {"feature": feature}, "error": {"message": str(e)}},
            )
            return False
        return limits.feature_enabled(feature)
