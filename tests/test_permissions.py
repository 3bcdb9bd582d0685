"""Tests for the upload permission and quota pre-flight."""

from unittest.mock import AsyncMock

import pytest

from mediaflow.core.config import MB
from mediaflow.providers.permissions import (
    InMemoryUsageProvider,
    PermissionChecker,
    SystemLimits,
    UserLevel,
    UserRestrictions,
    format_file_size,
    is_mime_type_allowed,
)


@pytest.fixture
def usage():
    return InMemoryUsageProvider()


@pytest.fixture
def checker(usage):
    return PermissionChecker(usage)


@pytest.mark.asyncio
async def test_allowed_upload_reports_usage(checker):
    verdict = await checker.can_user_upload("u1", UserLevel.USER, 5 * MB, mime_type="image/jpeg")

    assert verdict.allowed
    assert verdict.limits.daily_uploads_limit == 50


@pytest.mark.asyncio
async def test_file_size_checked_first(checker):
    verdict = await checker.can_user_upload("u1", UserLevel.GUEST, 20 * MB, file_count=5, mime_type="video/mp4")

    assert not verdict.allowed
    assert verdict.reason == "File size exceeds limit (20 MB > 10 MB)"


@pytest.mark.asyncio
async def test_file_count_limit(checker):
    verdict = await checker.can_user_upload("u1", UserLevel.USER, MB, file_count=10)

    assert not verdict.allowed
    assert "Too many files" in verdict.reason


@pytest.mark.asyncio
async def test_mime_family_wildcards(checker):
    assert not (await checker.can_user_upload("u1", UserLevel.GUEST, MB, mime_type="video/mp4")).allowed
    assert (await checker.can_user_upload("u1", UserLevel.CREATOR, MB, mime_type="application/pdf")).allowed
    assert (await checker.can_user_upload("u1", UserLevel.ADMIN, MB, mime_type="model/gltf")).allowed


@pytest.mark.asyncio
async def test_daily_limit_denies(checker, usage):
    usage.set_daily_upload_count("u1", 5)

    verdict = await checker.can_user_upload("u1", UserLevel.GUEST, MB, mime_type="image/png")

    assert not verdict.allowed
    assert verdict.reason == "Daily upload limit reached (5/5)"
    assert verdict.limits.daily_uploads_used == 5


@pytest.mark.asyncio
async def test_storage_quota(checker, usage):
    usage.set_storage_quota("u1", storage_quota=10 * MB, used_storage=9 * MB)

    verdict = await checker.can_user_upload("u1", UserLevel.USER, 2 * MB, mime_type="image/png")

    assert not verdict.allowed
    assert verdict.reason == "Storage quota exceeded"


@pytest.mark.asyncio
async def test_restrictions_only_tighten(checker, usage):
    usage.set_user_restrictions("u1", UserRestrictions(max_file_size=2 * MB, max_daily_uploads=1000))

    limits = await checker.get_effective_limits("u1", UserLevel.USER)

    assert limits.max_file_size == 2 * MB
    assert limits.max_daily_uploads == 50


@pytest.mark.asyncio
async def test_system_limits_cap_levels():
    checker = PermissionChecker(InMemoryUsageProvider(SystemLimits(global_max_file_size=100 * MB)))

    limits = await checker.get_effective_limits("admin", UserLevel.ADMIN)

    assert limits.max_file_size == 100 * MB


@pytest.mark.asyncio
async def test_provider_failure_denies(usage):
    usage.get_daily_upload_count = AsyncMock(side_effect=ConnectionError("db down"))
    checker = PermissionChecker(usage)

    verdict = await checker.can_user_upload("u1", UserLevel.USER, MB)

    assert not verdict.allowed
    assert verdict.reason == "An error occurred while checking upload permissions"


@pytest.mark.asyncio
async def test_record_upload_counts_towards_limits(checker, usage):
    for _ in range(5):
        usage.record_upload("u1", MB)

    assert await usage.get_daily_upload_count("u1") == 5
    assert (await usage.get_storage_quota("u1")).used_storage == 5 * MB
    assert not (await checker.can_user_upload("u1", UserLevel.GUEST, MB)).allowed


@pytest.mark.asyncio
async def test_feature_permissions(checker, usage):
    assert not await checker.has_feature_permission("u1", UserLevel.GUEST, "batch_upload")
    assert await checker.has_feature_permission("u1", UserLevel.VIP, "priority_upload")
    assert not await checker.has_feature_permission("u1", UserLevel.VIP, "teleport")

    usage.set_user_restrictions("u1", UserRestrictions(disabled_features=["priority_upload"]))
    assert not await checker.has_feature_permission("u1", UserLevel.VIP, "priority_upload")


def test_helpers():
    assert format_file_size(0) == "0 B"
    assert format_file_size(1536) == "1.5 KB"
    assert is_mime_type_allowed("image/png", ("image/*",))
    assert not is_mime_type_allowed("video/mp4", ("image/*", "application/pdf"))
