"""
Unit tests for storage cleanup.

Tests cover:
- Policy validation warnings
- Retention-based quarantine purge that keeps the log
- Full cleanup aggregation and runtime statistics
- Recommendations
- Scheduled cleanup loop
"""

import asyncio
import os
import time
from unittest.mock import patch

import pytest

from core.quarantine import QUARANTINE_LOG, QuarantineStore
from core.storage_cleanup import CleanupPolicy, StorageCleanupManager
from models.errors import StorageError
from storage.local import LocalStorageProvider
from tests.utils.helpers import make_file


def age(path, hours: float) -> None:
    stamp = time.time() - hours * 3600
    os.utime(path, (stamp, stamp))


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path / "uploads"))


@pytest.fixture
def quarantine(tmp_path):
    return QuarantineStore(str(tmp_path / "uploads" / "quarantine"))


class TestCleanupPolicy:
    """Test policy validation."""

    def test_default_policy_is_valid(self, storage):
        manager = StorageCleanupManager(storage)
        assert manager._validate_cleanup_policy() == []

    def test_invalid_policy_is_reported(self, storage):
        policy = CleanupPolicy(temp_retention_hours=0, cleanup_interval_minutes=1)
        issues = StorageCleanupManager(storage, policy=policy)._validate_cleanup_policy()
        assert "temp_retention_hours must be positive" in issues
        assert any("cleanup_interval_minutes" in issue for issue in issues)


class TestStorageCleanupManager:
    """Test cleanup runs."""

    def test_quarantine_cleanup_keeps_recent_files_and_log(self, storage, quarantine):
        old = quarantine.quarantine(make_file("old.txt", b"old"), "too large")
        recent = quarantine.quarantine(make_file("new.txt", b"new"), "too large")
        age(old.quarantine_path, 100 * 24)
        age(quarantine.log_path, 100 * 24)

        result = StorageCleanupManager(storage, quarantine).cleanup_quarantine()

        assert result["files_removed"] == 1
        assert result["bytes_freed"] == 3
        assert not os.path.exists(old.quarantine_path)
        assert os.path.exists(recent.quarantine_path)
        assert (quarantine.quarantine_dir / QUARANTINE_LOG).exists()
        assert len(quarantine.read_log()) == 2

    def test_quarantine_cleanup_can_be_disabled(self, storage, quarantine):
        record = quarantine.quarantine(make_file("old.txt", b"old"), "too large")
        age(record.quarantine_path, 100 * 24)

        policy = CleanupPolicy(enable_quarantine_cleanup=False)
        result = StorageCleanupManager(storage, quarantine, policy).cleanup_quarantine()

        assert result["disabled"] is True
        assert os.path.exists(record.quarantine_path)

    @pytest.mark.asyncio
    async def test_full_cleanup_aggregates_results(self, storage, quarantine):
        stale = storage.root / "temp" / "upload_stale.part"
        stale.write_bytes(b"12345")
        age(stale, 48)
        record = quarantine.quarantine(make_file("old.txt", b"old"), "too large")
        age(record.quarantine_path, 100 * 24)

        manager = StorageCleanupManager(storage, quarantine)
        results = await manager.run_full_cleanup()

        assert results["storage"]["temp_files_removed"] == 1
        assert results["quarantine"]["files_removed"] == 1
        assert results["total_files_removed"] == 2
        assert results["total_bytes_freed"] == 8

        statistics = await manager.get_cleanup_statistics()
        assert statistics["runtime_stats"]["total_cleanups_run"] == 1
        assert statistics["runtime_stats"]["total_files_removed"] == 2
        assert statistics["quarantined_files_logged"] == 1

    @pytest.mark.asyncio
    async def test_statistics_recommend_enabling_quarantine_cleanup(self, storage):
        policy = CleanupPolicy(enable_quarantine_cleanup=False)
        statistics = await StorageCleanupManager(storage, policy=policy).get_cleanup_statistics()

        assert statistics["policy"]["enable_quarantine_cleanup"] is False
        assert any("disabled" in item for item in statistics["cleanup_recommendations"])
        assert "general" in statistics["storage"]["directories"]


class TestScheduledCleanup:
    """Test the periodic cleanup loop."""

    @pytest.mark.asyncio
    async def test_periodic_cleanup_runs_until_stopped(self, storage, quarantine):
        manager = StorageCleanupManager(storage, quarantine)
        stop = asyncio.Event()

        task = asyncio.create_task(manager.run_periodic(stop, interval_seconds=0.01))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        statistics = await manager.get_cleanup_statistics()
        assert statistics["runtime_stats"]["total_cleanups_run"] >= 1

    @pytest.mark.asyncio
    async def test_failed_run_does_not_stop_schedule(self, storage):
        manager = StorageCleanupManager(storage)
        stop = asyncio.Event()

        with patch.object(manager, "run_full_cleanup", side_effect=StorageError("disk unavailable")) as run:
            task = asyncio.create_task(manager.run_periodic(stop, interval_seconds=0.01))
            await asyncio.sleep(0.1)
            stop.set()
            await asyncio.wait_for(task, timeout=1)

        assert run.await_count >= 2

    @pytest.mark.asyncio
    async def test_stop_before_first_interval_skips_cleanup(self, storage):
        manager = StorageCleanupManager(storage)
        stop = asyncio.Event()
        stop.set()

        await manager.run_periodic(stop, interval_seconds=60)

        statistics = await manager.get_cleanup_statistics()
        assert statistics["runtime_stats"]["total_cleanups_run"] == 0
