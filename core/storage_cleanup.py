"""Storage cleanup manager for stale temp files, expired trash and old quarantine entries."""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.quarantine import QUARANTINE_LOG, QuarantineStore
from models.errors import StorageError
from storage.base import StorageProvider, TEMP_RETENTION_HOURS, TRASH_RETENTION_HOURS


@dataclass
class CleanupPolicy:
    """Configuration policy for cleanup operations."""
    temp_retention_hours: int = TEMP_RETENTION_HOURS
    trash_retention_hours: int = TRASH_RETENTION_HOURS
    quarantine_retention_hours: int = 90 * 24
    enable_quarantine_cleanup: bool = True
    cleanup_interval_minutes: int = 60


class StorageCleanupManager:
    """
    Keeps upload storage from growing without bound.

    This class provides:
    - Provider cleanup of stale temp files and expired trash
    - Retention-based purge of quarantined files (the log is kept)
    - Runtime statistics and recommendations
    """

    def __init__(
        self,
        storage: StorageProvider,
        quarantine: Optional[QuarantineStore] = None,
        policy: Optional[CleanupPolicy] = None,
    ):
        self._storage = storage
        self._quarantine = quarantine
        self._policy = policy or CleanupPolicy()
        self._logger = logging.getLogger(__name__)

        self._cleanup_stats = {
            "total_cleanups_run": 0,
            "last_cleanup_time": None,
            "total_files_removed": 0,
            "total_bytes_freed": 0,
            "last_cleanup_duration": 0.0,
        }

        policy_issues = self._validate_cleanup_policy()
        if policy_issues:
            self._logger.warning(f"Cleanup policy validation issues: {policy_issues}")

    @property
    def policy(self) -> CleanupPolicy:
        return self._policy

    async def cleanup_storage(self) -> Dict[str, Any]:
        """Purge stale temp files and expired trash through the provider."""
        report = await self._storage.cleanup(
            older_than_hours=self._policy.temp_retention_hours,
            trash_retention_hours=self._policy.trash_retention_hours,
        )
        return report.to_dict()

    def cleanup_quarantine(self) -> Dict[str, Any]:
        """
        Remove quarantined files older than the retention window.

        Returns:
            Dictionary with cleanup results
        """
        if self._quarantine is None or not self._policy.enable_quarantine_cleanup:
            return {"files_removed": 0, "bytes_freed": 0, "disabled": True}

        cutoff = time.time() - self._policy.quarantine_retention_hours * 3600
        removed = 0
        freed = 0
        errors: List[str] = []
        for path in Path(self._quarantine.quarantine_dir).iterdir():
            if not path.is_file() or path.name == QUARANTINE_LOG:
                continue
            try:
                stat = path.stat()
                if stat.st_mtime >= cutoff:
                    continue
                path.unlink()
            except OSError as e:
                self._logger.error(f"Failed to remove quarantined file {path.name}: {e}")
                errors.append(f"{path.name}: {e}")
                continue
            removed += 1
            freed += stat.st_size

        if removed:
            self._logger.info(f"Removed {removed} expired quarantined files")
        return {"files_removed": removed, "bytes_freed": freed, "errors": errors}

    async def run_full_cleanup(self) -> Dict[str, Any]:
        """
        Run every cleanup operation.

        Returns:
            Dictionary with comprehensive cleanup results
        """
        start_time = time.time()
        self._logger.info("Starting full storage cleanup")

        results: Dict[str, Any] = {"cleanup_started_at": datetime.now(timezone.utc).isoformat()}
        results["storage"] = await self.cleanup_storage()
        results["quarantine"] = self.cleanup_quarantine()

        duration = time.time() - start_time
        files_removed = (
            results["storage"]["temp_files_removed"]
            + results["storage"]["trash_files_removed"]
            + results["quarantine"]["files_removed"]
        )
        bytes_freed = results["storage"]["bytes_freed"] + results["quarantine"]["bytes_freed"]
        results.update({
            "cleanup_completed_at": datetime.now(timezone.utc).isoformat(),
            "cleanup_duration_seconds": duration,
            "total_files_removed": files_removed,
            "total_bytes_freed": bytes_freed,
        })

        self._cleanup_stats["total_cleanups_run"] += 1
        self._cleanup_stats["last_cleanup_time"] = datetime.now(timezone.utc).isoformat()
        self._cleanup_stats["total_files_removed"] += files_removed
        self._cleanup_stats["total_bytes_freed"] += bytes_freed
        self._cleanup_stats["last_cleanup_duration"] = duration

        self._logger.info(f"Full cleanup completed in {duration:.2f}s: {files_removed} files, {bytes_freed} bytes freed")
        return results

    async def run_periodic(self, stop_event: asyncio.Event, interval_seconds: Optional[float] = None) -> None:
        """
        Run full cleanups every ``cleanup_interval_minutes`` until ``stop_event`` is set.

        A failed run is logged and the schedule continues.
        """
        interval = interval_seconds if interval_seconds is not None else self._policy.cleanup_interval_minutes * 60
        self._logger.info(f"Scheduled storage cleanup every {interval:.0f}s")
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                await self.run_full_cleanup()
            except (StorageError, OSError) as e:
                self._logger.error(f"Scheduled storage cleanup failed: {e}")

    async def get_cleanup_statistics(self) -> Dict[str, Any]:
        """
        Get storage statistics and cleanup recommendations.

        Returns:
            Dictionary with statistics and recommendations
        """
        stats = await self._storage.get_stats()
        quarantined = len(self._quarantine.read_log()) if self._quarantine else 0
        return {
            "policy": asdict(self._policy),
            "storage": stats.to_dict(),
            "quarantined_files_logged": quarantined,
            "runtime_stats": self._cleanup_stats.copy(),
            "cleanup_recommendations": self._generate_cleanup_recommendations(stats.directories, quarantined),
        }

    def _validate_cleanup_policy(self) -> List[str]:
        issues = []
        if self._policy.temp_retention_hours <= 0:
            issues.append("temp_retention_hours must be positive")
        if self._policy.trash_retention_hours <= 0:
            issues.append("trash_retention_hours must be positive")
        if self._policy.quarantine_retention_hours <= 0:
            issues.append("quarantine_retention_hours must be positive")
        if self._policy.cleanup_interval_minutes < 5:
            issues.append("cleanup_interval_minutes should be >= 5 to prevent excessive cleanup overhead")
        return issues

    def _generate_cleanup_recommendations(self, directories: Dict[str, Dict[str, int]], quarantined: int) -> List[str]:
        recommendations = []
        temp = directories.get("temp", {})
        if temp.get("files", 0) > 100:
            recommendations.append(f"{temp['files']} files in temp - consider running storage cleanup")

        total_size = sum(entry.get("size", 0) for entry in directories.values())
        if total_size > 10 * 1024 ** 3:  # 10GB
            recommendations.append(f"High storage usage: {total_size / (1024 ** 3):.1f}GB - review retention")

        if quarantined > 50:
            recommendations.append(f"{quarantined} quarantined uploads logged - review for attack patterns")

        if not self._policy.enable_quarantine_cleanup:
            recommendations.append("Quarantine cleanup is disabled - quarantined files are kept forever")
        return recommendations
