"""Sync run lifecycle bookkeeping.

WHAT:
    Records every sync run (products/inventory/orders/customers, push/pull)
    through running -> completed | failed, and computes aggregate metrics.

WHY:
    - Operators need to see what ran, what failed, and why
    - Incremental order import reads its watermark from the last completed run
    - app/uninstalled must be able to fail every in-flight run at once

WATERMARK:
    get_last_sync_time() returns the *start* time of the newest completed run.
    Records updated in Shopify while that run was paginating are picked up
    again by the next run instead of being skipped.

REFERENCES:
    - storesync/models.py (SyncRun)
    - storesync/services/shopify_sync_service.py (brackets every run)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from storesync.models import SyncRunStatusEnum
from storesync.services.record_store import RecordStore
from storesync.telemetry.sentry import capture_message

logger = logging.getLogger(__name__)

ALL_STATUSES_LIMIT = 100
HISTORY_LIMIT = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatusManager:
    """
    Owns SyncRun records.

    Usage:
        sync_id = manager.start_sync("products", "pull")
        manager.update_progress(sync_id, successful=10, failed=1, total=20)
        manager.complete_sync(sync_id, successful=19, failed=1, total=20, errors=[...])
    """

    def __init__(self, store: RecordStore):
        self.store = store

    def start_sync(self, entity_type: str, direction: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        run = self.store.create(
            "sync_run",
            {
                "entity_type": entity_type,
                "direction": direction,
                "status": SyncRunStatusEnum.running.value,
                "successful": 0,
                "failed": 0,
                "total": 0,
                "errors": [],
                "meta": metadata or {},
                "started_at": _utcnow(),
            },
        )
        logger.info(f"[SYNC_STATUS] Started sync {run['id']} for {entity_type} ({direction})")
        return run["id"]

    def update_progress(
        self,
        sync_id: str,
        successful: int,
        failed: int,
        total: int,
        errors: Optional[List[str]] = None,
    ) -> None:
        data: Dict[str, Any] = {"successful": successful, "failed": failed, "total": total}
        if errors is not None:
            data["errors"] = errors
        _, updated = self.store.update_running_sync_run(sync_id, data)
        if updated:
            logger.debug(f"[SYNC_STATUS] Progress {sync_id}: {successful + failed}/{total}")

    def complete_sync(
        self,
        sync_id: str,
        successful: int,
        failed: int,
        total: int,
        errors: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        run, updated = self.store.update_running_sync_run(
            sync_id,
            {
                "status": SyncRunStatusEnum.completed.value,
                "completed_at": _utcnow(),
                "successful": successful,
                "failed": failed,
                "total": total,
                "errors": errors or [],
            },
        )
        if not updated:
            # failed is terminal: an uninstall or restart already closed this run
            logger.warning(
                f"[SYNC_STATUS] Sync {sync_id} finished after it was marked {run['status']}, "
                f"keeping {run['status']} ({successful}/{total} successful)"
            )
            return run

        logger.info(
            f"[SYNC_STATUS] Completed sync {sync_id} ({run['entity_type']}/{run['direction']}): "
            f"{successful}/{total} successful, {failed} failed"
        )
        return run

    def fail_sync(self, sync_id: str, error: BaseException) -> Dict[str, Any]:
        run, updated = self.store.update_running_sync_run(
            sync_id,
            {
                "status": SyncRunStatusEnum.failed.value,
                "completed_at": _utcnow(),
                "error_message": str(error),
                "errors": [str(error)],
            },
        )
        if not updated:
            logger.warning(f"[SYNC_STATUS] Sync {sync_id} already {run['status']}, not recording: {error}")
            return run

        logger.error(f"[SYNC_STATUS] Failed sync {sync_id} ({run['entity_type']}/{run['direction']}): {error}")
        capture_message(
            f"Sync run failed: {run['entity_type']}/{run['direction']}",
            level="error",
            extra={"sync_id": sync_id, "error": str(error)},
        )
        return run

    def mark_running_as_failed(self, reason: str) -> int:
        """Fail every in-flight run (used when the app is uninstalled)."""
        count = self.store.fail_running_sync_runs(reason, _utcnow())
        if count:
            logger.warning(f"[SYNC_STATUS] Marked {count} running sync(s) as failed: {reason}")
        return count

    # =========================================================================
    # READS
    # =========================================================================

    def get_sync_status(self, sync_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get("sync_run", sync_id)

    def get_all_sync_statuses(self) -> List[Dict[str, Any]]:
        return self.store.list_sync_runs(limit=ALL_STATUSES_LIMIT)

    def get_sync_history(self, entity_type: Optional[str] = None, limit: int = HISTORY_LIMIT) -> List[Dict[str, Any]]:
        return self.store.list_sync_runs(entity_type=entity_type, limit=limit)

    def get_active_syncs(self) -> List[Dict[str, Any]]:
        return self.store.list_sync_runs(status=SyncRunStatusEnum.running.value)

    def get_last_sync_time(self, entity_type: str, direction: Optional[str] = None) -> Optional[datetime]:
        runs = self.store.list_sync_runs(
            entity_type=entity_type,
            direction=direction,
            status=SyncRunStatusEnum.completed.value,
            limit=1,
        )
        return runs[0]["started_at"] if runs else None

    def cleanup_old_syncs(self, days_to_keep: int = 30) -> int:
        cutoff = _utcnow() - timedelta(days=days_to_keep)
        deleted = self.store.delete_sync_runs_before(cutoff)
        logger.info(f"[SYNC_STATUS] Cleaned up {deleted} sync record(s) older than {days_to_keep} days")
        return deleted

    def get_sync_metrics(self, entity_type: Optional[str] = None, days: int = 7) -> Dict[str, Any]:
        """Aggregate finished runs started in the last ``days`` days.

        Returns:
            total_syncs, successful_syncs, failed_syncs, success_rate (0-100),
            average_duration (seconds) and records_processed
        """
        since = _utcnow() - timedelta(days=days)
        runs = [
            run
            for run in self.store.list_sync_runs(entity_type=entity_type, since=since)
            if run["status"] != SyncRunStatusEnum.running.value
        ]

        completed = [run for run in runs if run["status"] == SyncRunStatusEnum.completed.value]
        durations = [
            (run["completed_at"] - run["started_at"]).total_seconds()
            for run in runs
            if run["completed_at"] and run["started_at"]
        ]

        total = len(runs)
        return {
            "entity_type": entity_type,
            "days": days,
            "total_syncs": total,
            "successful_syncs": len(completed),
            "failed_syncs": total - len(completed),
            "success_rate": round(len(completed) / total * 100, 2) if total else 0.0,
            "average_duration": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "records_processed": sum(run["total"] or 0 for run in completed),
        }
