"""
Sync coordinator.

Owns the lifecycle of one sync attempt: single-flight admission through
the sync_history table, the concurrent fetch, the batch write and the
terminal history state. Also answers status and history queries.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

import structlog

from usage_monitor.core.errors import (
    ConcurrencyError,
    CredentialsError,
    FetchError,
    PersistenceError,
    SyncTimeoutError,
)
from usage_monitor.core.pager import ConcurrentPager, ProgressCallback, SyncProgress
from usage_monitor.storage.models import (
    SYNC_TYPES,
    HistoryPage,
    SyncState,
    is_valid_billing_month,
)
from usage_monitor.storage.repository import BillRepository, SyncHistoryRepository

logger = structlog.get_logger(__name__)

STARTUP_RECOVERY_MESSAGE = "Sync automatically cancelled on application startup"
MANUAL_RESET_MESSAGE = "Sync manually reset by user"
STATUS_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class SyncResult:
    """Outcome of one start_sync call."""
    success: bool
    billing_month: str = ""
    sync_id: Optional[int] = None
    total_items: int = 0
    synced_items: int = 0
    # failed_items includes skipped_items, the records rejected at write time
    failed_items: int = 0
    skipped_items: int = 0
    total_pages: int = 0
    pages_synced: int = 0
    duration_seconds: float = 0.0
    message: str = ""
    error_message: Optional[str] = None
    already_running: bool = False


@dataclass
class SyncStatus:
    """Snapshot answered by get_sync_status."""
    is_syncing: bool
    message: str
    progress: int = 0
    last_sync_time: Optional[datetime] = None
    last_sync_status: Optional[SyncState] = None


def validate_sync_request(billing_month: str, sync_type: str) -> None:
    """Reject malformed requests before any history row exists.

    Raises:
        ValueError: If billing_month is not YYYY-MM or sync_type is unknown
    """
    if not is_valid_billing_month(billing_month):
        raise ValueError(f"billing_month must be in YYYY-MM format with month 01-12, got {billing_month!r}")
    if sync_type not in SYNC_TYPES:
        raise ValueError(f"sync_type must be one of: {list(SYNC_TYPES)}")


def recent_months(count: int, today: Optional[datetime] = None) -> List[str]:
    """Billing months from the current one backwards, newest first."""
    today = today or datetime.now()
    year, month = today.year, today.month
    months = []
    for _ in range(count):
        months.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return months


class SyncCoordinator:
    """Runs syncs one at a time across every process sharing the database."""

    def __init__(
        self,
        bills: BillRepository,
        history: SyncHistoryRepository,
        pager: Optional[ConcurrentPager] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.bills = bills
        self.history = history
        self.pager = pager
        self.clock = clock
        self._progress_lock = threading.Lock()
        self._progress: Optional[SyncProgress] = None

    def set_pager(self, pager: Optional[ConcurrentPager]) -> None:
        """Swap the pager, e.g. after the API token changes."""
        self.pager = pager

    def start_sync(
        self,
        billing_month: str,
        sync_type: str = "full",
        progress_callback: Optional[ProgressCallback] = None
    ) -> SyncResult:
        """Run one sync of a billing month.

        Expected failures never raise: they are recorded on the history
        row and returned as an unsuccessful SyncResult.

        Args:
            billing_month: Month in YYYY-MM form
            sync_type: "full" or "incremental"
            progress_callback: Receives a SyncProgress per completed page

        Returns:
            SyncResult describing the attempt

        Raises:
            ValueError: If the request is malformed (no history row is written)
        """
        validate_sync_request(billing_month, sync_type)

        try:
            sync_id = self.history.start(sync_type, billing_month)
        except ConcurrencyError as e:
            logger.info("sync_rejected", billing_month=billing_month, reason=e.message)
            return SyncResult(
                success=False,
                billing_month=billing_month,
                message=e.message,
                error_message=e.message,
                already_running=True
            )

        log = logger.bind(sync_id=sync_id, billing_month=billing_month, sync_type=sync_type)
        log.info("sync_started")
        started = self.clock()

        def forward(progress: SyncProgress) -> None:
            with self._progress_lock:
                self._progress = progress
            if progress_callback is not None:
                try:
                    progress_callback(progress)
                except Exception:
                    log.exception("progress_callback_failed")

        try:
            if self.pager is None:
                raise CredentialsError("API token is not configured")
            outcome = self.pager.fetch_all(billing_month, on_progress=forward)
            written = self.bills.batch_upsert(outcome.bills)
        except (CredentialsError, FetchError, SyncTimeoutError, PersistenceError) as e:
            total_pages = e.total_pages if isinstance(e, SyncTimeoutError) else 0
            self._finish(
                log,
                sync_id,
                SyncState.FAILED,
                total_pages=total_pages,
                error_message=e.message
            )
            log.error("sync_failed", error_type=type(e).__name__, error=e.message)
            return SyncResult(
                success=False,
                billing_month=billing_month,
                sync_id=sync_id,
                total_pages=total_pages,
                duration_seconds=self._elapsed(started),
                message="Sync failed",
                error_message=e.message
            )
        except Exception as e:
            self._finish(log, sync_id, SyncState.FAILED, error_message=str(e) or type(e).__name__)
            log.exception("sync_crashed")
            raise
        finally:
            with self._progress_lock:
                self._progress = None

        failed_items = outcome.failed_items + written.skipped
        self._finish(
            log,
            sync_id,
            SyncState.COMPLETED,
            records_synced=written.written,
            total_records=outcome.total_items,
            failed_count=failed_items,
            total_pages=outcome.total_pages,
            page_synced=outcome.pages_synced
        )

        message = f"Synced {written.written} of {outcome.total_items} records"
        if outcome.degraded:
            message += f" ({len(outcome.failed_pages)} page(s) failed)"
        log.info(
            "sync_completed",
            synced=written.written,
            failed=failed_items,
            total=outcome.total_items,
            failed_pages=outcome.failed_pages
        )

        return SyncResult(
            success=True,
            billing_month=billing_month,
            sync_id=sync_id,
            total_items=outcome.total_items,
            synced_items=written.written,
            failed_items=failed_items,
            skipped_items=written.skipped,
            total_pages=outcome.total_pages,
            pages_synced=outcome.pages_synced,
            duration_seconds=self._elapsed(started),
            message=message
        )

    def sync_recent_months(
        self,
        months: int = 3,
        progress_callback: Optional[Callable[[str, SyncProgress], None]] = None
    ) -> List[SyncResult]:
        """Sync the current month and the `months - 1` before it, newest first.

        Stops early if another sync holds the lock.
        """
        if months <= 0:
            raise ValueError("months must be > 0")

        results = []
        for month in recent_months(months, self.clock()):
            callback = None
            if progress_callback is not None:
                callback = lambda progress, month=month: progress_callback(month, progress)
            result = self.start_sync(month, "full", callback)
            results.append(result)
            if result.already_running:
                break
        return results

    def get_sync_status(self) -> SyncStatus:
        running = self.history.count_running()
        if running > 0:
            with self._progress_lock:
                progress = self._progress.percent if self._progress else 0
            return SyncStatus(
                is_syncing=True,
                message=f"{running} sync operation(s) in progress",
                progress=progress
            )

        latest = self.history.latest()
        if latest is None:
            return SyncStatus(is_syncing=False, message="Idle")

        started = latest.start_time.strftime(STATUS_TIME_FORMAT)
        if latest.status == SyncState.COMPLETED:
            message = f"Last sync completed successfully at {started}"
            progress = 100
        else:
            message = f"Last sync failed at {started}"
            if latest.error_message:
                message += f": {latest.error_message}"
            progress = 0

        return SyncStatus(
            is_syncing=False,
            message=message,
            progress=progress,
            last_sync_time=latest.start_time,
            last_sync_status=latest.status
        )

    def recover_on_startup(self) -> int:
        """Fail every `running` row left behind by a previous process."""
        count = self.history.fail_all_running(STARTUP_RECOVERY_MESSAGE)
        if count:
            logger.warning("interrupted_syncs_recovered", count=count)
        return count

    def force_reset(self) -> int:
        """Fail every `running` row on user request."""
        count = self.history.fail_all_running(MANUAL_RESET_MESSAGE)
        logger.info("syncs_reset", count=count)
        return count

    def get_history(self, sync_type: Optional[str] = None, page_num: int = 1, page_size: int = 20) -> HistoryPage:
        if sync_type and sync_type not in SYNC_TYPES:
            raise ValueError(f"sync_type must be one of: {list(SYNC_TYPES)}")
        return self.history.list(sync_type=sync_type, page_num=page_num, page_size=page_size)

    def clean_old_history(self, days: int = 30) -> int:
        count = self.history.delete_older_than(days)
        logger.info("history_cleaned", older_than_days=days, deleted=count)
        return count

    def _finish(self, log, sync_id: int, status: SyncState, **counts) -> None:
        if not self.history.finish(sync_id, status, **counts):
            log.warning("sync_row_already_reclaimed", intended_status=status.value)

    def _elapsed(self, started: datetime) -> float:
        return max((self.clock() - started).total_seconds(), 0.0)
