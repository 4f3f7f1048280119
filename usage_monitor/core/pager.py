"""
Concurrent pager.

Fetches every page of a billing month with a bounded worker pool,
transforms each page's records, and merges the results in page order.
A failed page degrades the outcome; only a page-1 failure or the
whole-fetch timeout is fatal.
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

import structlog

from usage_monitor.core.errors import FetchError, SyncTimeoutError
from usage_monitor.core.transform import transform_page
from usage_monitor.storage.models import ExpenseBill

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 100
DEFAULT_WORKERS = 5
DEFAULT_FETCH_TIMEOUT_SECONDS = 60.0


class PageFetcher(Protocol):
    def fetch_page(self, billing_month: str, page_num: int, page_size: int):
        ...


@dataclass(frozen=True)
class SyncProgress:
    """Running tallies reported once per completed page."""
    current_page: int
    total_pages: int
    synced_count: int
    failed_count: int
    total_count: int

    @property
    def percent(self) -> int:
        if self.total_count <= 0:
            return 100 if self.current_page >= self.total_pages else 0
        done = self.synced_count + self.failed_count
        return min(100, int(done * 100 / self.total_count))


ProgressCallback = Callable[[SyncProgress], None]


@dataclass
class PageResult:
    """Transformed content of one page, or the error that lost it."""
    page_num: int
    bills: List[ExpenseBill] = field(default_factory=list)
    failed_count: int = 0
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PagerOutcome:
    """Merged result of fetching every page of one billing month."""
    bills: List[ExpenseBill]
    total_items: int
    total_pages: int
    pages_synced: int
    failed_items: int
    failed_pages: List[int] = field(default_factory=list)

    @property
    def synced_items(self) -> int:
        return len(self.bills)

    @property
    def degraded(self) -> bool:
        return bool(self.failed_pages)


class ConcurrentPager:
    """Fetches pages 2..N on a thread pool after a synchronous page 1."""

    def __init__(
        self,
        fetcher: PageFetcher,
        page_size: int = DEFAULT_PAGE_SIZE,
        workers: int = DEFAULT_WORKERS,
        timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic
    ):
        if page_size <= 0:
            raise ValueError("page_size must be > 0")
        if workers <= 0:
            raise ValueError("workers must be > 0")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")

        self.fetcher = fetcher
        self.page_size = page_size
        self.workers = workers
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._monotonic = monotonic

    def fetch_all(self, billing_month: str, on_progress: Optional[ProgressCallback] = None) -> PagerOutcome:
        """Fetch, transform and merge every page of a billing month.

        Args:
            billing_month: Month in YYYY-MM form
            on_progress: Called once per completed page with running tallies

        Returns:
            PagerOutcome with bills in ascending page order

        Raises:
            FetchError: If page 1 cannot be fetched
            SyncTimeoutError: If the whole fetch exceeds the timeout
        """
        started = self._monotonic()

        first_page = self._fetch_with_retry(billing_month, 1)
        total_items = first_page.total
        total_pages = max(first_page.total_pages, 1)
        first = self._to_result(1, first_page.records)

        synced = len(first.bills)
        failed = first.failed_count
        self._report(on_progress, 1, total_pages, synced, failed, total_items)

        if total_pages == 1:
            return PagerOutcome(
                bills=first.bills,
                total_items=total_items,
                total_pages=1,
                pages_synced=1,
                failed_items=failed
            )

        logger.info(
            "pages_dispatched",
            billing_month=billing_month,
            total_pages=total_pages,
            total_items=total_items,
            workers=self.workers
        )

        results: Dict[int, PageResult] = {1: first}
        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="pager")
        try:
            futures = {
                executor.submit(self._fetch_page_result, billing_month, page_num): page_num
                for page_num in range(2, total_pages + 1)
            }
            remaining = max(self.timeout - (self._monotonic() - started), 0)
            try:
                for future in as_completed(futures, timeout=remaining):
                    result = future.result()
                    results[result.page_num] = result
                    if result.ok:
                        synced += len(result.bills)
                        failed += result.failed_count
                    else:
                        failed += self._lost_items(result.page_num, total_items, total_pages)
                    self._report(on_progress, result.page_num, total_pages, synced, failed, total_items)
            except FuturesTimeoutError:
                raise SyncTimeoutError(self.timeout, len(results), total_pages) from None
        except SyncTimeoutError:
            logger.error(
                "fetch_timed_out",
                billing_month=billing_month,
                timeout_seconds=self.timeout,
                pages_completed=len(results),
                total_pages=total_pages
            )
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        except Exception:
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        else:
            executor.shutdown(wait=True)

        return self._merge(results, total_items, total_pages)

    def _merge(self, results: Dict[int, PageResult], total_items: int, total_pages: int) -> PagerOutcome:
        bills: List[ExpenseBill] = []
        failed_items = 0
        failed_pages: List[int] = []
        for page_num in sorted(results):
            result = results[page_num]
            if result.ok:
                bills.extend(result.bills)
                failed_items += result.failed_count
            else:
                failed_pages.append(page_num)
                failed_items += self._lost_items(page_num, total_items, total_pages)

        if failed_pages:
            logger.warning("pages_failed", failed_pages=failed_pages, estimated_failed_items=failed_items)

        return PagerOutcome(
            bills=bills,
            total_items=total_items,
            total_pages=total_pages,
            pages_synced=total_pages - len(failed_pages),
            failed_items=failed_items,
            failed_pages=failed_pages
        )

    def _lost_items(self, page_num: int, total_items: int, total_pages: int) -> int:
        """Estimate how many records a failed page held."""
        if total_items <= 0:
            return self.page_size
        before = (page_num - 1) * self.page_size
        return max(0, min(self.page_size, total_items - before))

    def _fetch_page_result(self, billing_month: str, page_num: int) -> PageResult:
        try:
            page = self._fetch_with_retry(billing_month, page_num)
        except FetchError as e:
            logger.warning("page_failed", billing_month=billing_month, page_num=page_num, error=e.message)
            return PageResult(page_num=page_num, error=e)
        return self._to_result(page_num, page.records)

    def _fetch_with_retry(self, billing_month: str, page_num: int):
        attempt = 0
        while True:
            try:
                return self.fetcher.fetch_page(billing_month, page_num, self.page_size)
            except FetchError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * (2 ** attempt)
                attempt += 1
                logger.info("page_retry", page_num=page_num, attempt=attempt, delay_seconds=delay, error=e.message)
                self._sleep(delay)

    @staticmethod
    def _to_result(page_num: int, records) -> PageResult:
        bills, failed = transform_page(records)
        return PageResult(page_num=page_num, bills=bills, failed_count=failed)

    @staticmethod
    def _report(
        on_progress: Optional[ProgressCallback],
        current_page: int,
        total_pages: int,
        synced: int,
        failed: int,
        total: int
    ) -> None:
        if on_progress is None:
            return
        on_progress(SyncProgress(
            current_page=current_page,
            total_pages=total_pages,
            synced_count=synced,
            failed_count=failed,
            total_count=total
        ))
