"""
Unit tests for the concurrent pager.
"""

import threading

import pytest

from usage_monitor.client.billing_api import BillingPage
from usage_monitor.core.errors import FetchError, SyncTimeoutError
from usage_monitor.core.pager import ConcurrentPager, SyncProgress


def _records(page_num, count, start=0):
    return [
        {"billingNo": f"p{page_num}_{1731781234000 + start + i}", "cashCost": 1}
        for i in range(count)
    ]


class FakeFetcher:
    """Serves canned pages; a page mapped to an exception raises it."""

    def __init__(self, pages, total, page_size=100):
        self.pages = pages
        self.total = total
        self.page_size = page_size
        self.calls = []
        self._lock = threading.Lock()

    def fetch_page(self, billing_month, page_num, page_size):
        with self._lock:
            self.calls.append(page_num)
        content = self.pages[page_num]
        if isinstance(content, Exception):
            raise content
        if callable(content):
            content = content()
        total_pages = -(-self.total // self.page_size)
        return BillingPage(
            records=content,
            total=self.total,
            page_num=page_num,
            page_size=page_size,
            total_pages=total_pages,
            has_more=page_num < total_pages
        )


def _pager(fetcher, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    kwargs.setdefault("sleep", lambda seconds: None)
    return ConcurrentPager(fetcher, **kwargs)


class TestConcurrentPager:
    """Test fetch_all merge, failure and timeout behavior."""

    def test_single_page_inline(self):
        fetcher = FakeFetcher({1: _records(1, 3)}, total=3)
        progress = []

        outcome = _pager(fetcher).fetch_all("2024-11", on_progress=progress.append)

        assert outcome.synced_items == 3
        assert outcome.total_pages == 1
        assert fetcher.calls == [1]
        assert progress == [SyncProgress(1, 1, 3, 0, 3)]

    def test_empty_month(self):
        fetcher = FakeFetcher({1: []}, total=0)

        outcome = _pager(fetcher).fetch_all("2024-11")

        assert outcome.bills == []
        assert outcome.total_items == 0
        assert outcome.failed_items == 0

    def test_pages_merged_in_order(self):
        pages = {n: _records(n, 100 if n < 4 else 50, start=n * 1000) for n in range(1, 5)}
        fetcher = FakeFetcher(pages, total=350)

        outcome = _pager(fetcher, workers=3).fetch_all("2024-11")

        assert outcome.synced_items == 350
        assert outcome.failed_items == 0
        prefixes = [bill.billing_no.split("_")[0] for bill in outcome.bills]
        assert prefixes == sorted(prefixes, key=lambda p: int(p[1:]))
        assert fetcher.calls.count(1) == 1

    def test_failed_page_degrades(self):
        pages = {
            1: _records(1, 100),
            2: FetchError("boom", page_num=2, status=400),
            3: _records(3, 50, start=5000),
        }
        fetcher = FakeFetcher(pages, total=250)
        progress = []

        outcome = _pager(fetcher).fetch_all("2024-11", on_progress=progress.append)

        assert outcome.synced_items == 150
        assert outcome.failed_items == 100
        assert outcome.failed_pages == [2]
        assert outcome.pages_synced == 2
        assert outcome.degraded is True
        assert len(progress) == 3
        assert progress[-1].synced_count + progress[-1].failed_count == 250

    def test_failed_last_page_counts_remaining_items_only(self):
        pages = {
            1: _records(1, 100),
            2: FetchError("boom", page_num=2, status=400),
        }
        fetcher = FakeFetcher(pages, total=130)

        outcome = _pager(fetcher).fetch_all("2024-11")

        assert outcome.failed_items == 30
        assert outcome.synced_items + outcome.failed_items == outcome.total_items

    def test_invalid_records_counted(self):
        records = _records(1, 2) + [{"billingNo": "no-timestamp"}]
        fetcher = FakeFetcher({1: records}, total=3)

        outcome = _pager(fetcher).fetch_all("2024-11")

        assert outcome.synced_items == 2
        assert outcome.failed_items == 1

    def test_first_page_failure_is_fatal(self):
        fetcher = FakeFetcher({1: FetchError("down", page_num=1, status=401)}, total=0)

        with pytest.raises(FetchError):
            _pager(fetcher).fetch_all("2024-11")

    def test_retryable_failure_is_retried(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise FetchError("busy", page_num=2, status=503)
            return _records(2, 10, start=9000)

        fetcher = FakeFetcher({1: _records(1, 100), 2: flaky}, total=110)
        sleeps = []

        outcome = _pager(fetcher, max_retries=2, retry_delay=1.0, sleep=sleeps.append).fetch_all("2024-11")

        assert outcome.synced_items == 110
        assert len(attempts) == 3
        assert sleeps == [1.0, 2.0]

    def test_non_retryable_failure_not_retried(self):
        pages = {1: _records(1, 100), 2: FetchError("bad request", page_num=2, status=400)}
        fetcher = FakeFetcher(pages, total=150)

        _pager(fetcher, max_retries=3).fetch_all("2024-11")

        assert fetcher.calls.count(2) == 1

    def test_timeout_discards_partial_results(self):
        release = threading.Event()

        def slow():
            release.wait(5)
            return _records(2, 10, start=9000)

        fetcher = FakeFetcher({1: _records(1, 100), 2: slow}, total=110)

        try:
            with pytest.raises(SyncTimeoutError) as exc_info:
                _pager(fetcher, timeout=0.2).fetch_all("2024-11")
        finally:
            release.set()

        assert exc_info.value.total_pages == 2
        assert "Timeout occurred while processing pages" in str(exc_info.value)

    def test_invalid_arguments(self):
        fetcher = FakeFetcher({}, total=0)
        with pytest.raises(ValueError):
            ConcurrentPager(fetcher, page_size=0)
        with pytest.raises(ValueError):
            ConcurrentPager(fetcher, workers=0)
        with pytest.raises(ValueError):
            ConcurrentPager(fetcher, timeout=0)


class TestSyncProgress:
    """Test progress percentage."""

    def test_percent(self):
        assert SyncProgress(1, 4, 40, 10, 200).percent == 25
        assert SyncProgress(1, 1, 0, 0, 0).percent == 100
