"""
Exception types for the billing sync engine.

Page and record level errors are absorbed and counted by the pager.
Batch and sync level errors reach the coordinator, which turns them into
a failed sync history row.
"""

from typing import Any, Dict, Optional


class UsageMonitorError(Exception):
    """Base exception for all Usage Monitor errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


class FetchError(UsageMonitorError):
    """Raised when one billing page cannot be fetched or decoded.

    Covers transport failures, non-2xx responses, undecodable bodies and
    API envelopes reporting an error code.
    """

    def __init__(
        self,
        message: str,
        page_num: Optional[int] = None,
        status: Optional[int] = None,
        api_code: Optional[int] = None,
    ):
        details = {"page_num": page_num}
        if status is not None:
            details["status"] = status
        if api_code is not None:
            details["api_code"] = api_code
        super().__init__(message, details)
        self.page_num = page_num
        self.status = status
        self.api_code = api_code

    @property
    def retryable(self) -> bool:
        """Transport failures, throttling and server errors may succeed later."""
        if self.status is None:
            return self.api_code is None
        return self.status == 429 or self.status >= 500


class ValidationError(UsageMonitorError):
    """Raised when a transformed bill violates a domain invariant."""

    def __init__(self, field: str, message: str):
        super().__init__(message, {"field": field})
        self.field = field


class PersistenceError(UsageMonitorError):
    """Raised when a write transaction fails and is rolled back."""

    pass


class SyncTimeoutError(UsageMonitorError):
    """Raised when fetching all pages exceeds the wall-clock budget."""

    def __init__(self, timeout_seconds: float, pages_completed: int, total_pages: int):
        super().__init__(
            f"Timeout occurred while processing pages after {timeout_seconds}s",
            {
                "timeout_seconds": timeout_seconds,
                "pages_completed": pages_completed,
                "total_pages": total_pages,
            },
        )
        self.timeout_seconds = timeout_seconds
        self.pages_completed = pages_completed
        self.total_pages = total_pages


class ConcurrencyError(UsageMonitorError):
    """Raised when a sync is requested while another one is running."""

    def __init__(self, running_count: int = 1):
        super().__init__("sync already in progress", {"running": running_count})
        self.running_count = running_count


class CredentialsError(UsageMonitorError):
    """Raised when no API token is configured."""

    pass
