"""
Data models for storage layer.

Defines database entities and data structures.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional


MIN_SYNC_FREQUENCY_SECONDS = 60
SYNC_TYPES = ("full", "incremental")

_BILLING_MONTH = re.compile(r"^\d{4}-(\d{2})$")


def is_valid_billing_month(text: str) -> bool:
    """True for a YYYY-MM string with a month between 01 and 12."""
    match = _BILLING_MONTH.match(text or "")
    return match is not None and 1 <= int(match.group(1)) <= 12


class SyncState(Enum):
    """Lifecycle states of a sync history row."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ExpenseBill:
    """One metered usage event from the billing API.

    `billing_no` is the natural key. `transaction_time` and the two
    window bounds are derived by the transformer and never copied
    from the payload.
    """
    billing_no: str = ""
    charge_name: str = ""
    charge_type: str = ""
    model_name: str = ""
    use_group_name: str = ""
    group_name: str = ""
    use_group_id: str = ""
    group_id: str = ""
    order_time: str = ""
    charge_unit_symbol: str = ""
    discount_rate: Decimal = Decimal("0")
    cost_rate: Decimal = Decimal("0")
    cash_cost: Decimal = Decimal("0")
    trial_cash_cost: Decimal = Decimal("0")
    charge_unit: Decimal = Decimal("0")
    charge_count: Decimal = Decimal("0")
    time_window: str = ""
    time_window_start: Optional[datetime] = None
    time_window_end: Optional[datetime] = None
    transaction_time: Optional[datetime] = None
    create_time: Optional[datetime] = None

    # Model, payment and token metadata
    api_key: str = ""
    model_code: str = ""
    model_product_name: str = ""
    payment_type: str = ""
    currency: str = "CNY"
    billing_status: str = ""
    settlement_amount: Decimal = Decimal("0")
    due_amount: Decimal = Decimal("0")
    paid_amount: Decimal = Decimal("0")
    token_type: str = ""
    token_resource_name: str = ""

    id: Optional[int] = None


@dataclass
class SyncHistory:
    """Audit and state record for one sync attempt."""
    sync_type: str
    start_time: datetime
    status: SyncState
    billing_month: str = ""
    end_time: Optional[datetime] = None
    records_synced: int = 0
    total_records: int = 0
    failed_count: int = 0
    total_pages: int = 0
    page_synced: int = 0
    error_message: Optional[str] = None
    id: Optional[int] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Wall-clock duration, or None while the sync is still open."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()


@dataclass(frozen=True)
class HistoryPage:
    """One page of sync history, newest first."""
    items: List[SyncHistory]
    page_num: int
    page_size: int
    total: int

    @property
    def has_next(self) -> bool:
        return self.page_num * self.page_size < self.total


@dataclass
class AutoSyncConfig:
    """Process-wide auto-sync settings, stored as a single row."""
    enabled: bool = False
    frequency_seconds: int = 3600
    sync_type: str = "full"
    billing_month: Optional[str] = None
    last_sync_time: Optional[datetime] = None
    next_sync_time: Optional[datetime] = None
    max_retries: int = 3
    retry_delay: int = 60
    updated_at: Optional[datetime] = field(default=None, compare=False)

    def __post_init__(self):
        """Validate scheduling values."""
        if self.frequency_seconds < MIN_SYNC_FREQUENCY_SECONDS:
            raise ValueError(
                f"frequency_seconds must be >= {MIN_SYNC_FREQUENCY_SECONDS}"
            )
        if self.sync_type not in SYNC_TYPES:
            raise ValueError(f"sync_type must be one of: {list(SYNC_TYPES)}")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.retry_delay < 0:
            raise ValueError("retry_delay cannot be negative")
        if self.billing_month and not is_valid_billing_month(self.billing_month):
            raise ValueError("billing_month must be in YYYY-MM format")
