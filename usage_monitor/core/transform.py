"""
Record transformation and validation.

Turns one loosely-typed billing record from the API into an ExpenseBill.
Numeric fields may arrive as numbers or as numeric strings, and keys may
be snake_case or the API's camelCase.
"""

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from usage_monitor.core.errors import ValidationError
from usage_monitor.storage.models import ExpenseBill

logger = structlog.get_logger(__name__)

RawRecord = Dict[str, Any]

TIME_WINDOW_FORMAT = "%Y-%m-%d %H:%M:%S"
TIME_WINDOW_SEPARATOR = " - "
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_TIMESTAMP_SUFFIX = re.compile(r"(\d{13})$")

_STRING_FIELDS = (
    "billing_no",
    "charge_name",
    "charge_type",
    "model_name",
    "use_group_name",
    "group_name",
    "use_group_id",
    "group_id",
    "order_time",
    "charge_unit_symbol",
    "api_key",
    "model_code",
    "model_product_name",
    "payment_type",
    "currency",
    "billing_status",
    "token_type",
    "token_resource_name",
)

_DECIMAL_FIELDS = (
    "discount_rate",
    "cost_rate",
    "cash_cost",
    "trial_cash_cost",
    "charge_unit",
    "charge_count",
    "settlement_amount",
    "due_amount",
    "paid_amount",
)

# Must be >= 0 for a bill to be stored
NON_NEGATIVE_FIELDS = (
    "cash_cost",
    "discount_rate",
    "cost_rate",
    "charge_unit",
    "charge_count",
)


@dataclass(frozen=True)
class TimeWindow:
    """Parsed start/end of a bill's usage window."""
    start: datetime
    end: datetime


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _lookup(raw: RawRecord, name: str) -> Any:
    if name in raw:
        return raw[name]
    return raw.get(_camel_case(name))


def to_decimal(value: Any) -> Decimal:
    """Coerce a number or numeric string to Decimal.

    Missing, blank or unparseable values become zero.
    """
    if value is None or isinstance(value, bool):
        return Decimal("0")
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal("0")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return Decimal("0")
        # str() keeps the shortest repr instead of the binary expansion
        return Decimal(str(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return Decimal("0")
        try:
            result = Decimal(text)
        except InvalidOperation:
            return Decimal("0")
        if not result.is_finite():
            return Decimal("0")
        return result
    return Decimal("0")


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def parse_time_window(text: str) -> Optional[TimeWindow]:
    """Parse "YYYY-MM-DD HH:MM:SS - YYYY-MM-DD HH:MM:SS".

    Args:
        text: Raw time window string from the API

    Returns:
        TimeWindow, or None for an empty string

    Raises:
        ValueError: If the separator is missing/repeated or either half
            does not match the date-time pattern
    """
    if not text:
        return None

    parts = text.split(TIME_WINDOW_SEPARATOR)
    if len(parts) != 2:
        raise ValueError(f"invalid time window format: {text}")

    start = datetime.strptime(parts[0].strip(), TIME_WINDOW_FORMAT)
    end = datetime.strptime(parts[1].strip(), TIME_WINDOW_FORMAT)
    return TimeWindow(start=start, end=end)


def extract_transaction_time(billing_no: str) -> datetime:
    """Read the trailing 13-digit millisecond timestamp of a billing number.

    Example: "cust_1731781234567" -> 2024-11-16 18:20:34.567 UTC.

    Raises:
        ValueError: If billing_no is empty or has no 13-digit suffix
    """
    if not billing_no:
        raise ValueError("billing no is empty")

    match = _TIMESTAMP_SUFFIX.search(billing_no)
    if match is None:
        raise ValueError(f"no valid timestamp found in billing no: {billing_no}")

    millis = int(match.group(1))
    return EPOCH + timedelta(milliseconds=millis)


def epoch_millis(moment: datetime) -> int:
    """Milliseconds since the Unix epoch for an aware datetime."""
    return (moment - EPOCH) // timedelta(milliseconds=1)


def transform_expense_bill(raw: RawRecord, now: Optional[datetime] = None) -> ExpenseBill:
    """Build an ExpenseBill from one raw API record.

    Unknown or missing fields default to empty/zero. A malformed time
    window leaves the bounds unset; a billing number without a timestamp
    suffix leaves transaction_time unset so validation rejects it.

    Args:
        raw: One record from the API's billList
        now: Creation timestamp (defaults to the current time)

    Returns:
        Unvalidated ExpenseBill
    """
    values: Dict[str, Any] = {}
    for name in _STRING_FIELDS:
        value = _lookup(raw, name)
        if value is not None:
            values[name] = _to_str(value)
    for name in _DECIMAL_FIELDS:
        values[name] = to_decimal(_lookup(raw, name))

    bill = ExpenseBill(**values)

    time_window = _to_str(_lookup(raw, "time_window"))
    if time_window:
        bill.time_window = time_window
        try:
            window = parse_time_window(time_window)
        except ValueError:
            logger.debug("time_window_unparsed", billing_no=bill.billing_no, time_window=time_window)
        else:
            bill.time_window_start = window.start
            bill.time_window_end = window.end

    if bill.billing_no:
        try:
            bill.transaction_time = extract_transaction_time(bill.billing_no)
        except ValueError:
            bill.transaction_time = None

    bill.create_time = now or datetime.now()
    return bill


def validate_expense_bill(bill: ExpenseBill) -> None:
    """Check the invariants a bill must satisfy before it is stored.

    Raises:
        ValidationError: Naming the first offending field
    """
    if not bill.billing_no:
        raise ValidationError("billing_no", "billing no is required")

    if bill.transaction_time is None:
        raise ValidationError("transaction_time", "transaction time is required")

    for name in NON_NEGATIVE_FIELDS:
        if getattr(bill, name) < 0:
            raise ValidationError(name, f"{name.replace('_', ' ')} cannot be negative")


def transform_page(records: Iterable[RawRecord], now: Optional[datetime] = None) -> Tuple[List[ExpenseBill], int]:
    """Transform and validate one page of raw records.

    Invalid records are skipped and counted, never raised.

    Returns:
        (valid bills in page order, number of rejected records)
    """
    bills: List[ExpenseBill] = []
    failed = 0
    for raw in records:
        if not isinstance(raw, dict):
            failed += 1
            continue
        bill = transform_expense_bill(raw, now=now)
        try:
            validate_expense_bill(bill)
        except ValidationError as e:
            logger.info("bill_rejected", billing_no=bill.billing_no, field=e.field, reason=e.message)
            failed += 1
            continue
        bills.append(bill)
    return bills, failed
