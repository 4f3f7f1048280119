"""
Billing API client.

Fetches one page of expense bills per call. The client never transforms
records; it only unwraps the JSON envelope.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests
import structlog

from usage_monitor.core.errors import FetchError

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://bigmodel.cn/api/finance/expenseBill"
DEFAULT_TIMEOUT_SECONDS = 30
SUCCESS_CODE = 200


@dataclass
class BillingPage:
    """One decoded page of the expenseBillList response."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    page_num: int = 1
    page_size: int = 0
    total_pages: int = 0
    has_more: bool = False


class BillingAPIClient:
    """Authenticated client for the expense bill endpoint.

    A single requests.Session is shared across worker threads; each call
    is one independent GET.
    """

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None
    ):
        """Initialize the client.

        Args:
            token: Bearer token for the metering API (required)
            base_url: Endpoint prefix, without the trailing resource
            timeout: Per-request timeout in seconds
            session: Optional preconfigured session (tests inject a mock)

        Raises:
            ValueError: If token is missing/empty
        """
        if not token or not token.strip():
            raise ValueError("token is required and cannot be empty")

        self.token = token.strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def list_url(self) -> str:
        return f"{self.base_url}/expenseBillList"

    def fetch_page(self, billing_month: str, page_num: int, page_size: int) -> BillingPage:
        """Fetch one page of bills for a billing month.

        Args:
            billing_month: Month in YYYY-MM form
            page_num: 1-based page number
            page_size: Records per page

        Returns:
            BillingPage with the raw records of that page

        Raises:
            FetchError: On transport failure, non-2xx status, undecodable
                body, error envelope or missing bill list
        """
        params = {
            "billingMonth": billing_month,
            "pageNum": page_num,
            "pageSize": page_size,
        }
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

        try:
            response = self.session.get(
                self.list_url, params=params, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise FetchError(f"request for page {page_num} failed: {e}", page_num=page_num) from e

        if not 200 <= response.status_code < 300:
            raise FetchError(
                f"API request failed with status {response.status_code}: {response.text[:200]}",
                page_num=page_num,
                status=response.status_code
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(
                f"failed to parse JSON response for page {page_num}: {e}",
                page_num=page_num,
                status=response.status_code
            ) from e

        if not isinstance(payload, dict):
            raise FetchError("response envelope is not an object", page_num=page_num, status=response.status_code)

        code = payload.get("code")
        if code != SUCCESS_CODE:
            raise FetchError(
                f"API returned error code {code}: {payload.get('message', '')}",
                page_num=page_num,
                status=response.status_code,
                api_code=code if isinstance(code, int) else -1
            )

        data = payload.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("billList"), list):
            raise FetchError(
                "response is missing data.billList",
                page_num=page_num,
                status=response.status_code,
                api_code=code
            )

        page = _to_page(data, page_num, page_size)
        logger.debug(
            "page_fetched",
            billing_month=billing_month,
            page_num=page.page_num,
            records=len(page.records),
            total=page.total,
            total_pages=page.total_pages
        )
        return page

    def validate_token(self, billing_month: Optional[str] = None) -> bool:
        """Probe the API with a one-record request for the current month.

        Returns:
            True if the token is accepted

        Raises:
            FetchError: If the one-record request fails
        """
        month = billing_month or datetime.now().strftime("%Y-%m")
        self.fetch_page(month, page_num=1, page_size=1)
        logger.info("token_validated", billing_month=month)
        return True

    def close(self) -> None:
        self.session.close()


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_page(data: Dict[str, Any], page_num: int, page_size: int) -> BillingPage:
    records = data["billList"]
    total = max(_as_int(data.get("total"), len(records)), 0)
    size = _as_int(data.get("pageSize"), page_size) or page_size
    total_pages = _as_int(data.get("totalPages"), 0)
    if total_pages <= 0 and size > 0:
        total_pages = math.ceil(total / size)

    return BillingPage(
        records=records,
        total=total,
        page_num=_as_int(data.get("pageNum"), page_num),
        page_size=size,
        total_pages=total_pages,
        has_more=bool(data.get("hasMore", page_num < total_pages))
    )
