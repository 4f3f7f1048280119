"""
Application wiring.

Builds the repositories, API client, pager, coordinator and scheduler
from Settings and owns their startup/shutdown order.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog

from usage_monitor.client.billing_api import BillingAPIClient
from usage_monitor.config.loader import Settings
from usage_monitor.core.coordinator import SyncCoordinator
from usage_monitor.core.pager import ConcurrentPager
from usage_monitor.core.scheduler import AutoSyncScheduler
from usage_monitor.storage.repository import (
    AutoSyncConfigRepository,
    BillRepository,
    SyncHistoryRepository,
    initialize_schema,
)

logger = structlog.get_logger(__name__)


@dataclass
class Application:
    """Every long-lived component of one process."""
    settings: Settings
    bills: BillRepository
    history: SyncHistoryRepository
    auto_sync_config: AutoSyncConfigRepository
    coordinator: SyncCoordinator
    scheduler: AutoSyncScheduler
    client: Optional[BillingAPIClient] = None

    def startup(self) -> None:
        """Recover interrupted syncs, then arm the scheduler from the stored config."""
        self.coordinator.recover_on_startup()
        config = self.scheduler.reload()
        logger.info("application_started", auto_sync=config.enabled, db_path=self.settings.database.path)

    def shutdown(self) -> None:
        self.scheduler.stop()
        if self.client is not None:
            self.client.close()
        logger.info("application_stopped")


def build_pager(settings: Settings, client: BillingAPIClient) -> ConcurrentPager:
    return ConcurrentPager(
        client,
        page_size=settings.api.page_size,
        workers=settings.sync.workers,
        timeout=settings.sync.fetch_timeout_seconds,
        max_retries=settings.api.max_retries,
        retry_delay=settings.api.retry_delay_seconds
    )


def build_application(settings: Settings, token: Optional[str] = None) -> Application:
    """Create the schema if needed and wire all components.

    Without a token the coordinator has no pager and every sync fails
    with a credentials error.

    Args:
        settings: Loaded settings
        token: API token overriding settings.api.token
    """
    db_path = settings.database.path
    initialize_schema(db_path)

    bills = BillRepository(db_path)
    history = SyncHistoryRepository(
        db_path, stale_after=timedelta(minutes=settings.sync.stale_after_minutes)
    )
    auto_sync_config = AutoSyncConfigRepository(db_path)

    client = None
    pager = None
    token = token or settings.api.token
    if token and token.strip():
        client = BillingAPIClient(
            token, base_url=settings.api.base_url, timeout=settings.api.timeout_seconds
        )
        pager = build_pager(settings, client)

    coordinator = SyncCoordinator(bills, history, pager=pager)
    scheduler = AutoSyncScheduler(coordinator, auto_sync_config)

    return Application(
        settings=settings,
        bills=bills,
        history=history,
        auto_sync_config=auto_sync_config,
        coordinator=coordinator,
        scheduler=scheduler,
        client=client
    )
