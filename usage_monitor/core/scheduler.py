"""
Auto-sync scheduler.

One background thread triggers a sync immediately and then once per
interval. A trigger that finds a sync already running is skipped, never
queued.
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from usage_monitor.core.coordinator import SyncCoordinator, SyncResult
from usage_monitor.storage.models import MIN_SYNC_FREQUENCY_SECONDS, AutoSyncConfig
from usage_monitor.storage.repository import AutoSyncConfigRepository

logger = structlog.get_logger(__name__)

# Returns True when the stop event fired before the timeout elapsed
WaitFunc = Callable[[threading.Event, float], bool]


def event_wait(stop_event: threading.Event, seconds: float) -> bool:
    return stop_event.wait(seconds)


@dataclass(frozen=True)
class SchedulerStatus:
    """Persisted config merged with the scheduler's runtime state."""
    running: bool
    interval_seconds: Optional[int]
    config: AutoSyncConfig
    last_result: Optional[SyncResult] = None


class AutoSyncScheduler:
    """Periodic trigger for SyncCoordinator.start_sync."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        config_repository: AutoSyncConfigRepository,
        wait: WaitFunc = event_wait,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.coordinator = coordinator
        self.config_repository = config_repository
        self._wait = wait
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._interval: Optional[int] = None
        self._running = False
        self.last_sync_time: Optional[datetime] = None
        self.next_sync_time: Optional[datetime] = None
        self.last_result: Optional[SyncResult] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def interval_seconds(self) -> Optional[int]:
        with self._lock:
            return self._interval if self._running else None

    def start(self, interval_seconds: int, follow_config: bool = False) -> bool:
        """Start the background loop.

        With follow_config the loop re-reads the stored config before each
        tick, stopping once it is disabled and adopting a new interval.

        Returns:
            False if the loop was already running (nothing changes)

        Raises:
            ValueError: If interval_seconds is below the minimum
        """
        if interval_seconds < MIN_SYNC_FREQUENCY_SECONDS:
            raise ValueError(f"interval must be >= {MIN_SYNC_FREQUENCY_SECONDS} seconds")

        with self._lock:
            if self._running:
                return False
            self._stop_event = threading.Event()
            self._interval = interval_seconds
            self._running = True
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event, interval_seconds, follow_config),
                name="auto-sync",
                daemon=True
            )
            self._thread.start()

        logger.info("auto_sync_started", interval_seconds=interval_seconds)
        return True

    def stop(self) -> bool:
        """Prevent future ticks. A sync already in flight runs to completion.

        Returns:
            False if the loop was not running
        """
        with self._lock:
            if not self._running:
                return False
            self._stop_event.set()
            self._running = False
            self.next_sync_time = None
        logger.info("auto_sync_stopped")
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the background thread to exit."""
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def save_config(self, config: AutoSyncConfig) -> None:
        """Persist the config and re-arm the loop to match it."""
        self.config_repository.save(config)
        self._apply(config)

    def reload(self) -> AutoSyncConfig:
        """Arm the loop from the persisted config (used at startup)."""
        config = self.config_repository.get()
        self._apply(config)
        return config

    def get_status(self) -> SchedulerStatus:
        config = self.config_repository.get()
        snapshot = replace(
            config,
            last_sync_time=self.last_sync_time or config.last_sync_time,
            next_sync_time=self.next_sync_time or config.next_sync_time
        )
        return SchedulerStatus(
            running=self.running,
            interval_seconds=self.interval_seconds,
            config=snapshot,
            last_result=self.last_result
        )

    def _apply(self, config: AutoSyncConfig) -> None:
        if not config.enabled:
            self.stop()
            return
        with self._lock:
            unchanged = self._running and self._interval == config.frequency_seconds
        if not unchanged:
            self.stop()
            self.start(config.frequency_seconds, follow_config=True)

    def _run(self, stop_event: threading.Event, interval: int, follow_config: bool) -> None:
        try:
            while not stop_event.is_set():
                config = self.config_repository.get()
                if follow_config:
                    if not config.enabled:
                        logger.info("auto_sync_disabled_in_config")
                        break
                    if config.frequency_seconds != interval:
                        interval = config.frequency_seconds
                        with self._lock:
                            if self._stop_event is stop_event:
                                self._interval = interval
                        logger.info("auto_sync_interval_changed", interval_seconds=interval)
                if self._attempt(stop_event, config) or stop_event.is_set():
                    break
                self.next_sync_time = self._clock() + timedelta(seconds=interval)
                if self._wait(stop_event, interval):
                    break
        except Exception:
            logger.exception("auto_sync_loop_crashed")
        finally:
            with self._lock:
                if self._stop_event is stop_event:
                    self._running = False
                    self.next_sync_time = None

    def _attempt(self, stop_event: threading.Event, config: AutoSyncConfig) -> bool:
        """Run one trigger with retries. Returns True if stopped while retrying."""
        billing_month = config.billing_month or self._clock().strftime("%Y-%m")
        log = logger.bind(billing_month=billing_month, sync_type=config.sync_type)

        for attempt in range(config.max_retries + 1):
            if stop_event.is_set():
                return True

            result = self.coordinator.start_sync(billing_month, config.sync_type)
            self.last_sync_time = self._clock()
            self.last_result = result

            if result.already_running:
                log.info("auto_sync_skipped", reason=result.error_message)
                return False
            if result.success:
                log.info("auto_sync_completed", synced=result.synced_items, total=result.total_items)
                return False

            if attempt < config.max_retries:
                log.warning(
                    "auto_sync_retrying",
                    attempt=attempt + 1,
                    max_retries=config.max_retries,
                    retry_delay=config.retry_delay,
                    error=result.error_message
                )
                if self._wait(stop_event, config.retry_delay):
                    return True

        log.error("auto_sync_failed", attempts=config.max_retries + 1, error=self.last_result.error_message)
        return False
