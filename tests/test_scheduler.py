"""
Unit tests for the auto-sync scheduler.

Ticks are driven by an injected wait function so no test sleeps for a
real interval.
"""

import os
import tempfile
import threading
from datetime import datetime
from unittest.mock import Mock

import pytest

from usage_monitor.core.coordinator import SyncResult
from usage_monitor.core.scheduler import AutoSyncScheduler
from usage_monitor.storage.models import AutoSyncConfig
from usage_monitor.storage.repository import AutoSyncConfigRepository, initialize_schema

OK = SyncResult(success=True, billing_month="2024-11", synced_items=3, total_items=3)
FAILED = SyncResult(success=False, billing_month="2024-11", error_message="API token is not configured")
BUSY = SyncResult(success=False, error_message="sync already in progress", already_running=True)


class ScriptedWait:
    """Answers each wait call from a script of booleans (True = stopped)."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.calls = []

    def __call__(self, stop_event, seconds):
        self.calls.append(seconds)
        if not self.answers:
            return True
        return self.answers.pop(0)


def _config_repo(config):
    repo = Mock(spec=AutoSyncConfigRepository)
    repo.get.return_value = config
    return repo


def _run_to_completion(scheduler, interval=120):
    assert scheduler.start(interval) is True
    scheduler.join(timeout=5)
    assert scheduler.running is False


class TestSchedulerLoop:
    """Test tick, skip and retry behavior of the background loop."""

    def test_interval_below_minimum(self):
        scheduler = AutoSyncScheduler(Mock(), _config_repo(AutoSyncConfig()))
        with pytest.raises(ValueError):
            scheduler.start(59)
        assert scheduler.running is False

    def test_immediate_attempt_then_ticks(self):
        coordinator = Mock()
        coordinator.start_sync.return_value = OK
        wait = ScriptedWait([False, False, True])
        scheduler = AutoSyncScheduler(coordinator, _config_repo(AutoSyncConfig()), wait=wait,
                                      clock=lambda: datetime(2024, 11, 5, 9, 0, 0))

        _run_to_completion(scheduler, interval=120)

        assert coordinator.start_sync.call_count == 3
        coordinator.start_sync.assert_called_with("2024-11", "full")
        assert wait.calls == [120, 120, 120]
        assert scheduler.last_result is OK
        assert scheduler.last_sync_time == datetime(2024, 11, 5, 9, 0, 0)

    def test_fixed_billing_month_from_config(self):
        coordinator = Mock()
        coordinator.start_sync.return_value = OK
        config = AutoSyncConfig(billing_month="2024-06", sync_type="incremental")
        scheduler = AutoSyncScheduler(coordinator, _config_repo(config), wait=ScriptedWait([True]))

        _run_to_completion(scheduler)

        coordinator.start_sync.assert_called_once_with("2024-06", "incremental")

    def test_busy_trigger_is_skipped_not_retried(self):
        coordinator = Mock()
        coordinator.start_sync.return_value = BUSY
        wait = ScriptedWait([False, True])
        scheduler = AutoSyncScheduler(coordinator, _config_repo(AutoSyncConfig(max_retries=3)), wait=wait)

        _run_to_completion(scheduler, interval=300)

        assert coordinator.start_sync.call_count == 2
        assert wait.calls == [300, 300]

    def test_failed_attempt_is_retried(self):
        coordinator = Mock()
        coordinator.start_sync.side_effect = [FAILED, FAILED, OK]
        wait = ScriptedWait([False, False, True])
        config = AutoSyncConfig(max_retries=2, retry_delay=5)
        scheduler = AutoSyncScheduler(coordinator, _config_repo(config), wait=wait)

        _run_to_completion(scheduler, interval=120)

        assert coordinator.start_sync.call_count == 3
        assert wait.calls == [5, 5, 120]
        assert scheduler.last_result is OK

    def test_retries_exhausted(self):
        coordinator = Mock()
        coordinator.start_sync.return_value = FAILED
        wait = ScriptedWait([False, True])
        config = AutoSyncConfig(max_retries=1, retry_delay=7)
        scheduler = AutoSyncScheduler(coordinator, _config_repo(config), wait=wait)

        _run_to_completion(scheduler, interval=120)

        assert coordinator.start_sync.call_count == 2
        assert wait.calls == [7, 120]

    def test_stop_aborts_retry_wait(self):
        coordinator = Mock()
        coordinator.start_sync.return_value = FAILED
        wait = ScriptedWait([True])
        config = AutoSyncConfig(max_retries=3, retry_delay=5)
        scheduler = AutoSyncScheduler(coordinator, _config_repo(config), wait=wait)

        _run_to_completion(scheduler)

        assert coordinator.start_sync.call_count == 1
        assert wait.calls == [5]

    def test_exception_in_thread_stops_loop(self):
        coordinator = Mock()
        coordinator.start_sync.side_effect = RuntimeError("bug")
        scheduler = AutoSyncScheduler(coordinator, _config_repo(AutoSyncConfig()), wait=ScriptedWait([False]))

        _run_to_completion(scheduler)

        assert coordinator.start_sync.call_count == 1

    def test_start_twice_is_noop(self):
        release = threading.Event()
        coordinator = Mock()
        coordinator.start_sync.return_value = OK

        def wait(stop_event, seconds):
            release.wait(5)
            return True

        scheduler = AutoSyncScheduler(coordinator, _config_repo(AutoSyncConfig()), wait=wait)
        try:
            assert scheduler.start(120) is True
            assert scheduler.start(600) is False
            assert scheduler.interval_seconds == 120
        finally:
            release.set()
            scheduler.join(timeout=5)


class TestSchedulerConfig:
    """Test save_config, reload and get_status against a real config row."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.temp_dir.name, "test.db")
        initialize_schema(db_path)
        self.repo = AutoSyncConfigRepository(db_path)
        self.coordinator = Mock()
        self.coordinator.start_sync.return_value = OK
        self.scheduler = AutoSyncScheduler(self.coordinator, self.repo)

    def teardown_method(self):
        """Clean up test environment."""
        self.scheduler.stop()
        self.scheduler.join(timeout=5)
        self.temp_dir.cleanup()

    def test_save_enabled_starts(self):
        self.scheduler.save_config(AutoSyncConfig(enabled=True, frequency_seconds=120))

        assert self.scheduler.running is True
        assert self.scheduler.interval_seconds == 120
        assert self.repo.get().enabled is True

    def test_save_new_interval_restarts(self):
        self.scheduler.save_config(AutoSyncConfig(enabled=True, frequency_seconds=120))
        self.scheduler.save_config(AutoSyncConfig(enabled=True, frequency_seconds=600))

        assert self.scheduler.running is True
        assert self.scheduler.interval_seconds == 600

    def test_save_disabled_stops(self):
        self.scheduler.save_config(AutoSyncConfig(enabled=True, frequency_seconds=120))
        self.scheduler.save_config(AutoSyncConfig(enabled=False, frequency_seconds=120))

        assert self.scheduler.running is False
        assert self.repo.get().enabled is False

    def test_reload_from_stored_config(self):
        self.repo.save(AutoSyncConfig(enabled=True, frequency_seconds=900))

        config = self.scheduler.reload()

        assert config.frequency_seconds == 900
        assert self.scheduler.running is True
        assert self.scheduler.interval_seconds == 900

    def test_loop_stops_when_config_disabled_elsewhere(self):
        self.repo.save(AutoSyncConfig(enabled=True, frequency_seconds=120))

        def wait(stop_event, seconds):
            self.repo.save(AutoSyncConfig(enabled=False, frequency_seconds=120))
            return False

        scheduler = AutoSyncScheduler(self.coordinator, self.repo, wait=wait)
        scheduler.reload()
        scheduler.join(timeout=5)

        assert scheduler.running is False
        assert self.coordinator.start_sync.call_count == 1

    def test_loop_adopts_interval_changed_elsewhere(self):
        self.repo.save(AutoSyncConfig(enabled=True, frequency_seconds=120))
        waits = []

        def wait(stop_event, seconds):
            waits.append(seconds)
            if len(waits) == 1:
                self.repo.save(AutoSyncConfig(enabled=True, frequency_seconds=600))
                return False
            return True

        scheduler = AutoSyncScheduler(self.coordinator, self.repo, wait=wait)
        scheduler.reload()
        scheduler.join(timeout=5)

        assert waits == [120, 600]
        assert self.coordinator.start_sync.call_count == 2

    def test_manual_start_ignores_stored_enabled_flag(self):
        waits = []

        def wait(stop_event, seconds):
            waits.append(seconds)
            return len(waits) > 1

        scheduler = AutoSyncScheduler(self.coordinator, self.repo, wait=wait)
        scheduler.start(300)
        scheduler.join(timeout=5)

        assert self.repo.get().enabled is False
        assert waits == [300, 300]
        assert self.coordinator.start_sync.call_count == 2

    def test_reload_disabled_leaves_stopped(self):
        self.scheduler.reload()
        assert self.scheduler.running is False

    def test_status_merges_runtime_times(self):
        self.repo.save(AutoSyncConfig(enabled=True, frequency_seconds=120))
        self.scheduler.last_sync_time = datetime(2024, 11, 5, 9, 0, 0)

        status = self.scheduler.get_status()

        assert status.running is False
        assert status.config.enabled is True
        assert status.config.last_sync_time == datetime(2024, 11, 5, 9, 0, 0)
        assert self.repo.get().last_sync_time is None
