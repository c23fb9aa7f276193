"""Tests for the quota reset scheduler."""

import threading
from unittest.mock import AsyncMock, MagicMock

import pytest

from governance.scheduler import RESET_JOB_ID, QuotaResetScheduler


@pytest.fixture
def mock_manager() -> MagicMock:
    manager = MagicMock()
    manager.reset_expired_quotas = AsyncMock(return_value=3)
    return manager


class TestRunSweep:
    """Tests for a single sweep."""

    def test_returns_reset_count(self, mock_manager: MagicMock) -> None:
        scheduler = QuotaResetScheduler(mock_manager)

        assert scheduler.run_sweep() == 3
        mock_manager.reset_expired_quotas.assert_awaited_once()

    def test_failure_returns_zero(self, mock_manager: MagicMock, caplog) -> None:
        mock_manager.reset_expired_quotas.side_effect = RuntimeError("store down")
        scheduler = QuotaResetScheduler(mock_manager)

        assert scheduler.run_sweep() == 0
        assert "Quota reset sweep failed" in caplog.text


class TestLifecycle:
    """Tests for starting and stopping the scheduler."""

    def test_start_registers_job(self, mock_manager: MagicMock) -> None:
        scheduler = QuotaResetScheduler(mock_manager, interval_minutes=15)

        scheduler.start()
        try:
            assert scheduler.running is True
            job = scheduler.scheduler.get_job(RESET_JOB_ID)
            assert job is not None
            assert job.trigger.interval.total_seconds() == 15 * 60
            assert job.next_run_time is not None
        finally:
            scheduler.shutdown()

        assert scheduler.running is False
        mock_manager.reset_expired_quotas.assert_not_awaited()

    def test_start_twice_is_noop(self, mock_manager: MagicMock, caplog) -> None:
        scheduler = QuotaResetScheduler(mock_manager)

        scheduler.start()
        try:
            scheduler.start()
            assert "already running" in caplog.text
            assert len(scheduler.scheduler.get_jobs()) == 1
        finally:
            scheduler.shutdown()

    def test_run_immediately(self, mock_manager: MagicMock) -> None:
        ran = threading.Event()

        async def _sweep(*args, **kwargs) -> int:
            ran.set()
            return 0

        mock_manager.reset_expired_quotas.side_effect = _sweep
        scheduler = QuotaResetScheduler(mock_manager)

        scheduler.start(run_immediately=True)
        try:
            assert ran.wait(timeout=5)
        finally:
            scheduler.shutdown()

    def test_shutdown_when_not_started(self, mock_manager: MagicMock) -> None:
        scheduler = QuotaResetScheduler(mock_manager)

        scheduler.shutdown()

        assert scheduler.running is False

    def test_sweeps_real_store(self, quota_manager, usage_store, make_record) -> None:
        from datetime import datetime, timezone

        usage_store.insert_usage_counters(
            make_record(
                "org_due",
                api_calls_used=500,
                reset_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
            )
        )
        scheduler = QuotaResetScheduler(quota_manager)

        assert scheduler.run_sweep() == 1
        assert usage_store.find_usage_counters("org_due").api_calls_used == 0
