"""Tests for the periodic job scheduler."""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rotation.errors import AllProvidersExhausted
from rotation.scheduler import RotationScheduler, seconds_until_hour
from rotation.utils.healthcheck import HealthcheckServer


def fake_service(snapshot):
    service = MagicMock()
    service.refresh_metrics = AsyncMock(return_value=snapshot)
    service.check_phase_transition = AsyncMock(return_value={"transitioned": False})
    return service


class TestSecondsUntilHour:
    """Tests for the daily cleanup timing."""

    def test_later_today(self):
        """01:00 UTC -> 03:00 UTC is two hours."""
        now = datetime(2024, 3, 1, 1, 0, tzinfo=timezone.utc)
        assert seconds_until_hour(3, "UTC", now=now) == 7200

    def test_rolls_to_tomorrow(self):
        """Past the hour the next run is tomorrow."""
        now = datetime(2024, 3, 1, 3, 0, tzinfo=timezone.utc)
        assert seconds_until_hour(3, "UTC", now=now) == 24 * 3600

    def test_timezone(self):
        """The hour is interpreted in the configured timezone."""
        # 12:00 UTC is 07:00 in New York (EST, UTC-5)
        now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert seconds_until_hour(8, "America/New_York", now=now) == 3600


class TestJobs:
    """Tests for the individual jobs."""

    @pytest.mark.asyncio
    async def test_poll_records_healthcheck(self, make_snapshot):
        """A market-data poll is counted by the healthcheck server."""
        healthcheck = HealthcheckServer(port=0)
        service = fake_service(make_snapshot())
        scheduler = RotationScheduler(service, MagicMock(), healthcheck=healthcheck)

        await scheduler.poll_market_data()

        service.refresh_metrics.assert_awaited_once()
        assert healthcheck.polls_completed == 1
        assert healthcheck.last_poll_time is not None

    @pytest.mark.asyncio
    async def test_cleanup_runs_in_thread(self, make_snapshot):
        """Cleanup is run with the configured retention."""
        database = MagicMock()
        scheduler = RotationScheduler(fake_service(make_snapshot()), database, retention_days=30)

        with patch("rotation.scheduler.cleanup_old_rows", return_value={"market_metrics": 0}) as cleanup:
            await scheduler.run_cleanup()

        cleanup.assert_called_once_with(database, 30)


class TestLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_snapshot):
        """Jobs run once at start and are cancelled by stop()."""
        service = fake_service(make_snapshot())
        scheduler = RotationScheduler(service, MagicMock(), cleanup_enabled=False)

        scheduler.start()
        assert scheduler.running is True
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert scheduler.running is False
        assert scheduler.runs["market_data"] == 1
        assert scheduler.runs["phase_check"] == 1
        service.refresh_metrics.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_job_keeps_running(self, make_snapshot):
        """A job error is logged and the loop survives."""
        service = fake_service(make_snapshot())
        service.refresh_metrics.side_effect = AllProvidersExhausted("metrics", ["coingecko"])
        scheduler = RotationScheduler(service, MagicMock(), cleanup_enabled=False)

        scheduler.start()
        await asyncio.sleep(0.05)
        assert scheduler.running is True
        await scheduler.stop()

        assert scheduler.runs["market_data"] == 0
        assert scheduler.runs["phase_check"] == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, make_snapshot):
        """Stopping an idle scheduler is a no-op."""
        scheduler = RotationScheduler(fake_service(make_snapshot()), MagicMock())
        await scheduler.stop()
        assert scheduler.running is False
