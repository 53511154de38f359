"""
Tests for the sync scheduler.

Tests cover:
- Job registration (triggers, durability options)
- Job execution and error containment
- Shutdown
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from legis_sync.core.config import Settings
from legis_sync.core.scheduler import job_incremental_sync, shutdown_scheduler, start_scheduler
from legis_sync.services.sync import SyncOutcome


def make_orchestrator(outcome=None, error=None):
    orchestrator = MagicMock()
    orchestrator.run_incremental = AsyncMock(return_value=outcome, side_effect=error)
    return orchestrator


class TestStartScheduler:
    """Tests for start_scheduler."""

    @pytest.mark.asyncio
    async def test_registers_daily_and_quick_jobs(self):
        config = Settings(DAILY_SYNC_HOUR=4, QUICK_SYNC_INTERVAL_MINUTES=60)
        scheduler = start_scheduler(make_orchestrator(), config=config)
        try:
            jobs = {job.id: job for job in scheduler.get_jobs()}
            assert set(jobs) == {"job_daily_sync", "job_quick_sync"}

            daily, quick = jobs["job_daily_sync"], jobs["job_quick_sync"]
            assert isinstance(daily.trigger, CronTrigger)
            assert isinstance(quick.trigger, IntervalTrigger)
            assert quick.trigger.interval.total_seconds() == 3600
            assert "hour='4'" in str(daily.trigger)

            for job in jobs.values():
                assert job.max_instances == 1
                assert job.coalesce is True
                assert job.misfire_grace_time > 0

            assert daily.args[1] == config.INCREMENTAL_ENTITIES
            assert quick.args[1] == config.QUICK_SYNC_ENTITIES
        finally:
            shutdown_scheduler(scheduler)

        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self):
        scheduler = start_scheduler(make_orchestrator())
        shutdown_scheduler(scheduler)
        shutdown_scheduler(scheduler)
        assert scheduler.running is False


class TestJobIncrementalSync:
    """Tests for the scheduled job body."""

    @pytest.mark.asyncio
    async def test_runs_incremental_with_entities(self):
        outcome = SyncOutcome(mode="incremental", units_ok=1)
        orchestrator = make_orchestrator(outcome=outcome)

        result = await job_incremental_sync(orchestrator, ["proposicao"], "quick")

        assert result is outcome
        orchestrator.run_incremental.assert_awaited_once_with(entities=["proposicao"])

    @pytest.mark.asyncio
    async def test_errors_do_not_escape(self):
        orchestrator = make_orchestrator(error=RuntimeError("database gone"))

        assert await job_incremental_sync(orchestrator) is None
