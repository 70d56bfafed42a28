"""Unit tests for the worker and scheduler entrypoints."""

import asyncio
import sys
import types
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ride_jobs.config import PAYOUT_QUEUE
from ride_jobs.scheduler_main import run_scheduler
from ride_jobs.worker_main import load_collaborators, run_workers


@pytest.mark.asyncio
async def test_load_collaborators_requires_setting(config):
    with pytest.raises(ValueError, match="RIDE_JOBS_COLLABORATORS"):
        await load_collaborators(config)


@pytest.mark.asyncio
async def test_load_collaborators_sync_and_async_factories(config, collaborators):
    module = types.ModuleType("ride_jobs_test_factories")
    module.build = lambda cfg: collaborators

    async def build_async(cfg):
        return collaborators

    module.build_async = build_async

    with patch.dict(sys.modules, {"ride_jobs_test_factories": module}):
        config.collaborators_factory = "ride_jobs_test_factories:build"
        assert await load_collaborators(config) is collaborators

        config.collaborators_factory = "ride_jobs_test_factories:build_async"
        assert await load_collaborators(config) is collaborators


@pytest.mark.asyncio
async def test_run_workers_starts_queues_and_drains(config, collaborators):
    db_pool = MagicMock()
    db_pool.close = AsyncMock()
    shutdown_event = asyncio.Event()
    shutdown_event.set()

    with patch("ride_jobs.worker_main.RideJobsEngine") as engine_cls:
        engine = engine_cls.return_value
        engine.pool.stop_all = AsyncMock()

        await run_workers(
            [PAYOUT_QUEUE],
            config=config,
            db_pool=db_pool,
            collaborators=collaborators,
            shutdown_event=shutdown_event,
            drain_timeout=5,
        )

    engine.start_queue.assert_called_once_with(PAYOUT_QUEUE)
    engine.pool.stop_all.assert_any_await(drain=True, timeout=5)
    db_pool.close.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_workers_closes_own_pool(config, collaborators):
    db_pool = MagicMock()
    db_pool.close = AsyncMock()
    shutdown_event = asyncio.Event()
    shutdown_event.set()

    with patch("ride_jobs.worker_main.RideJobsEngine") as engine_cls, patch(
        "ride_jobs.worker_main.create_db_pool", AsyncMock(return_value=db_pool)
    ):
        engine_cls.return_value.pool.stop_all = AsyncMock()
        await run_workers(
            [PAYOUT_QUEUE],
            config=config,
            collaborators=collaborators,
            shutdown_event=shutdown_event,
        )

    db_pool.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_scheduler_exits_on_shutdown(config, collaborators):
    db_pool = MagicMock()
    db_pool.close = AsyncMock()
    shutdown_event = asyncio.Event()
    shutdown_event.set()

    with patch("ride_jobs.scheduler_main.RideJobsEngine") as engine_cls:
        engine = engine_cls.return_value
        engine.reconciliation_scheduler.run_forever = AsyncMock()
        engine.maintenance.run_forever = AsyncMock()

        await run_scheduler(
            config=config,
            db_pool=db_pool,
            collaborators=collaborators,
            shutdown_event=shutdown_event,
            maintain=False,
        )

    engine.reconciliation_scheduler.run_forever.assert_awaited_once_with(shutdown_event)
    engine.maintenance.run_forever.assert_not_called()
