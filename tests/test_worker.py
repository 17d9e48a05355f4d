"""Background worker tests — sweeper bookkeeping and clean shutdown."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from taxi_dispatch.db.models import RequestStatus, RideRequest, utcnow
from taxi_dispatch.worker.loops import BackgroundWorker


@pytest.mark.asyncio
async def test_sweep_once_counts_cancellations(services):
    lifecycle = services.dispatch.lifecycle
    req = await lifecycle.create_request("3001110000", "Ana", "Calle 10 # 5-20")
    async with services.store.transaction() as db:
        await db.execute(
            update(RideRequest)
            .where(RideRequest.id == req.id)
            .values(created_at=utcnow() - timedelta(hours=1))
        )

    worker = BackgroundWorker(services)
    assert await worker.sweep_once() == 1
    assert await worker.sweep_once() == 0

    stats = worker.get_stats()
    assert stats["sweeps"] == 2
    assert stats["cancelled"] == 1
    assert (await lifecycle.get(req.id)).status == RequestStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_worker_runs_health_checks_until_stopped(services):
    services.settings.health_check_interval_seconds = 0.01
    worker = BackgroundWorker(services)

    task = asyncio.create_task(worker.start())
    await asyncio.sleep(0.1)
    assert services.health.last_check_at is not None
    assert worker.get_stats()["running"] is True

    worker.stop()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert worker.get_stats()["running"] is False
