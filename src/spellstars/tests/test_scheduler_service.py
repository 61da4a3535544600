"""Tests for sync scheduler."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from faker import Faker

from spellstars.config import SyncSettings
from spellstars.models.base import utc_now
from spellstars.models.models import QueuedDifficultyUpdate
from spellstars.models.sync_models import SyncResult
from spellstars.services.connectivity import ConnectivityMonitor
from spellstars.services.queue_service import QueueService
from spellstars.services.scheduler_service import SyncScheduler
from spellstars.services.sync_service import SyncService


@pytest.fixture
def sync_settings() -> SyncSettings:
    """Create sync settings with long delays so only triggers run passes."""
    return SyncSettings(
        max_retries=5,
        interval_seconds=3600,
        backoff_base_seconds=5,
        backoff_max_seconds=900,
        prune_after_days=7,
        prune_interval_seconds=3600,
    )


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    """Create a connectivity monitor that starts online."""
    return ConnectivityMonitor(online=True)


@pytest.fixture
def sync_service(queue: QueueService, remote, sync_settings: SyncSettings) -> SyncService:
    """Create a sync service instance."""
    return SyncService(queue, remote, sync_settings=sync_settings)


@pytest.fixture
def scheduler(sync_service: SyncService, queue: QueueService, connectivity: ConnectivityMonitor,
              sync_settings: SyncSettings) -> SyncScheduler:
    """Create a scheduler instance."""
    return SyncScheduler(sync_service, queue, connectivity, sync_settings)


async def wait_for(condition, timeout: float = 2.0) -> None:
    """Poll until condition() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_start_and_stop(scheduler: SyncScheduler):
    """Test starting and stopping the scheduler."""
    await scheduler.start()

    assert scheduler.running
    assert set(scheduler.tasks) == {"sync", "prune"}

    await scheduler.stop()

    assert not scheduler.running
    assert scheduler.tasks == {}


@pytest.mark.asyncio
async def test_start_is_idempotent(scheduler: SyncScheduler):
    """Test starting twice."""
    await scheduler.start()
    tasks = dict(scheduler.tasks)

    await scheduler.start()

    assert scheduler.tasks == tasks
    await scheduler.stop()


@pytest.mark.asyncio
async def test_runs_a_pass_on_start(scheduler: SyncScheduler, queue: QueueService, remote, fake: Faker):
    """Test that queued work is drained when the scheduler starts."""
    queue.enqueue_attempt(fake.uuid4(), fake.uuid4(), "list-1", "listen_type", True)

    await scheduler.start()
    try:
        await wait_for(lambda: queue.get_pending_counts().total == 0)
    finally:
        await scheduler.stop()

    assert len(remote.attempts) == 1


@pytest.mark.asyncio
async def test_offline_skips_passes_until_back_online(scheduler: SyncScheduler, queue: QueueService, remote,
                                                      connectivity: ConnectivityMonitor, fake: Faker):
    """Test that coming back online triggers a pass."""
    connectivity.set_online(False)
    connectivity.subscribe(scheduler.on_connectivity_change)
    queue.enqueue_difficulty_update(fake.uuid4(), fake.uuid4(), True)

    await scheduler.start()
    try:
        await asyncio.sleep(0.05)
        assert remote.total_calls == 0

        connectivity.set_online(True)
        await wait_for(lambda: queue.get_pending_counts().total == 0)
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_trigger_wakes_the_sync_loop(scheduler: SyncScheduler, queue: QueueService, fake: Faker):
    """Test running a pass on demand."""
    await scheduler.start()
    try:
        await wait_for(lambda: scheduler.sync_service.last_result is not None)
        queue.enqueue_reward_transaction(fake.uuid4(), 3)

        scheduler.trigger()

        await wait_for(lambda: queue.get_pending_counts().total == 0)
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_sync_loop_survives_errors(queue: QueueService, connectivity: ConnectivityMonitor,
                                         sync_settings: SyncSettings):
    """Test that an unexpected error does not end the loop."""
    sync_service = Mock(spec=SyncService)
    sync_service.sync_queued_data = AsyncMock(side_effect=[RuntimeError("disk full"), SyncResult()])
    sync_service.next_delay.return_value = 3600
    scheduler = SyncScheduler(sync_service, queue, connectivity, sync_settings)

    await scheduler.start()
    try:
        await asyncio.sleep(0)
        scheduler.trigger()
        await wait_for(lambda: sync_service.sync_queued_data.await_count == 2)
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_prune_loop_removes_old_synced_records(scheduler: SyncScheduler, queue: QueueService, fake: Faker):
    """Test housekeeping."""
    update = queue.enqueue_difficulty_update(fake.uuid4(), fake.uuid4(), True)
    update.mark_synced()
    update.updated_at = utc_now() - timedelta(days=30)
    queue.save()

    await scheduler.start()
    try:
        await wait_for(lambda: queue.db.query(QueuedDifficultyUpdate).count() == 0)
    finally:
        await scheduler.stop()
