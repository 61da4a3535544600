"""Tests for the main application."""
import asyncio
from unittest.mock import patch

import pytest
from faker import Faker

from spellstars.app import SpellStarsApp
from spellstars.config import DatabaseSettings, RemoteSettings, Settings, SyncSettings
from spellstars.models.difficulty_models import WordRef


@pytest.fixture
def app_settings() -> Settings:
    """Create settings for an app backed by an in-memory queue."""
    return Settings(
        database=DatabaseSettings(url="sqlite:///:memory:", echo=False),
        remote=RemoteSettings(url="", anon_key=""),
        sync=SyncSettings(interval_seconds=3600, prune_interval_seconds=3600),
    )


async def wait_for(condition, timeout: float = 2.0) -> None:
    """Poll until condition() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_start(remote, app_settings: Settings) -> None:
    """Test starting the application."""
    app = SpellStarsApp(remote=remote, app_settings=app_settings)
    await app.start()

    # Verify app state
    assert app.running
    assert app.database.is_open
    assert app.practice is not None
    assert app.scheduler is not None
    assert app.scheduler.running

    # Cleanup
    await app.stop()


@pytest.mark.asyncio
async def test_stop(remote, app_settings: Settings) -> None:
    """Test stopping the application."""
    app = SpellStarsApp(remote=remote, app_settings=app_settings)
    await app.start()
    await app.stop()

    # Verify app state
    assert not app.running
    assert app.database is None
    assert app.scheduler is None
    assert app.practice is None

    # Stopping twice is harmless
    await app.stop()


@pytest.mark.asyncio
async def test_start_without_remote_keeps_results_queued(app_settings: Settings, fake: Faker) -> None:
    """Test running with no remote store configured."""
    app = SpellStarsApp(app_settings=app_settings)
    await app.start()
    try:
        assert app.remote is None
        assert app.scheduler is None

        await app.practice.record_attempt(fake.uuid4(), fake.uuid4(), "list-1", "listen_type", True)

        assert app.practice.get_pending_sync_counts().total == 2
        with pytest.raises(RuntimeError):
            await app.sync_now()
    finally:
        await app.stop()


@pytest.mark.asyncio
async def test_offline_practice_syncs_when_back_online(remote, app_settings: Settings, fake: Faker) -> None:
    """Test the offline to online round trip."""
    app = SpellStarsApp(remote=remote, app_settings=app_settings, online=False)
    await app.start()
    try:
        learner_id = fake.uuid4()
        for word_id in ("w1", "w2", "w3"):
            await app.practice.record_attempt(learner_id, word_id, "list-1", "listen_type", True)
        await app.practice.award_points(learner_id, 15)
        assert app.practice.get_pending_sync_counts().total == 7
        assert remote.total_calls == 0

        app.set_online(True)
        await wait_for(lambda: app.practice.get_pending_sync_counts().total == 0)

        assert len(remote.attempts) == 3
        assert len(remote.entries) == 3
        assert remote.totals[learner_id] == 15
    finally:
        await app.stop()


@pytest.mark.asyncio
async def test_restart_migrates_queued_attempts(remote, app_settings: Settings, tmp_path, fake: Faker) -> None:
    """Test list inference for attempts queued before a restart."""
    remote.add_list("list-1", [WordRef("w1", "because")])
    app_settings.database = DatabaseSettings(url=f"sqlite:///{tmp_path / 'queue.db'}", echo=False)

    app = SpellStarsApp(remote=remote, app_settings=app_settings, online=False)
    await app.start()
    attempt = app.queue.enqueue_attempt(fake.uuid4(), "w1", None, "listen_type", True)
    await app.stop()

    restarted = SpellStarsApp(remote=remote, app_settings=app_settings, online=True)
    await restarted.start()
    try:
        await wait_for(lambda: attempt.client_id in remote.attempts)
        assert remote.attempts[attempt.client_id]["list_id"] == "list-1"
    finally:
        await restarted.stop()


@pytest.mark.asyncio
async def test_start_failure_cleans_up(remote, app_settings: Settings) -> None:
    """Test that a failed start leaves nothing open."""
    app = SpellStarsApp(remote=remote, app_settings=app_settings)

    with patch("spellstars.app.SyncScheduler.start", side_effect=RuntimeError("boom")):
        with pytest.raises(RuntimeError):
            await app.start()

    assert not app.running
    assert app.database is None
