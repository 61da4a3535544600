"""Tests for database models."""
from datetime import date, datetime, UTC
from pathlib import Path

import pytest
from faker import Faker
from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

from spellstars.models.database import SCHEMA_VERSION, QueueDatabase
from spellstars.models.difficulty_models import DifficultyEntry
from spellstars.models.models import (
    QueuedAttempt,
    QueuedAudio,
    QueuedDifficultyUpdate,
    SyncState,
)
from spellstars.models.sync_models import PendingCounts, FailedBreakdown
from spellstars.services.queue_service import QueueService

fake = Faker()


def make_attempt(**fields) -> QueuedAttempt:
    values = dict(
        learner_id=fake.uuid4(),
        word_id=fake.uuid4(),
        list_id=fake.uuid4(),
        mode="listen_type",
        correct=True,
    )
    values.update(fields)
    return QueuedAttempt(**values)


def test_queued_record_defaults(db: Session) -> None:
    """Test queued record creation."""
    attempt = make_attempt()
    db.add(attempt)
    db.commit()
    db.refresh(attempt)

    assert attempt.id is not None
    assert attempt.state is SyncState.PENDING
    assert attempt.retry_count == 0
    assert attempt.client_id
    assert attempt.started_at is not None
    assert attempt.created_at is not None


def test_state_flags() -> None:
    """Test the synced, failed and pending views of the state."""
    update = QueuedDifficultyUpdate(learner_id="l", word_id="w", is_correct_first_try=True)

    update.state = SyncState.PENDING
    assert update.pending and not update.synced and not update.failed

    update.mark_syncing()
    assert update.pending

    update.mark_synced()
    assert update.synced and not update.pending

    update.mark_failed("boom")
    assert update.failed and not update.pending
    assert update.last_error == "boom"


def test_record_failure_gives_up_after_max_retries() -> None:
    """Test the retry budget."""
    update = QueuedDifficultyUpdate(learner_id="l", word_id="w", is_correct_first_try=True)
    update.state = SyncState.SYNCING
    update.retry_count = 0

    for attempt_number in range(1, 6):
        assert update.record_failure("503 Service Unavailable", max_retries=5) is False
        assert update.state is SyncState.PENDING
        assert update.retry_count == attempt_number

    assert update.record_failure("503 Service Unavailable", max_retries=5) is True
    assert update.failed
    assert update.last_error == "Exceeded max retries (5): 503 Service Unavailable"


def test_reset_and_release() -> None:
    """Test returning records to pending."""
    update = QueuedDifficultyUpdate(learner_id="l", word_id="w", is_correct_first_try=True)
    update.retry_count = 6
    update.mark_failed("Exceeded max retries (5): timeout")

    update.reset()
    assert update.pending
    assert update.retry_count == 0
    assert update.last_error is None

    update.mark_syncing()
    update.release()
    assert update.state is SyncState.PENDING
    assert update.retry_count == 0


def test_attempt_to_row() -> None:
    """Test serializing an attempt for the remote attempts table."""
    attempt = make_attempt(
        client_id="4f1c7c1e-0000-4000-8000-000000000001",
        learner_id="child-1",
        quality=3,
        audio_ref="recordings/take-1.webm",
        started_at=datetime(2026, 3, 10, 9, 30),
    )

    row = attempt.to_row()

    assert row["client_id"] == "4f1c7c1e-0000-4000-8000-000000000001"
    assert row["child_id"] == "child-1"
    assert row["audio_url"] == "recordings/take-1.webm"
    assert row["quality"] == 3
    assert row["started_at"] == "2026-03-10T09:30:00+00:00"


def test_audio_attempt_relationship(db: Session) -> None:
    """Test linking an attempt to its queued recording."""
    audio = QueuedAudio(filename="take-1.webm", content=b"RIFF")
    attempt = make_attempt(audio=audio)
    db.add(attempt)
    db.commit()

    assert attempt.audio_id == audio.id
    assert audio.attempts == [attempt]


def test_difficulty_entry_from_row() -> None:
    """Test reading an entry from the remote srs table."""
    entry = DifficultyEntry.from_row(
        {
            "child_id": "child-1",
            "word_id": "word-1",
            "ease": "2.3",
            "interval_days": 1,
            "due_date": "2026-03-11",
            "reps": 0,
            "lapses": 2,
            "updated_at": "2026-03-10T08:00:00+00:00",
        }
    )

    assert entry.learner_id == "child-1"
    assert entry.ease == 2.3
    assert entry.due_date == date(2026, 3, 11)
    assert entry.reviews == 2
    assert entry.error_rate == 1.0
    assert entry.updated_at == datetime(2026, 3, 10, 8, tzinfo=UTC)


def test_pending_counts_total() -> None:
    """Test the pending count summary."""
    counts = PendingCounts(attempts=4, audio=1, difficulty_updates=4, reward_transactions=2,
                           failed=FailedBreakdown(attempts=1, reward_transactions=1))

    assert counts.total == 11
    assert counts.as_dict()["total"] == 11
    assert counts.as_dict()["failed"]["total"] == 2


def test_database_records_schema_version(database: QueueDatabase) -> None:
    """Test a freshly created queue database."""
    assert database.is_open
    assert database.schema_version() == SCHEMA_VERSION


def test_database_session_requires_open() -> None:
    """Test using a closed database."""
    database = QueueDatabase("sqlite:///:memory:")

    with pytest.raises(RuntimeError):
        database.session()


def test_open_upgrades_old_queue_table(tmp_path: Path) -> None:
    """Test adding columns to a queue table written by an older version."""
    url = f"sqlite:///{tmp_path / 'queue.db'}"
    database = QueueDatabase(url)
    database.open()
    with database.engine.begin() as connection:
        connection.exec_driver_sql("DROP TABLE queued_attempts")
        connection.exec_driver_sql(
            "CREATE TABLE queued_attempts ("
            "id INTEGER PRIMARY KEY, client_id VARCHAR NOT NULL, learner_id VARCHAR NOT NULL, "
            "word_id VARCHAR NOT NULL, mode VARCHAR NOT NULL, correct BOOLEAN NOT NULL, "
            "started_at DATETIME NOT NULL, created_at DATETIME NOT NULL, updated_at DATETIME NOT NULL)"
        )
        connection.exec_driver_sql(
            "INSERT INTO queued_attempts "
            "(client_id, learner_id, word_id, mode, correct, started_at, created_at, updated_at) "
            "VALUES ('c-1', 'child-1', 'word-1', 'listen_type', 1, "
            "'2026-03-01 10:00:00.000000', '2026-03-01 10:00:00.000000', '2026-03-01 10:00:00.000000')"
        )
        connection.execute(text("UPDATE queue_meta SET value = '1' WHERE key = 'schema_version'"))
    database.close()

    upgraded = QueueDatabase(url)
    upgraded.open()
    try:
        columns = {column["name"] for column in inspect(upgraded.engine).get_columns("queued_attempts")}
        assert {"list_id", "state", "retry_count", "last_error", "audio_id"} <= columns
        assert upgraded.schema_version() == SCHEMA_VERSION

        with upgraded.session() as db:
            attempt = db.query(QueuedAttempt).one()
            assert attempt.state is SyncState.PENDING
            assert attempt.retry_count == 0
            assert attempt.list_id is None
            assert QueueService(db).get_pending_counts().attempts == 1
    finally:
        upgraded.close()


def test_open_recovers_interrupted_records(tmp_path: Path) -> None:
    """Test that records caught mid-sync by a crash go back to pending."""
    url = f"sqlite:///{tmp_path / 'queue.db'}"
    database = QueueDatabase(url)
    database.open()
    with database.session() as db:
        queue = QueueService(db)
        update = queue.enqueue_difficulty_update("child-1", "word-1", True)
        update.mark_syncing()
        queue.save()
    database.close()

    reopened = QueueDatabase(url)
    reopened.open()
    try:
        with reopened.session() as db:
            update = db.query(QueuedDifficultyUpdate).one()
            assert update.state is SyncState.PENDING
            assert update.retry_count == 0
    finally:
        reopened.close()


def test_interrupted_update_keeps_its_computed_entry(tmp_path: Path) -> None:
    """Test that the entry computed before a crash is what gets resent."""
    url = f"sqlite:///{tmp_path / 'queue.db'}"
    target = DifficultyEntry(learner_id="child-1", word_id="word-1", ease=2.6, interval_days=3,
                             due_date=date(2026, 3, 13), reps=2, lapses=1)
    database = QueueDatabase(url)
    database.open()
    with database.session() as db:
        queue = QueueService(db)
        update = queue.enqueue_difficulty_update("child-1", "word-1", True)
        update.set_target(target)
        update.mark_syncing()
        queue.save()
    database.close()

    reopened = QueueDatabase(url)
    reopened.open()
    try:
        with reopened.session() as db:
            update = db.query(QueuedDifficultyUpdate).one()
            assert update.pending
            assert update.target_entry() == target
    finally:
        reopened.close()
