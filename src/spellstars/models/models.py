"""Database models for the local sync queue."""
import enum
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    text,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import relationship

from spellstars.models.base import Base, TimestampMixin, ensure_utc, utc_now
from spellstars.models.difficulty_models import DifficultyEntry


class SyncState(str, enum.Enum):
    """Lifecycle of a queued record."""
    PENDING = "pending"  # Waiting for a sync pass
    SYNCING = "syncing"  # Remote write in flight
    SYNCED = "synced"  # Confirmed by the remote store
    FAILED = "failed"  # Needs manual resolution


def new_client_id() -> str:
    return str(uuid.uuid4())


class QueuedRecordMixin(TimestampMixin):
    """Sync state shared by every queue table.

    Only the sync engine, the list enrichment step and the manual
    resolution surface move a record between states.
    """

    id = Column(Integer, primary_key=True)
    state = Column(
        Enum(
            SyncState,
            native_enum=False,
            length=16,
            values_callable=lambda states: [state.value for state in states],
        ),
        default=SyncState.PENDING,
        server_default=text("'pending'"),
        nullable=False,
        index=True,
    )
    retry_count = Column(Integer, default=0, server_default=text("0"), nullable=False)
    last_error = Column(String, nullable=True)

    @hybrid_property
    def synced(self):
        return self.state == SyncState.SYNCED

    @hybrid_property
    def failed(self):
        return self.state == SyncState.FAILED

    @hybrid_property
    def pending(self):
        return self.state in (SyncState.PENDING, SyncState.SYNCING)

    @pending.inplace.expression
    @classmethod
    def _pending_expression(cls):
        return cls.state.in_([SyncState.PENDING, SyncState.SYNCING])

    def mark_syncing(self) -> None:
        self.state = SyncState.SYNCING

    def mark_synced(self) -> None:
        self.state = SyncState.SYNCED
        self.last_error = None

    def mark_failed(self, error: str) -> None:
        self.state = SyncState.FAILED
        self.last_error = error

    def release(self, error: Optional[str] = None) -> None:
        """Return the record to pending without counting a retry."""
        self.state = SyncState.PENDING
        if error is not None:
            self.last_error = error

    def record_failure(self, error: str, max_retries: int) -> bool:
        """Count a failed remote write. Returns True once the record gives up."""
        self.retry_count = (self.retry_count or 0) + 1
        if self.retry_count > max_retries:
            self.mark_failed(f"Exceeded max retries ({max_retries}): {error}")
            return True
        self.release(error)
        return False

    def reset(self) -> None:
        """Make a failed record eligible for sync again."""
        self.state = SyncState.PENDING
        self.retry_count = 0
        self.last_error = None


class QueuedAudio(Base, QueuedRecordMixin):
    """Recorded audio waiting to be uploaded to remote storage."""

    __tablename__ = "queued_audio"

    filename = Column(String, nullable=False)
    content = Column(LargeBinary, nullable=False)
    content_type = Column(String, nullable=False, default="audio/webm")
    storage_path = Column(String, nullable=True)

    # Relationships
    attempts = relationship("QueuedAttempt", back_populates="audio")


class QueuedAttempt(Base, QueuedRecordMixin):
    """Practice attempt waiting to be inserted remotely."""

    __tablename__ = "queued_attempts"

    client_id = Column(String, nullable=False, unique=True, default=new_client_id)
    learner_id = Column(String, nullable=False, index=True)
    word_id = Column(String, nullable=False)
    list_id = Column(String, nullable=True)  # Filled by enrichment when missing
    mode = Column(String, nullable=False)
    correct = Column(Boolean, nullable=False)
    quality = Column(Integer, nullable=True)  # 0-5, see compute_attempt_quality
    typed_answer = Column(String, nullable=True)
    audio_id = Column(Integer, ForeignKey("queued_audio.id"), nullable=True)
    audio_ref = Column(String, nullable=True)  # Remote storage path
    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    # Relationships
    audio = relationship("QueuedAudio", back_populates="attempts")

    def to_row(self) -> Dict[str, Any]:
        """Serialize using the remote attempts table's column names."""
        return {
            "client_id": self.client_id,
            "child_id": self.learner_id,
            "word_id": self.word_id,
            "list_id": self.list_id,
            "mode": self.mode,
            "correct": self.correct,
            "quality": self.quality,
            "typed_answer": self.typed_answer,
            "audio_url": self.audio_ref,
            "started_at": ensure_utc(self.started_at or utc_now()).isoformat(),
        }


class QueuedDifficultyUpdate(Base, QueuedRecordMixin):
    """Difficulty transform not yet applied to the remote store."""

    __tablename__ = "queued_difficulty_updates"

    learner_id = Column(String, nullable=False, index=True)
    word_id = Column(String, nullable=False)
    is_correct_first_try = Column(Boolean, nullable=False)

    # Absolute entry to upsert, fixed before the first remote write
    target_ease = Column(Float, nullable=True)
    target_interval_days = Column(Integer, nullable=True)
    target_due_date = Column(Date, nullable=True)
    target_reps = Column(Integer, nullable=True)
    target_lapses = Column(Integer, nullable=True)

    @property
    def has_target(self) -> bool:
        return self.target_due_date is not None

    def set_target(self, entry: DifficultyEntry) -> None:
        self.target_ease = entry.ease
        self.target_interval_days = entry.interval_days
        self.target_due_date = entry.due_date
        self.target_reps = entry.reps
        self.target_lapses = entry.lapses

    def target_entry(self) -> Optional[DifficultyEntry]:
        """The stored entry, or None while the transform has not been computed."""
        if not self.has_target:
            return None
        return DifficultyEntry(
            learner_id=self.learner_id,
            word_id=self.word_id,
            ease=self.target_ease,
            interval_days=self.target_interval_days,
            due_date=self.target_due_date,
            reps=self.target_reps,
            lapses=self.target_lapses,
        )


class QueuedRewardTransaction(Base, QueuedRecordMixin):
    """Reward point award not yet applied remotely."""

    __tablename__ = "queued_reward_transactions"

    client_id = Column(String, nullable=False, unique=True, default=new_client_id)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    reason = Column(String, nullable=False, default="practice")


class QueueMeta(Base):
    """Key/value bookkeeping for the queue database itself."""

    __tablename__ = "queue_meta"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


# Category name -> table, in sync order
QUEUE_MODELS = {
    "audio": QueuedAudio,
    "attempts": QueuedAttempt,
    "difficulty_updates": QueuedDifficultyUpdate,
    "reward_transactions": QueuedRewardTransaction,
}
