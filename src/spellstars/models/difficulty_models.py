"""Models for difficulty state and practice batches."""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional

from spellstars.config import DEFAULT_EASE
from spellstars.models.base import utc_now


class BatchType(str, Enum):
    """Why a word was put into a practice batch."""
    DUE = "due"  # Due today or overdue
    LEECH = "leech"  # Chronically missed, shown ahead of schedule
    REVIEW = "review"  # Due in the next few days
    NEW = "new"  # Never attempted


@dataclass(frozen=True)
class DifficultyEntry:
    """Per learner, per word spaced repetition state."""
    learner_id: str
    word_id: str
    ease: float = DEFAULT_EASE
    interval_days: int = 0
    due_date: date = field(default_factory=date.today)
    reps: int = 0
    lapses: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        learner_id: str,
        word_id: str,
        today: date,
        ease: float = DEFAULT_EASE,
    ) -> "DifficultyEntry":
        """State of a word the learner has never attempted."""
        return cls(
            learner_id=learner_id,
            word_id=word_id,
            ease=ease,
            interval_days=0,
            due_date=today,
            reps=0,
            lapses=0,
        )

    @property
    def reviews(self) -> int:
        return self.reps + self.lapses

    @property
    def error_rate(self) -> float:
        return self.lapses / self.reviews if self.reviews else 0.0

    def to_row(self) -> Dict[str, Any]:
        """Serialize using the remote table's column names."""
        return {
            "child_id": self.learner_id,
            "word_id": self.word_id,
            "ease": self.ease,
            "interval_days": self.interval_days,
            "due_date": self.due_date.isoformat(),
            "reps": self.reps,
            "lapses": self.lapses,
            "updated_at": (self.updated_at or utc_now()).isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DifficultyEntry":
        updated_at = row.get("updated_at")
        return cls(
            learner_id=row["child_id"],
            word_id=row["word_id"],
            ease=float(row["ease"]),
            interval_days=int(row["interval_days"]),
            due_date=date.fromisoformat(row["due_date"]),
            reps=int(row["reps"]),
            lapses=int(row["lapses"]),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )


@dataclass(frozen=True)
class WordRef:
    """A word belonging to the practice scope, in list order."""
    word_id: str
    text: Optional[str] = None


@dataclass(frozen=True)
class ScheduledWord:
    """One item of a practice batch."""
    word_id: str
    batch_type: BatchType
    due_date: date
    ease: float
    interval_days: int
    reps: int
    lapses: int
    word_text: Optional[str] = None

    @classmethod
    def from_entry(
        cls,
        entry: DifficultyEntry,
        batch_type: BatchType,
        word_text: Optional[str] = None,
    ) -> "ScheduledWord":
        return cls(
            word_id=entry.word_id,
            batch_type=batch_type,
            due_date=entry.due_date,
            ease=entry.ease,
            interval_days=entry.interval_days,
            reps=entry.reps,
            lapses=entry.lapses,
            word_text=word_text,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScheduledWord":
        """Build from a row of the remote get_next_batch function."""
        return cls(
            word_id=row["word_id"],
            batch_type=BatchType(row["batch_type"]),
            due_date=date.fromisoformat(row["due_date"]),
            ease=float(row["ease"]),
            interval_days=int(row["interval_days"]),
            reps=int(row["reps"]),
            lapses=int(row["lapses"]),
            word_text=row.get("word_text"),
        )