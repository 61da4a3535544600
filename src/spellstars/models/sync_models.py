"""Models for sync status and queue reporting."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class EnrichmentOutcome(Enum):
    """Result of inferring a missing list for a queued attempt."""
    RESOLVED = "resolved"  # Exactly one list contains the word
    AMBIGUOUS = "ambiguous"  # Zero or several lists, needs a parent
    RETRY = "retry"  # Lookup failed, try again next pass


@dataclass
class FailedBreakdown:
    """Permanently failed records per category."""
    attempts: int = 0
    audio: int = 0
    difficulty_updates: int = 0
    reward_transactions: int = 0

    @property
    def total(self) -> int:
        return self.attempts + self.audio + self.difficulty_updates + self.reward_transactions


@dataclass
class PendingCounts:
    """Records not yet synced and not failed, per category."""
    attempts: int = 0
    audio: int = 0
    difficulty_updates: int = 0
    reward_transactions: int = 0
    failed: FailedBreakdown = field(default_factory=FailedBreakdown)

    @property
    def total(self) -> int:
        return self.attempts + self.audio + self.difficulty_updates + self.reward_transactions

    def as_dict(self) -> Dict[str, object]:
        return {
            "attempts": self.attempts,
            "audio": self.audio,
            "difficulty_updates": self.difficulty_updates,
            "reward_transactions": self.reward_transactions,
            "total": self.total,
            "failed": {
                "attempts": self.failed.attempts,
                "audio": self.failed.audio,
                "difficulty_updates": self.failed.difficulty_updates,
                "reward_transactions": self.failed.reward_transactions,
                "total": self.failed.total,
            },
        }


@dataclass
class SyncResult:
    """Outcome of one sync pass."""
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    ran: bool = True
    transient_failures: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        """True when the pass ran and nothing went wrong."""
        return self.ran and self.failed == 0 and self.transient_failures == 0


@dataclass
class FailedItem:
    """A permanently failed record shown on the parent resolution screen."""
    category: str
    id: int
    retry_count: int
    last_error: Optional[str]
    created_at: Optional[str]
    learner_id: Optional[str] = None
    word_id: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class AttemptExtras:
    """Optional details recorded alongside an attempt."""
    typed_answer: Optional[str] = None
    is_first_try: bool = True
    used_hint: bool = False
    audio_content: Optional[bytes] = None
    audio_filename: Optional[str] = None
    audio_content_type: str = "audio/webm"
