"""Learning service for choosing which words a learner practices next."""
import logging
import math
import random
from datetime import date, timedelta
from typing import List, Optional, Sequence

from spellstars import monitoring
from spellstars.config import DifficultySettings, SchedulerSettings, settings
from spellstars.errors import DataUnavailable, RemoteError
from spellstars.models.base import utc_now
from spellstars.models.difficulty_models import BatchType, DifficultyEntry, ScheduledWord, WordRef
from spellstars.services.remote_store import RemoteStore

logger = logging.getLogger(__name__)


def is_leech(entry: DifficultyEntry, scheduler_settings: Optional[SchedulerSettings] = None) -> bool:
    """A word the learner keeps getting wrong."""
    scheduler_settings = scheduler_settings or settings.scheduler
    if entry.reviews < scheduler_settings.leech_min_reviews:
        return False
    return (
        entry.lapses >= scheduler_settings.leech_lapses
        or entry.ease <= scheduler_settings.leech_max_ease
        or entry.error_rate >= scheduler_settings.leech_error_rate
    )


def select_batch(
    learner_id: str,
    entries: Sequence[DifficultyEntry],
    scope_words: Sequence[WordRef],
    limit: int,
    strict_mode: bool = False,
    today: Optional[date] = None,
    scheduler_settings: Optional[SchedulerSettings] = None,
    difficulty_settings: Optional[DifficultySettings] = None,
) -> List[ScheduledWord]:
    """Compose a practice batch from a learner's difficulty entries.

    Due words come first (oldest due date, then lowest ease). Outside
    strict mode a share of the batch goes to leeches, a share to words
    due in the next few days, and the rest to words never attempted.

    Args:
        learner_id: Learner the batch is for, also seeds leech sampling
        entries: The learner's difficulty entries within scope
        scope_words: Words of the list (or all words) in list order
        limit: Maximum batch size
        strict_mode: Only return words that are due
        today: Date the batch is computed for
        difficulty_settings: Source of the ease shown for new words

    Returns:
        At most ``limit`` scheduled words, no word twice.
    """
    scheduler_settings = scheduler_settings or settings.scheduler
    difficulty_settings = difficulty_settings or settings.difficulty
    today = today or utc_now().date()
    if limit <= 0:
        return []

    texts = {word.word_id: word.text for word in scope_words}
    due = sorted(
        (entry for entry in entries if entry.due_date <= today),
        key=lambda entry: (entry.due_date, entry.ease),
    )
    batch = [ScheduledWord.from_entry(entry, BatchType.DUE, texts.get(entry.word_id)) for entry in due]
    if strict_mode:
        return batch[:limit]

    chosen = {entry.word_id for entry in due}

    # Seeded per learner and day so a batch is stable across reloads
    leeches = sorted(
        (entry for entry in entries if entry.word_id not in chosen and is_leech(entry, scheduler_settings)),
        key=lambda entry: entry.word_id,
    )
    leech_count = min(math.ceil(limit * scheduler_settings.leech_fraction), len(leeches))
    rng = random.Random(f"{learner_id}:{today.isoformat()}")
    sampled = sorted(
        rng.sample(leeches, leech_count),
        key=lambda entry: (-entry.error_rate, -entry.lapses),
    )
    for entry in sampled:
        batch.append(ScheduledWord.from_entry(entry, BatchType.LEECH, texts.get(entry.word_id)))
        chosen.add(entry.word_id)

    horizon = today + timedelta(days=scheduler_settings.review_window_days)
    upcoming = sorted(
        (
            entry
            for entry in entries
            if entry.word_id not in chosen and today < entry.due_date <= horizon
        ),
        key=lambda entry: (entry.due_date, entry.ease),
    )
    review_count = math.ceil(limit * scheduler_settings.review_fraction)
    for entry in upcoming[:review_count]:
        batch.append(ScheduledWord.from_entry(entry, BatchType.REVIEW, texts.get(entry.word_id)))
        chosen.add(entry.word_id)

    known = {entry.word_id for entry in entries}
    for word in scope_words:
        if len(batch) >= limit:
            break
        if word.word_id in known or word.word_id in chosen:
            continue
        batch.append(
            ScheduledWord(
                word_id=word.word_id,
                batch_type=BatchType.NEW,
                due_date=today,
                ease=difficulty_settings.default_ease,
                interval_days=0,
                reps=0,
                lapses=0,
                word_text=word.text,
            )
        )
        chosen.add(word.word_id)

    return batch[:limit]


class LearningService:
    """Service for practice batches and difficulty reports."""

    def __init__(
        self,
        remote: RemoteStore,
        scheduler_settings: Optional[SchedulerSettings] = None,
        difficulty_settings: Optional[DifficultySettings] = None,
    ):
        """Initialize the service with the remote difficulty store."""
        self.remote = remote
        self.settings = scheduler_settings or settings.scheduler
        self.difficulty_settings = difficulty_settings or settings.difficulty

    async def _load_entries(self, learner_id: str) -> List[DifficultyEntry]:
        try:
            return await self.remote.list_difficulty_entries(learner_id)
        except RemoteError as e:
            logger.error("Failed to load difficulty entries for learner %s: %s", learner_id, e)
            raise DataUnavailable(f"Difficulty data for learner {learner_id} is unavailable") from e

    async def get_next_batch(
        self,
        learner_id: str,
        list_id: Optional[str] = None,
        limit: Optional[int] = None,
        strict_mode: bool = False,
        today: Optional[date] = None,
    ) -> List[ScheduledWord]:
        """Get the next practice batch for a learner.

        Raises DataUnavailable when the remote store cannot be read; there
        is no local fallback.
        """
        limit = self.settings.batch_limit if limit is None else limit
        monitoring.batch_requests.labels(strict_mode=str(strict_mode).lower()).inc()
        if limit <= 0:
            return []

        if self.settings.server_side:
            try:
                return await self.remote.get_next_batch_remote(learner_id, list_id, limit, strict_mode)
            except RemoteError as e:
                logger.error("Remote batch selection failed for learner %s: %s", learner_id, e)
                raise DataUnavailable(f"Practice batch for learner {learner_id} is unavailable") from e

        entries = await self._load_entries(learner_id)
        try:
            scope_words = await self.remote.list_scope_words(list_id)
        except RemoteError as e:
            logger.error("Failed to load words of list %s: %s", list_id, e)
            raise DataUnavailable(f"Words of list {list_id} are unavailable") from e

        if list_id is not None:
            in_scope = {word.word_id for word in scope_words}
            entries = [entry for entry in entries if entry.word_id in in_scope]

        batch = select_batch(
            learner_id,
            entries,
            scope_words,
            limit,
            strict_mode=strict_mode,
            today=today,
            scheduler_settings=self.settings,
            difficulty_settings=self.difficulty_settings,
        )
        logger.info(
            "Selected %d words for learner %s (list %s, strict=%s)",
            len(batch),
            learner_id,
            list_id,
            strict_mode,
        )
        return batch

    async def get_hardest_words(self, learner_id: str, limit: Optional[int] = None) -> List[DifficultyEntry]:
        """Entries with the lowest ease, most lapses first on ties."""
        limit = self.settings.report_limit if limit is None else limit
        entries = await self._load_entries(learner_id)
        entries.sort(key=lambda entry: (entry.ease, -entry.lapses))
        return entries[:max(limit, 0)]

    async def get_most_lapsed_words(self, learner_id: str, limit: Optional[int] = None) -> List[DifficultyEntry]:
        """Entries with the most lapses, lowest ease first on ties."""
        limit = self.settings.report_limit if limit is None else limit
        entries = await self._load_entries(learner_id)
        entries.sort(key=lambda entry: (-entry.lapses, entry.ease))
        return entries[:max(limit, 0)]
