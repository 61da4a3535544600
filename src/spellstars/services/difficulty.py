"""Difficulty model: SM-2-lite scheduling of spelling words.

Pure transforms from an attempt outcome and a word's prior state to its
next state. Nothing here performs I/O or raises.
"""
import math
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Optional

from spellstars.config import DifficultySettings, settings
from spellstars.models.base import utc_now
from spellstars.models.difficulty_models import DifficultyEntry


def compute_attempt_quality(correct: bool, is_first_try: bool, used_hint: bool = False) -> int:
    """Grade an attempt 0-5 for analytics.

    5 = correct first try, 3 = correct first try after a hint,
    2 = correct on a later try, 1 = wrong.
    """
    if not correct:
        return 1
    if is_first_try:
        return 3 if used_hint else 5
    return 2


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _today() -> date:
    return utc_now().date()


class DifficultyModel:
    """Computes the next difficulty state of a word after an attempt."""

    __slots__ = ("default_ease", "min_ease", "success_step", "miss_step")

    def __init__(self, difficulty_settings: Optional[DifficultySettings] = None):
        difficulty_settings = difficulty_settings or settings.difficulty
        self.default_ease = difficulty_settings.default_ease
        self.min_ease = difficulty_settings.min_ease
        self.success_step = difficulty_settings.success_step
        self.miss_step = difficulty_settings.miss_step

    def new_entry(self, learner_id: str, word_id: str, today: Optional[date] = None) -> DifficultyEntry:
        return DifficultyEntry.new(learner_id, word_id, today or _today(), ease=self.default_ease)

    def on_success(
        self,
        entry: DifficultyEntry,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> DifficultyEntry:
        """Word spelled correctly on the first try.

        Ease grows without a ceiling. A word never scheduled before comes
        back tomorrow; otherwise the interval is multiplied by the new ease.
        """
        today = today or _today()
        ease = round(entry.ease + self.success_step, 2)
        if entry.interval_days == 0:
            interval = 1
        else:
            interval = max(1, _round_half_up(entry.interval_days * ease))
        return replace(
            entry,
            ease=ease,
            interval_days=interval,
            due_date=today + timedelta(days=interval),
            reps=entry.reps + 1,
            updated_at=now or utc_now(),
        )

    def on_miss(
        self,
        entry: DifficultyEntry,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> DifficultyEntry:
        """Word missed: ease drops to no lower than the floor, review tomorrow."""
        today = today or _today()
        ease = max(round(entry.ease - self.miss_step, 2), self.min_ease)
        return replace(
            entry,
            ease=ease,
            interval_days=1,
            due_date=today + timedelta(days=1),
            reps=0,
            lapses=entry.lapses + 1,
            updated_at=now or utc_now(),
        )

    def apply(
        self,
        is_correct_first_try: bool,
        entry: Optional[DifficultyEntry],
        learner_id: str,
        word_id: str,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> DifficultyEntry:
        """Apply an attempt outcome, treating an absent entry as a new word."""
        today = today or _today()
        if entry is None:
            entry = self.new_entry(learner_id, word_id, today)
        if is_correct_first_try:
            return self.on_success(entry, today=today, now=now)
        return self.on_miss(entry, today=today, now=now)
