"""Service the practice screens call to record results and fetch batches."""
import asyncio
import logging
from datetime import date
from typing import List, Optional, Set, Tuple

from spellstars.errors import DataUnavailable, InvalidQueueRecord
from spellstars.models.difficulty_models import ScheduledWord
from spellstars.models.models import QueuedAttempt, new_client_id
from spellstars.models.sync_models import AttemptExtras, FailedItem, PendingCounts
from spellstars.services.connectivity import ConnectivityMonitor
from spellstars.services.difficulty import DifficultyModel, compute_attempt_quality
from spellstars.services.learning_service import LearningService
from spellstars.services.queue_service import QueueService
from spellstars.services.remote_store import RemoteStore

logger = logging.getLogger(__name__)


class PracticeService:
    """Routes practice results to the remote store or the local queue.

    Nothing here waits for the network. Online writes run as background
    tasks; whatever they fail to deliver is queued for the sync engine.
    """

    def __init__(
        self,
        queue: QueueService,
        remote: Optional[RemoteStore],
        connectivity: ConnectivityMonitor,
        learning: Optional[LearningService] = None,
        model: Optional[DifficultyModel] = None,
    ):
        """Initialize the service with the queue and the remote store."""
        self.queue = queue
        self.remote = remote
        self.connectivity = connectivity
        self.learning = learning or (LearningService(remote) if remote is not None else None)
        self.model = model or DifficultyModel()
        self._background: Set[asyncio.Task] = set()
        # Learner/word pairs with a direct difficulty write in flight
        self._in_flight: Set[Tuple[str, str]] = set()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background write failed: %s", task.exception())

    @property
    def background_writes(self) -> int:
        return len(self._background)

    async def wait_for_background_writes(self) -> None:
        """Wait until every background write has delivered or been queued."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _should_queue(self, learner_id: str, word_id: str, list_id: Optional[str]) -> bool:
        if self.remote is None or not self.connectivity.online:
            return True
        if not list_id:
            return True
        # Keep updates for one word in order behind anything already queued
        if (learner_id, word_id) in self._in_flight:
            return True
        return self.queue.has_pending_difficulty_update(learner_id, word_id)

    async def record_attempt(
        self,
        learner_id: str,
        word_id: str,
        list_id: Optional[str],
        mode: str,
        correct: bool,
        extras: Optional[AttemptExtras] = None,
    ) -> None:
        """Record a practice attempt and the difficulty change it causes.

        Raises InvalidQueueRecord when the attempt is malformed; nothing is
        written in that case.
        """
        extras = extras or AttemptExtras()
        attempt = self.queue.build_attempt(
            learner_id,
            word_id,
            list_id,
            mode,
            correct,
            quality=compute_attempt_quality(correct, extras.is_first_try, extras.used_hint),
            typed_answer=extras.typed_answer,
        )
        if extras.audio_content is not None and not extras.audio_filename:
            raise InvalidQueueRecord("audio_filename is required with audio content")
        is_correct_first_try = bool(correct) and extras.is_first_try

        if self._should_queue(learner_id, word_id, list_id):
            self._queue_attempt(attempt, extras)
            self.queue.enqueue_difficulty_update(learner_id, word_id, is_correct_first_try)
            logger.info("Queued attempt %s for word %s", attempt.client_id, word_id)
            return

        self._in_flight.add((learner_id, word_id))
        self._spawn(self._write_attempt(attempt, extras, is_correct_first_try))

    def _queue_attempt(self, attempt: QueuedAttempt, extras: AttemptExtras) -> None:
        if extras.audio_content is not None:
            audio = self.queue.enqueue_audio(
                extras.audio_filename,
                extras.audio_content,
                extras.audio_content_type,
            )
            attempt.audio_id = audio.id
        self.queue.add_attempt(attempt)

    async def _write_attempt(
        self,
        attempt: QueuedAttempt,
        extras: AttemptExtras,
        is_correct_first_try: bool,
    ) -> None:
        """Write an attempt straight to the remote store, queueing what fails."""
        key = (attempt.learner_id, attempt.word_id)
        try:
            try:
                if extras.audio_content is not None:
                    attempt.audio_ref = await self.remote.upload_audio(
                        extras.audio_filename,
                        extras.audio_content,
                        extras.audio_content_type,
                    )
                await self.remote.insert_attempt(attempt.to_row())
                logger.debug("Wrote attempt %s to the remote store", attempt.client_id)
            except Exception as e:
                logger.warning("Direct write of attempt %s failed, queueing: %s", attempt.client_id, e)
                if attempt.audio_ref is not None:
                    # The upload went through; only the row is missing
                    extras = AttemptExtras()
                self._queue_attempt(attempt, extras)

            entry = None
            try:
                current = await self.remote.get_difficulty_entry(*key)
                entry = self.model.apply(is_correct_first_try, current, *key)
                await self.remote.upsert_difficulty_entry(entry)
            except Exception as e:
                logger.warning("Direct difficulty update for word %s failed, queueing: %s", attempt.word_id, e)
                # Once computed, the entry is queued as is: the upsert may have landed
                self.queue.enqueue_difficulty_update(
                    attempt.learner_id, attempt.word_id, is_correct_first_try, target=entry
                )
        finally:
            self._in_flight.discard(key)

    async def award_points(self, user_id: str, amount: int, reason: str = "practice") -> None:
        """Award reward points, queueing the award when it cannot be delivered."""
        client_id = new_client_id()
        if self.remote is None or not self.connectivity.online:
            self.queue.enqueue_reward_transaction(user_id, amount, reason, client_id=client_id)
            return
        if not user_id:
            raise InvalidQueueRecord("user_id is required")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidQueueRecord(f"amount must be a positive integer, got {amount!r}")
        self._spawn(self._write_award(user_id, amount, reason, client_id))

    async def _write_award(self, user_id: str, amount: int, reason: str, client_id: str) -> None:
        try:
            total = await self.remote.award_reward_points(user_id, amount, reason, idempotency_key=client_id)
            logger.info("Awarded %d points to user %s, total %d", amount, user_id, total)
        except Exception as e:
            logger.warning("Direct award for user %s failed, queueing: %s", user_id, e)
            # Same key, so a lost response that actually landed is not applied twice
            self.queue.enqueue_reward_transaction(user_id, amount, reason, client_id=client_id)

    async def get_next_batch(
        self,
        learner_id: str,
        list_id: Optional[str] = None,
        limit: Optional[int] = None,
        strict_mode: bool = False,
        today: Optional[date] = None,
    ) -> List[ScheduledWord]:
        """Next practice batch. Raises DataUnavailable when it cannot be computed."""
        if self.learning is None:
            raise DataUnavailable("No remote store configured")
        return await self.learning.get_next_batch(learner_id, list_id, limit, strict_mode, today=today)

    def get_pending_sync_counts(self) -> PendingCounts:
        return self.queue.get_pending_counts()

    def list_failed_sync_items(self) -> List[FailedItem]:
        return self.queue.list_failed_items()

    def retry_failed_sync_item(self, category: str, record_id: int) -> None:
        self.queue.retry_failed_item(category, record_id)

    def reassign_failed_attempt_list(self, attempt_id: int, list_id: str) -> None:
        self.queue.reassign_failed_attempt_list(attempt_id, list_id)

    def clear_failed_sync_items(self) -> int:
        return self.queue.clear_failed_items()
