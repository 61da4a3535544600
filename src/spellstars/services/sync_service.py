"""Sync engine draining the local queue into the remote store."""
import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from spellstars import monitoring
from spellstars.config import SyncSettings, settings
from spellstars.errors import RemoteError
from spellstars.models.base import utc_now
from spellstars.models.models import (
    QueuedAttempt,
    QueuedAudio,
    QueuedDifficultyUpdate,
    QueuedRewardTransaction,
)
from spellstars.models.sync_models import EnrichmentOutcome, SyncResult
from spellstars.services.difficulty import DifficultyModel
from spellstars.services.queue_service import QueueService
from spellstars.services.remote_store import RemoteStore

logger = logging.getLogger(__name__)


class SyncService:
    """Drains queued audio, attempts, difficulty updates and rewards.

    Only one pass runs at a time. Records are processed oldest first
    within each category. Remote writes are keyed so that re-sending a
    record after a crash or a lost response has no second effect.
    """

    def __init__(
        self,
        queue: QueueService,
        remote: RemoteStore,
        model: Optional[DifficultyModel] = None,
        sync_settings: Optional[SyncSettings] = None,
    ):
        """Initialize the service with the queue it drains and the remote store."""
        self.queue = queue
        self.remote = remote
        self.model = model or DifficultyModel()
        self.settings = sync_settings or settings.sync
        self.consecutive_failures = 0
        self.last_result: Optional[SyncResult] = None
        self.last_sync_at: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self._cancel_requested = False
        # (learner_id, word_id) pairs whose earlier update did not land this pass
        self._held_words: Set[Tuple[str, str]] = set()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def cancel(self) -> None:
        """Ask a running pass to stop before its next record."""
        if self.in_progress:
            self._cancel_requested = True
            logger.info("Sync cancellation requested")

    def next_delay(self) -> float:
        """Seconds to wait before the next pass."""
        if self.consecutive_failures == 0:
            return self.settings.interval_seconds
        delay = self.settings.backoff_base_seconds * 2 ** (self.consecutive_failures - 1)
        return min(delay, self.settings.backoff_max_seconds)

    async def sync_queued_data(self) -> SyncResult:
        """Run one pass over every queue category."""
        if self._lock.locked():
            logger.warning("Sync already in progress")
            return SyncResult(ran=False)

        async with self._lock:
            self._cancel_requested = False
            self._held_words.clear()
            result = SyncResult()
            started = time.monotonic()
            monitoring.sync_in_progress.set(1)
            logger.info("Starting sync of queued data...")
            try:
                # Audio first: attempts reference the uploaded recordings
                for category, load, handler in (
                    ("audio", self.queue.pending_audio, self._sync_audio),
                    ("attempts", self.queue.pending_attempts, self._sync_attempt),
                    ("difficulty_updates", self.queue.pending_difficulty_updates, self._sync_difficulty_update),
                    ("reward_transactions", self.queue.pending_reward_transactions, self._sync_reward_transaction),
                ):
                    if not await self._drain(category, load(), handler, result):
                        break
            finally:
                monitoring.sync_in_progress.set(0)
                monitoring.sync_duration.observe(time.monotonic() - started)

            if result.transient_failures:
                self.consecutive_failures += 1
            else:
                self.consecutive_failures = 0
            self.last_result = result
            self.last_sync_at = utc_now()
            logger.info(
                "Sync finished: %d succeeded, %d failed, %d skipped",
                result.succeeded,
                result.failed,
                result.skipped,
            )
            return result

    async def _drain(self, category: str, records: List, handler, result: SyncResult) -> bool:
        """Process one category. Returns False when the pass was cancelled."""
        if records:
            logger.info("Syncing %d %s...", len(records), category)
        for index, record in enumerate(records):
            if self._cancel_requested:
                result.skipped += len(records) - index
                logger.info("Sync cancelled with %d %s left", len(records) - index, category)
                return False
            if not record.pending:
                result.skipped += 1
                continue
            await handler(record, result)
        return True

    async def _write(
        self,
        category: str,
        record,
        write: Callable[[], Awaitable[None]],
        result: SyncResult,
    ) -> None:
        """Run one remote write and move the record to its next state."""
        record.mark_syncing()
        self.queue.save()
        try:
            await write()
        except asyncio.CancelledError:
            record.release()
            self.queue.save()
            raise
        except Exception as e:
            if not isinstance(e, RemoteError):
                logger.exception("Unexpected error syncing %s record %s", category, record.id)
            gave_up = record.record_failure(str(e), self.settings.max_retries)
            self.queue.save()
            result.failed += 1
            result.errors.append(f"{category} {record.id}: {e}")
            if gave_up:
                monitoring.items_failed.labels(category=category).inc()
                logger.error("Giving up on %s record %s: %s", category, record.id, record.last_error)
            else:
                result.transient_failures += 1
                logger.warning(
                    "Failed to sync %s record %s (retry %d/%d): %s",
                    category,
                    record.id,
                    record.retry_count,
                    self.settings.max_retries,
                    e,
                )
            return

        record.mark_synced()
        self.queue.save()
        result.succeeded += 1
        monitoring.items_synced.labels(category=category).inc()
        logger.debug("Successfully synced %s record %s", category, record.id)

    async def _sync_audio(self, audio: QueuedAudio, result: SyncResult) -> None:
        async def write() -> None:
            audio.storage_path = await self.remote.upload_audio(
                audio.filename, audio.content, audio.content_type
            )

        await self._write("audio", audio, write, result)

    async def _sync_attempt(self, attempt: QueuedAttempt, result: SyncResult) -> None:
        if not attempt.list_id:
            outcome = await self.queue.enrich_attempt(attempt, self.remote)
            if outcome is EnrichmentOutcome.AMBIGUOUS:
                result.failed += 1
                result.errors.append(f"attempts {attempt.id}: {attempt.last_error}")
                return
            if outcome is EnrichmentOutcome.RETRY:
                result.skipped += 1
                result.transient_failures += 1
                return

        audio = attempt.audio
        if audio is not None and not attempt.audio_ref:
            if audio.pending:
                logger.debug("Attempt %s waits for audio %s", attempt.id, audio.id)
                result.skipped += 1
                return
            if audio.synced:
                attempt.audio_ref = audio.storage_path
            else:
                logger.warning(
                    "Audio %s failed to upload; syncing attempt %s without it", audio.id, attempt.id
                )

        async def write() -> None:
            await self.remote.insert_attempt(attempt.to_row())

        await self._write("attempts", attempt, write, result)

    async def _sync_difficulty_update(self, update: QueuedDifficultyUpdate, result: SyncResult) -> None:
        key = (update.learner_id, update.word_id)
        if key in self._held_words:
            # Applying it before the earlier update lands would reorder them
            logger.debug("Difficulty update %s waits for an earlier update of word %s", update.id, update.word_id)
            result.skipped += 1
            return

        async def write() -> None:
            entry = update.target_entry()
            if entry is None:
                current = await self.remote.get_difficulty_entry(update.learner_id, update.word_id)
                entry = self.model.apply(
                    update.is_correct_first_try,
                    current,
                    update.learner_id,
                    update.word_id,
                )
                # Retries resend this entry instead of applying the transform again
                update.set_target(entry)
                self.queue.save()
            await self.remote.upsert_difficulty_entry(entry)

        await self._write("difficulty_updates", update, write, result)
        if update.pending:
            self._held_words.add(key)

    async def _sync_reward_transaction(self, transaction: QueuedRewardTransaction, result: SyncResult) -> None:
        async def write() -> None:
            total = await self.remote.award_reward_points(
                transaction.user_id,
                transaction.amount,
                transaction.reason,
                idempotency_key=transaction.client_id,
            )
            logger.debug("User %s now has %d points", transaction.user_id, total)

        await self._write("reward_transactions", transaction, write, result)
