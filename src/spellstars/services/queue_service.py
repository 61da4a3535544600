"""Service for the on-device queue of practice results awaiting sync."""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Type

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from spellstars import monitoring
from spellstars.errors import (
    InvalidQueueRecord,
    QueueItemNotFound,
    RemoteError,
)
from spellstars.models.base import ensure_utc, utc_now
from spellstars.models.difficulty_models import DifficultyEntry
from spellstars.models.models import (
    QUEUE_MODELS,
    QueuedAttempt,
    QueuedAudio,
    QueuedDifficultyUpdate,
    QueuedRewardTransaction,
    new_client_id,
)
from spellstars.models.sync_models import (
    EnrichmentOutcome,
    FailedBreakdown,
    FailedItem,
    PendingCounts,
)
from spellstars.services.remote_store import RemoteStore

logger = logging.getLogger(__name__)


def _require(value: Optional[str], name: str) -> None:
    if not value or not str(value).strip():
        raise InvalidQueueRecord(f"{name} is required")


class QueueService:
    """Producer and bookkeeping side of the local sync queue.

    Every enqueue is a single-row commit, so a record is either fully
    written or absent. Nothing is de-duplicated here; retried remote
    writes are made safe by idempotency keys instead.
    """

    def __init__(self, db: Session):
        """Initialize the service with a database session."""
        self.db = db

    def _commit_new(self, record, category: str):
        self.db.add(record)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(record)
        monitoring.items_queued.labels(category=category).inc()
        logger.debug("Queued %s record %d", category, record.id)
        return record

    def save(self) -> None:
        """Commit state changes made to records loaded through this service."""
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    # Enqueue

    @staticmethod
    def build_attempt(
        learner_id: str,
        word_id: str,
        list_id: Optional[str],
        mode: str,
        correct: bool,
        quality: Optional[int] = None,
        typed_answer: Optional[str] = None,
        audio_id: Optional[int] = None,
        audio_ref: Optional[str] = None,
        started_at: Optional[datetime] = None,
        client_id: Optional[str] = None,
    ) -> QueuedAttempt:
        """Validate and build an attempt without persisting it."""
        _require(learner_id, "learner_id")
        _require(word_id, "word_id")
        _require(mode, "mode")
        if quality is not None and not 0 <= quality <= 5:
            raise InvalidQueueRecord(f"quality must be between 0 and 5, got {quality}")
        attempt = QueuedAttempt(
            learner_id=learner_id,
            word_id=word_id,
            list_id=list_id or None,
            mode=mode,
            correct=bool(correct),
            quality=quality,
            typed_answer=typed_answer,
            audio_id=audio_id,
            audio_ref=audio_ref,
            started_at=started_at or utc_now(),
            client_id=client_id or new_client_id(),
        )
        return attempt

    def add_attempt(self, attempt: QueuedAttempt) -> QueuedAttempt:
        """Persist an attempt built with build_attempt."""
        return self._commit_new(attempt, "attempts")

    def enqueue_attempt(self, learner_id: str, word_id: str, list_id: Optional[str], mode: str,
                        correct: bool, **extras) -> QueuedAttempt:
        """Queue a practice attempt. A missing list is inferred at sync time."""
        return self.add_attempt(
            self.build_attempt(learner_id, word_id, list_id, mode, correct, **extras)
        )

    def enqueue_audio(self, filename: str, content: bytes,
                      content_type: str = "audio/webm") -> QueuedAudio:
        """Queue a recording for upload."""
        _require(filename, "filename")
        if not content:
            raise InvalidQueueRecord("audio content is empty")
        audio = QueuedAudio(filename=filename, content=content, content_type=content_type)
        return self._commit_new(audio, "audio")

    def enqueue_difficulty_update(self, learner_id: str, word_id: str, is_correct_first_try: bool,
                                  target: Optional[DifficultyEntry] = None) -> QueuedDifficultyUpdate:
        """Queue a difficulty transform to apply remotely.

        Pass target when the resulting entry is already known, for example
        when a direct upsert may have landed without a reply.
        """
        _require(learner_id, "learner_id")
        _require(word_id, "word_id")
        update = QueuedDifficultyUpdate(
            learner_id=learner_id,
            word_id=word_id,
            is_correct_first_try=bool(is_correct_first_try),
        )
        if target is not None:
            update.set_target(target)
        return self._commit_new(update, "difficulty_updates")

    def enqueue_reward_transaction(self, user_id: str, amount: int, reason: str = "practice",
                                   client_id: Optional[str] = None) -> QueuedRewardTransaction:
        """Queue a reward point award."""
        _require(user_id, "user_id")
        _require(reason, "reason")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidQueueRecord(f"amount must be a positive integer, got {amount!r}")
        transaction = QueuedRewardTransaction(
            user_id=user_id,
            amount=amount,
            reason=reason,
            client_id=client_id or new_client_id(),
        )
        return self._commit_new(transaction, "reward_transactions")

    # Reads

    def _pending(self, model: Type) -> List:
        return self.db.query(model).filter(model.pending).order_by(model.id).all()

    def pending_audio(self) -> List[QueuedAudio]:
        return self._pending(QueuedAudio)

    def pending_attempts(self) -> List[QueuedAttempt]:
        return self._pending(QueuedAttempt)

    def pending_difficulty_updates(self) -> List[QueuedDifficultyUpdate]:
        return self._pending(QueuedDifficultyUpdate)

    def pending_reward_transactions(self) -> List[QueuedRewardTransaction]:
        return self._pending(QueuedRewardTransaction)

    def has_pending_difficulty_update(self, learner_id: str, word_id: str) -> bool:
        """Whether a queued update would be overtaken by a direct remote write."""
        return (
            self.db.query(QueuedDifficultyUpdate.id)
            .filter(
                QueuedDifficultyUpdate.learner_id == learner_id,
                QueuedDifficultyUpdate.word_id == word_id,
                QueuedDifficultyUpdate.pending,
            )
            .first()
            is not None
        )

    def _count(self, model: Type, condition) -> int:
        return self.db.query(func.count(model.id)).filter(condition).scalar() or 0

    def get_pending_counts(self) -> PendingCounts:
        """Exact number of unsynced records per category, plus failures."""
        pending = {
            category: self._count(model, model.pending)
            for category, model in QUEUE_MODELS.items()
        }
        failed = {
            category: self._count(model, model.failed)
            for category, model in QUEUE_MODELS.items()
        }
        for category, count in pending.items():
            monitoring.pending_items.labels(category=category).set(count)
        return PendingCounts(failed=FailedBreakdown(**failed), **pending)

    # List enrichment

    async def enrich_attempt(self, attempt: QueuedAttempt, remote: RemoteStore) -> EnrichmentOutcome:
        """Infer the list of an attempt queued without one.

        Exactly one containing list patches the record. Zero or several
        lists fail it for a parent to resolve. A failed lookup leaves it
        pending with the error recorded.
        """
        try:
            list_ids = await remote.find_lists_for_word(attempt.word_id)
        except RemoteError as e:
            attempt.last_error = f"List lookup failed for word {attempt.word_id}: {e}"
            self.save()
            logger.warning("Could not look up lists for attempt %s: %s", attempt.id, e)
            return EnrichmentOutcome.RETRY

        if len(list_ids) == 1:
            attempt.list_id = list_ids[0]
            attempt.last_error = None
            self.save()
            logger.info("Inferred list %s for attempt %s", attempt.list_id, attempt.id)
            return EnrichmentOutcome.RESOLVED

        if not list_ids:
            error = f"Word {attempt.word_id} is not in any list; assign a list manually"
        else:
            error = (
                f"Word {attempt.word_id} belongs to {len(list_ids)} lists "
                f"({', '.join(list_ids)}); assign a list manually"
            )
        attempt.mark_failed(error)
        self.save()
        monitoring.items_failed.labels(category="attempts").inc()
        logger.warning("Attempt %s failed list inference: %s", attempt.id, error)
        return EnrichmentOutcome.AMBIGUOUS

    async def migrate_pending_records(self, remote: RemoteStore) -> Dict[EnrichmentOutcome, int]:
        """Fill lists on pending attempts queued before the list was required."""
        outcomes = {outcome: 0 for outcome in EnrichmentOutcome}
        attempts = (
            self.db.query(QueuedAttempt)
            .filter(QueuedAttempt.pending, QueuedAttempt.list_id.is_(None))
            .order_by(QueuedAttempt.id)
            .all()
        )
        for attempt in attempts:
            outcomes[await self.enrich_attempt(attempt, remote)] += 1
        if attempts:
            logger.info(
                "Queue migration: %d resolved, %d need a parent, %d will retry",
                outcomes[EnrichmentOutcome.RESOLVED],
                outcomes[EnrichmentOutcome.AMBIGUOUS],
                outcomes[EnrichmentOutcome.RETRY],
            )
        return outcomes

    # Manual resolution

    def _get(self, category: str, record_id: int):
        model = QUEUE_MODELS.get(category)
        if model is None:
            raise InvalidQueueRecord(f"Unknown queue category {category!r}")
        record = self.db.get(model, record_id)
        if record is None:
            raise QueueItemNotFound(f"No queued {category} record with id {record_id}")
        return record

    def list_failed_items(self) -> List[FailedItem]:
        """Every permanently failed record, oldest first within a category."""
        items = []
        for category, model in QUEUE_MODELS.items():
            for record in self.db.query(model).filter(model.failed).order_by(model.id).all():
                created_at = ensure_utc(record.created_at)
                item = FailedItem(
                    category=category,
                    id=record.id,
                    retry_count=record.retry_count,
                    last_error=record.last_error,
                    created_at=created_at.isoformat() if created_at else None,
                )
                if isinstance(record, QueuedAudio):
                    item.detail = record.filename
                elif isinstance(record, QueuedAttempt):
                    item.learner_id, item.word_id, item.detail = record.learner_id, record.word_id, record.mode
                elif isinstance(record, QueuedDifficultyUpdate):
                    item.learner_id, item.word_id = record.learner_id, record.word_id
                else:
                    item.learner_id, item.detail = record.user_id, record.reason
                items.append(item)
        return items

    def retry_failed_item(self, category: str, record_id: int) -> None:
        """Put a failed record back in the queue with a fresh retry budget."""
        record = self._get(category, record_id)
        if not record.failed:
            raise InvalidQueueRecord(f"{category} record {record_id} has not failed")
        record.reset()
        self.save()
        logger.info("Retrying failed %s record %d", category, record_id)

    def reassign_failed_attempt_list(self, attempt_id: int, list_id: str) -> None:
        """Give a failed attempt its list by hand and queue it again."""
        _require(list_id, "list_id")
        attempt = self._get("attempts", attempt_id)
        if not attempt.failed:
            raise InvalidQueueRecord(f"Attempt {attempt_id} has not failed")
        attempt.list_id = list_id
        attempt.reset()
        self.save()
        logger.info("Reassigned attempt %d to list %s", attempt_id, list_id)

    def clear_failed_items(self) -> int:
        """Drop every failed record. Returns how many were removed."""
        removed = 0
        for model in (QueuedAttempt, QueuedDifficultyUpdate, QueuedRewardTransaction):
            removed += self.db.query(model).filter(model.failed).delete(synchronize_session=False)
        removed += (
            self.db.query(QueuedAudio)
            .filter(QueuedAudio.failed, QueuedAudio.id.not_in(self._audio_in_use()))
            .delete(synchronize_session=False)
        )
        self.save()
        self.db.expire_all()
        logger.info("Cleared %d failed queue records", removed)
        return removed

    # Housekeeping

    def _audio_in_use(self):
        return select(QueuedAttempt.audio_id).where(QueuedAttempt.audio_id.is_not(None))

    def prune_synced(self, older_than: timedelta) -> int:
        """Delete synced records last touched before now - older_than."""
        cutoff = utc_now() - older_than
        removed = 0
        for model in (QueuedAttempt, QueuedDifficultyUpdate, QueuedRewardTransaction):
            removed += (
                self.db.query(model)
                .filter(model.synced, model.updated_at < cutoff)
                .delete(synchronize_session=False)
            )
        removed += (
            self.db.query(QueuedAudio)
            .filter(
                QueuedAudio.synced,
                QueuedAudio.updated_at < cutoff,
                QueuedAudio.id.not_in(self._audio_in_use()),
            )
            .delete(synchronize_session=False)
        )
        self.save()
        self.db.expire_all()
        if removed:
            logger.info("Pruned %d synced queue records", removed)
        return removed
