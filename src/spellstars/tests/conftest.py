"""Test configuration."""
import asyncio
import os
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

import pytest
from dotenv import load_dotenv
from faker import Faker

# Set test environment before any imports
os.environ["ENV"] = "test"
os.environ.setdefault("QUEUE_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SUPABASE_URL", "")

# Load test environment variables
test_env_path = Path(__file__).parent.parent.parent.parent / ".env.test"
load_dotenv(test_env_path)

# Import after environment setup
from sqlalchemy.orm import Session

from spellstars.errors import RemoteUnavailable
from spellstars.models.database import QueueDatabase
from spellstars.models.difficulty_models import DifficultyEntry, ScheduledWord, WordRef
from spellstars.services.queue_service import QueueService
from spellstars.services.remote_store import RemoteStore


class FakeRemoteStore(RemoteStore):
    """In-memory remote store that counts calls and can be told to fail."""

    def __init__(self):
        self.entries: Dict[Tuple[str, str], DifficultyEntry] = {}
        self.words: List[WordRef] = []
        self.lists: Dict[str, List[WordRef]] = {}
        self.attempts: Dict[str, Dict[str, Any]] = {}
        self.awards: Dict[str, int] = {}
        self.award_keys: List[Optional[str]] = []
        self.totals: Dict[str, int] = defaultdict(int)
        self.audio: Dict[str, bytes] = {}
        self.remote_batch: List[ScheduledWord] = []
        self.calls: Counter = Counter()
        self.failures: Dict[str, Exception] = {}
        self.lost_responses: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def fail(self, method: str, error: Optional[Exception] = None) -> None:
        """Make every call to method raise before it has any effect."""
        self.failures[method] = error or RemoteUnavailable(f"{method} unavailable")

    def lose_response(self, method: str) -> None:
        """Make calls to method take effect, then raise as if the reply was lost."""
        self.lost_responses[method] = RemoteUnavailable(f"{method} response lost")

    def recover(self) -> None:
        self.failures.clear()
        self.lost_responses.clear()

    def add_list(self, list_id: str, words: List[WordRef]) -> None:
        self.lists[list_id] = list(words)
        for word in words:
            if word not in self.words:
                self.words.append(word)

    async def _call(self, method: str) -> None:
        self.calls[method] += 1
        hook = self.hooks.get(method)
        if hook is not None:
            hook()
        gate = self.gates.get(method)
        if gate is not None:
            await gate.wait()
        error = self.failures.get(method)
        if error is not None:
            raise error

    def _after(self, method: str) -> None:
        error = self.lost_responses.get(method)
        if error is not None:
            raise error

    async def get_difficulty_entry(self, learner_id: str, word_id: str) -> Optional[DifficultyEntry]:
        await self._call("get_difficulty_entry")
        return self.entries.get((learner_id, word_id))

    async def upsert_difficulty_entry(self, entry: DifficultyEntry) -> DifficultyEntry:
        await self._call("upsert_difficulty_entry")
        self.entries[(entry.learner_id, entry.word_id)] = entry
        self._after("upsert_difficulty_entry")
        return entry

    async def list_difficulty_entries(self, learner_id: str) -> List[DifficultyEntry]:
        await self._call("list_difficulty_entries")
        return [entry for (learner, _), entry in self.entries.items() if learner == learner_id]

    async def list_scope_words(self, list_id: Optional[str] = None) -> List[WordRef]:
        await self._call("list_scope_words")
        if list_id is None:
            return list(self.words)
        return list(self.lists.get(list_id, []))

    async def find_lists_for_word(self, word_id: str) -> List[str]:
        await self._call("find_lists_for_word")
        return [
            list_id
            for list_id, words in self.lists.items()
            if any(word.word_id == word_id for word in words)
        ]

    async def get_next_batch_remote(self, learner_id, list_id, limit, strict_mode) -> List[ScheduledWord]:
        await self._call("get_next_batch_remote")
        return self.remote_batch[:limit]

    async def insert_attempt(self, attempt: Dict[str, Any]) -> Dict[str, Any]:
        await self._call("insert_attempt")
        self.attempts.setdefault(attempt["client_id"], dict(attempt))
        self._after("insert_attempt")
        return attempt

    async def award_reward_points(self, user_id, amount, reason, idempotency_key=None) -> int:
        self.award_keys.append(idempotency_key)
        await self._call("award_reward_points")
        if idempotency_key is None or idempotency_key not in self.awards:
            self.totals[user_id] += amount
            if idempotency_key is not None:
                self.awards[idempotency_key] = amount
        self._after("award_reward_points")
        return self.totals[user_id]

    async def upload_audio(self, filename: str, content: bytes, content_type: str) -> str:
        await self._call("upload_audio")
        self.audio[filename] = content
        return f"recordings/{filename}"


@pytest.fixture
def fake() -> Faker:
    """Create a Faker instance."""
    return Faker()


@pytest.fixture
def database() -> Generator[QueueDatabase, None, None]:
    """Create a fresh in-memory queue database for each test."""
    database = QueueDatabase("sqlite:///:memory:")
    database.open()
    try:
        yield database
    finally:
        database.close()


@pytest.fixture
def db(database: QueueDatabase) -> Generator[Session, None, None]:
    """Create a database session for each test."""
    yield from database.get_db()


@pytest.fixture
def queue(db: Session) -> QueueService:
    """Create a queue service instance."""
    return QueueService(db)


@pytest.fixture
def remote() -> FakeRemoteStore:
    """Create an in-memory remote store."""
    return FakeRemoteStore()
