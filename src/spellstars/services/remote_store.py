"""Client for the remote difficulty store (Supabase PostgREST over HTTPS)."""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from spellstars.config import RemoteSettings, settings
from spellstars.errors import RemoteRejected, RemoteUnavailable
from spellstars.models.difficulty_models import DifficultyEntry, ScheduledWord, WordRef
from spellstars import monitoring

logger = logging.getLogger(__name__)


class RemoteStore(ABC):
    """Abstract base class for the cloud database the queue drains into."""

    @abstractmethod
    async def get_difficulty_entry(self, learner_id: str, word_id: str) -> Optional[DifficultyEntry]:
        """Get the difficulty entry for a learner and word, if any."""

    @abstractmethod
    async def upsert_difficulty_entry(self, entry: DifficultyEntry) -> DifficultyEntry:
        """Insert or replace the entry keyed on learner and word."""

    @abstractmethod
    async def list_difficulty_entries(self, learner_id: str) -> List[DifficultyEntry]:
        """All difficulty entries of a learner."""

    @abstractmethod
    async def list_scope_words(self, list_id: Optional[str] = None) -> List[WordRef]:
        """Words of a list in list order, or every word when no list is given."""

    @abstractmethod
    async def find_lists_for_word(self, word_id: str) -> List[str]:
        """Ids of the lists containing a word."""

    @abstractmethod
    async def get_next_batch_remote(
        self,
        learner_id: str,
        list_id: Optional[str],
        limit: int,
        strict_mode: bool,
    ) -> List[ScheduledWord]:
        """Server-side batch selection."""

    @abstractmethod
    async def insert_attempt(self, attempt: Dict[str, Any]) -> Dict[str, Any]:
        """Insert an attempt; re-submitting the same client_id is a no-op."""

    @abstractmethod
    async def award_reward_points(
        self,
        user_id: str,
        amount: int,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> int:
        """Award points and return the user's new total."""

    @abstractmethod
    async def upload_audio(self, filename: str, content: bytes, content_type: str) -> str:
        """Upload a recording and return its storage path."""

    async def aclose(self) -> None:
        """Release network resources."""


class SupabaseStore(RemoteStore):
    """RemoteStore speaking PostgREST and Storage JSON APIs with httpx."""

    def __init__(
        self,
        remote_settings: Optional[RemoteSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        remote_settings = remote_settings or settings.remote
        if not remote_settings.url:
            raise ValueError("SUPABASE_URL is required")
        self.base_url = remote_settings.url.rstrip("/")
        self.audio_bucket = remote_settings.audio_bucket
        token = remote_settings.access_token or remote_settings.anon_key
        headers = {
            "apikey": remote_settings.anon_key,
            "Authorization": f"Bearer {token}",
        }
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=remote_settings.timeout_seconds,
        )
        self.client.headers.update(headers)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Send a request and map failures onto the remote error types."""
        try:
            response = await self.client.request(
                method,
                path,
                params=params,
                json=json,
                content=content,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            monitoring.remote_errors.labels(error_type="timeout").inc()
            raise RemoteUnavailable(f"Timed out calling {path}") from e
        except httpx.TransportError as e:
            monitoring.remote_errors.labels(error_type="network").inc()
            raise RemoteUnavailable(f"Network error calling {path}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            monitoring.remote_errors.labels(error_type="unavailable").inc()
            raise RemoteUnavailable(
                f"{path} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            monitoring.remote_errors.labels(error_type="rejected").inc()
            raise RemoteRejected(
                f"{path} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()

    async def get_difficulty_entry(self, learner_id: str, word_id: str) -> Optional[DifficultyEntry]:
        rows = await self._request(
            "GET",
            "/rest/v1/srs",
            params={
                "select": "*",
                "child_id": f"eq.{learner_id}",
                "word_id": f"eq.{word_id}",
            },
        )
        return DifficultyEntry.from_row(rows[0]) if rows else None

    async def upsert_difficulty_entry(self, entry: DifficultyEntry) -> DifficultyEntry:
        rows = await self._request(
            "POST",
            "/rest/v1/srs",
            params={"on_conflict": "child_id,word_id"},
            json=entry.to_row(),
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return DifficultyEntry.from_row(rows[0]) if rows else entry

    async def list_difficulty_entries(self, learner_id: str) -> List[DifficultyEntry]:
        rows = await self._request(
            "GET",
            "/rest/v1/srs",
            params={"select": "*", "child_id": f"eq.{learner_id}"},
        )
        return [DifficultyEntry.from_row(row) for row in rows or []]

    async def list_scope_words(self, list_id: Optional[str] = None) -> List[WordRef]:
        if list_id is None:
            rows = await self._request(
                "GET",
                "/rest/v1/words",
                params={"select": "id,text", "order": "created_at.asc"},
            )
            return [WordRef(word_id=row["id"], text=row.get("text")) for row in rows or []]

        rows = await self._request(
            "GET",
            "/rest/v1/list_words",
            params={
                "select": "word_id,sort_index,words(text)",
                "list_id": f"eq.{list_id}",
                "order": "sort_index.asc",
            },
        )
        return [
            WordRef(word_id=row["word_id"], text=(row.get("words") or {}).get("text"))
            for row in rows or []
        ]

    async def find_lists_for_word(self, word_id: str) -> List[str]:
        rows = await self._request(
            "GET",
            "/rest/v1/list_words",
            params={"select": "list_id", "word_id": f"eq.{word_id}"},
        )
        list_ids: List[str] = []
        for row in rows or []:
            if row["list_id"] not in list_ids:
                list_ids.append(row["list_id"])
        return list_ids

    async def get_next_batch_remote(
        self,
        learner_id: str,
        list_id: Optional[str],
        limit: int,
        strict_mode: bool,
    ) -> List[ScheduledWord]:
        rows = await self._request(
            "POST",
            "/rest/v1/rpc/get_next_batch",
            json={
                "p_child_id": learner_id,
                "p_list_id": list_id,
                "p_limit": limit,
                "p_strict_mode": strict_mode,
            },
        )
        return [ScheduledWord.from_row(row) for row in rows or []]

    async def insert_attempt(self, attempt: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self._request(
            "POST",
            "/rest/v1/attempts",
            params={"on_conflict": "client_id"},
            json=attempt,
            headers={"Prefer": "resolution=ignore-duplicates,return=representation"},
        )
        # An ignored duplicate comes back as an empty list
        return rows[0] if rows else attempt

    async def award_reward_points(
        self,
        user_id: str,
        amount: int,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> int:
        total = await self._request(
            "POST",
            "/rest/v1/rpc/award_stars",
            json={
                "p_user_id": user_id,
                "p_amount": amount,
                "p_reason": reason,
                "p_idempotency_key": idempotency_key,
            },
        )
        return int(total or 0)

    async def upload_audio(self, filename: str, content: bytes, content_type: str) -> str:
        await self._request(
            "POST",
            f"/storage/v1/object/{self.audio_bucket}/{filename}",
            content=content,
            headers={"Content-Type": content_type, "x-upsert": "true"},
        )
        # Store the path, signed URLs are generated at playback time
        return filename

    async def aclose(self) -> None:
        await self.client.aclose()
