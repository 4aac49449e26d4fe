"""Collaborator interfaces consumed by the memory system.

Protocols keep the decision logic independent of the concrete embedding
model, LLM, database and profile service that a host application wires in.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncIterator, Protocol, Sequence, runtime_checkable

from .models import MemoryKind, MemoryRecord, MemoryRelation, UserPreferences


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@runtime_checkable
class EmbeddingGenerator(Protocol):
    """Produces fixed-length vectors for text."""

    @property
    def model_tag(self) -> str: ...

    async def embed(self, text: str) -> list[float]: ...


@runtime_checkable
class TextIntelligence(Protocol):
    """Summaries, keywords and affect signals from an external AI service."""

    async def summarize(self, text: str) -> str: ...

    async def extract_keywords(self, text: str) -> list[str]: ...

    async def extract_entities(self, text: str) -> list[str]: ...

    async def categorize(self, text: str) -> str: ...

    async def sentiment(self, text: str) -> str: ...

    async def emotional_intensity(self, text: str) -> float: ...


@runtime_checkable
class ChatLLM(Protocol):
    """Streaming chat completion, as exposed by stateless LLM adapters."""

    def chat_completion(
        self, messages: list[dict[str, Any]], system: str | None = None
    ) -> AsyncIterator[Any]: ...


@runtime_checkable
class ProfileSource(Protocol):
    """Read-only access to user preferences."""

    async def get_preferences(self, user_id: str) -> UserPreferences | None: ...


@runtime_checkable
class ProfileStore(ProfileSource, Protocol):
    """Profile source that also persists updates."""

    async def save_profile(self, user_id: str, preferences: UserPreferences) -> None: ...


@runtime_checkable
class MemoryStore(Protocol):
    """Persistence for memory records and relation edges.

    ``order_by`` entries are ``(column, "asc" | "desc")`` pairs using
    :class:`MemoryRecord` field names.
    """

    async def insert_record(self, record: MemoryRecord) -> str: ...

    async def get_record(self, record_id: str) -> MemoryRecord | None: ...

    async def update_record(self, record: MemoryRecord) -> None: ...

    async def query_records(
        self,
        owner_id: str,
        *,
        active: bool | None = True,
        kinds: Sequence[MemoryKind] | None = None,
        conversation_id: str | None = None,
        exclude_conversation_id: str | None = None,
        terms: Sequence[str] | None = None,
        tags_any: Sequence[str] | None = None,
        categories: Sequence[str] | None = None,
        embedding_model: str | None = None,
        created_before: datetime | None = None,
        created_after: datetime | None = None,
        accessed_after: datetime | None = None,
        min_access_count: int | None = None,
        order_by: Sequence[tuple[str, str]] | None = None,
        limit: int | None = None,
    ) -> list[MemoryRecord]: ...

    async def touch_records(
        self, record_ids: Sequence[str], accessed_at: datetime
    ) -> int: ...

    async def deactivate_records(
        self, record_ids: Sequence[str], updated_at: datetime
    ) -> int: ...

    async def count_records(
        self,
        owner_id: str,
        *,
        active: bool | None = None,
        importance_below: float | None = None,
        importance_at_least: float | None = None,
    ) -> int: ...

    async def count_by_kind(self, owner_id: str) -> dict[MemoryKind, int]: ...

    async def list_owners(self) -> list[str]: ...

    async def insert_relation(self, relation: MemoryRelation) -> str: ...

    async def get_relations(self, owner_id: str) -> list[MemoryRelation]: ...

    async def relation_degrees(self, owner_id: str) -> dict[str, int]: ...

    async def purge_expired(self, now: datetime) -> int: ...

    async def last_maintenance(self, owner_id: str, job: str) -> datetime | None: ...

    async def log_maintenance(
        self, owner_id: str, job: str, ran_at: datetime, summary: str
    ) -> None: ...
