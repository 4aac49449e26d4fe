"""Core data models for the memory system."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_IMPORTANCE = 0.0
MAX_IMPORTANCE = 10.0
DEFAULT_DECAY_RATE = 0.1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def clamp_importance(value: float) -> float:
    return max(MIN_IMPORTANCE, min(MAX_IMPORTANCE, float(value)))


class MemoryKind(str, Enum):
    EPHEMERAL = "ephemeral"
    WORKING = "working"
    SEMANTIC = "semantic"
    PREFERENCE = "preference"
    CONSOLIDATED = "consolidated"


class MemoryRecord(BaseModel):
    """A persisted memory.

    ``importance`` is clamped to [0, 10] on construction and on every
    assignment, so strategies can do arithmetic on it freely.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_uuid)
    owner_id: str
    conversation_id: str | None = None
    kind: MemoryKind = MemoryKind.SEMANTIC
    content: str
    summary: str = ""
    tags: list[str] = Field(default_factory=list)
    category: str = "general"
    embedding: list[float] | None = None
    embedding_model: str | None = None
    importance: float = 0.0
    decay_rate: float = Field(default=DEFAULT_DECAY_RATE, gt=0)
    reinforcements: int = Field(default=0, ge=0)
    access_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_accessed: datetime = Field(default_factory=_utcnow)
    last_maintained_at: datetime | None = None
    expires_at: datetime | None = None
    active: bool = True

    @field_validator(
        "created_at", "updated_at", "last_accessed", "last_maintained_at", "expires_at"
    )
    @classmethod
    def _aware(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @field_validator("importance")
    @classmethod
    def _clamp_importance(cls, v: float) -> float:
        return clamp_importance(v)

    @field_validator("tags")
    @classmethod
    def _unique_tags(cls, v: list[str]) -> list[str]:
        seen: set[str] = set()
        tags = []
        for tag in v:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.add(tag)
                tags.append(tag)
        return tags

    def age_days(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds() / 86400.0

    def days_since_access(self, now: datetime) -> float:
        return (now - self.last_accessed).total_seconds() / 86400.0


class MemoryRelation(BaseModel):
    """A directed edge in the memory relation graph."""

    id: str = Field(default_factory=_uuid)
    source_id: str
    target_id: str
    relation_type: str = "related"
    strength: float = 1.0
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("created_at")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return as_utc(v)


class ChatMessage(BaseModel):
    """A single conversation message used for context assembly."""

    role: str  # "user", "assistant", "system"
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    importance: float | None = None
    name: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def is_from_user(self) -> bool:
        return self.role == "user"

    def to_chat(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            msg["name"] = self.name
        return msg


class ScoringInput(BaseModel):
    content: str
    is_from_user: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("created_at")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return as_utc(v)


class MemoryContext(BaseModel):
    """Where a piece of content came from."""

    user_id: str
    conversation_id: str | None = None
    message_id: str | None = None
    current_topic: str | None = None


class SearchResult(BaseModel):
    """A semantic search hit."""

    id: str
    content: str
    summary: str = ""
    similarity: float
    importance: float
    last_accessed: datetime
    tags: list[str] = Field(default_factory=list)
    conversation_id: str | None = None
    kind: MemoryKind = MemoryKind.SEMANTIC


class CrossSessionRequest(BaseModel):
    user_id: str
    current_conversation_id: str | None = None
    query: str
    context_window: int = 10


class LongTermMemory(BaseModel):
    """A memory surfaced by cross-session retrieval."""

    id: str
    kind: MemoryKind
    title: str
    content: str
    summary: str
    importance: float
    relevance: float
    last_accessed: datetime
    related_conversations: list[str] = Field(default_factory=list)
    source: str = "semantic"  # "semantic", "structured", "profile"
    score: float = 0.0


class LearningPatterns(BaseModel):
    """Per-user learning signals, all optional."""

    learning_style: str | None = None
    retention_rate: float | None = None
    preferred_explanation_types: list[str] = Field(default_factory=list)
    question_patterns: list[str] = Field(default_factory=list)
    recent_topics: list[str] = Field(default_factory=list)
    recent_sentiment: str | None = None
    avg_message_length: float | None = None
    message_count: int = 0


class UserPreferences(BaseModel):
    """Read-only view of a user's profile."""

    communication_style: str = "casual"
    language_style: str = "concise"
    preferred_topics: list[str] = Field(default_factory=list)
    knowledge_areas: list[str] = Field(default_factory=list)
    avg_session_length: float = 0.0
    total_sessions: int = 0
    most_active_hours: list[str] = Field(default_factory=list)
    learning_patterns: LearningPatterns = Field(default_factory=LearningPatterns)

    @property
    def all_topics(self) -> list[str]:
        return [*self.preferred_topics, *self.knowledge_areas]


class MaintenanceReport(BaseModel):
    """Outcome counts of a maintenance pass."""

    processed: int = 0
    deleted: int = 0
    preserved: int = 0
    reactivated: int = 0
    decayed: int = 0
    faded: int = 0
    failed: int = 0
    purged: int = 0
    rebalanced: int = 0
    reinforced: int = 0


class ConsolidationReport(BaseModel):
    candidates: int = 0
    consolidated: int = 0
    relations_created: int = 0
    cleaned_up: int = 0


class MemoryInsight(BaseModel):
    patterns: list[str] = Field(default_factory=list)
    preferences: UserPreferences | None = None
    recommendations: list[str] = Field(default_factory=list)
    relationship_map: dict[str, list[str]] = Field(default_factory=dict)


class ForgettingReport(BaseModel):
    total_memories: int = 0
    active_memories: int = 0
    decaying_memories: int = 0
    preserved_memories: int = 0
    memory_health: int = 0
    recommendations: list[str] = Field(default_factory=list)
