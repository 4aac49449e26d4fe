"""Memory system configuration models."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field, model_validator


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    sqlite_db_path: str = "./memory/chat_memory.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class TokenCounterConfig(BaseModel):
    """Token estimation and exact counting."""

    default_model: str = "gpt-3.5-turbo"
    default_encoding: str = "cl100k_base"
    chars_per_token: float = 3.5
    cache_capacity: int = 1000


class ScoringConfig(BaseModel):
    """Importance scoring thresholds."""

    semantic_index_threshold: float = 5.0
    recency_hours_weight: float = 0.5


class EmbeddingConfig(BaseModel):
    """Embedding model configuration."""

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384
    trust_remote_code: bool = False


class SemanticConfig(BaseModel):
    """Semantic search configuration."""

    similarity_threshold: float = 0.7
    similarity_weight: float = 0.7
    importance_weight: float = 0.3
    max_results: int = 10
    summary_fallback_chars: int = 200
    max_tags: int = 10


class ContextConfig(BaseModel):
    """Context budget assembly configuration."""

    default_model_token_limit: int = 4096
    reply_reserve_max: int = 2000
    reply_reserve_ratio: float = 0.3
    recent_block_size: int = 5
    memory_budget_ratio: float = 0.15
    request_timeout_seconds: float = 3.0


class CrossSessionConfig(BaseModel):
    """Cross-session retrieval configuration."""

    max_context: int = 10
    structured_limit: int = 10
    profile_limit: int = 5
    structured_relevance: float = 0.8
    profile_relevance: float = 0.6
    relevance_weight: float = 0.6
    importance_weight: float = 0.4
    profile_window_days: int = 30


class ForgettingConfig(BaseModel):
    """Decay engine configuration."""

    redundancy_similarity: float = 0.9
    low_importance_threshold: float = 2.0
    low_importance_age_days: int = 30
    unused_days: int = 60
    unused_max_access_count: int = 3
    emotional_intensity_threshold: float = 0.6
    max_retention_days: int = 365
    purge_importance_threshold: float = 1.0
    max_count_per_kind: int = 100
    hub_degree_threshold: int = 5
    reprocess_interval_hours: float = 24.0


class ConsolidationConfig(BaseModel):
    """Memory consolidation configuration."""

    enabled: bool = True
    min_access_count: int = 5
    min_age_days: int = 7
    categories: list[str] = Field(
        default_factory=lambda: ["fact", "knowledge", "experience"]
    )
    importance_boost: float = 2.0
    consolidated_decay_rate: float = 0.05
    related_limit: int = 5
    related_similarity: float = 0.7
    cleanup_age_days: int = 90
    cleanup_importance_threshold: float = 3.0
    cleanup_max_access_count: int = 2


class EphemeralConfig(BaseModel):
    """Per-conversation short-term and working memory."""

    ttl_seconds: int = 24 * 60 * 60
    short_term_limit: int = 20
    working_limit: int = 10
    max_conversations: int = 1000


class ProfileConfig(BaseModel):
    """Profile learning from user messages."""

    enabled: bool = True
    max_topics: int = 20
    max_new_topics: int = 5
    new_topic_weight: int = 2
    max_active_hours: int = 8


class SchedulerConfig(BaseModel):
    """Background maintenance scheduling."""

    enabled: bool = True
    interval_seconds: float = 15 * 60
    consolidation_every: int = 4
    sweep_every: int = 24


class MemoryConfig(BaseModel):
    """Top-level memory configuration."""

    enabled: bool = True
    storage: StorageConfig = Field(default_factory=StorageConfig)
    tokens: TokenCounterConfig = Field(default_factory=TokenCounterConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    semantic: SemanticConfig = Field(default_factory=SemanticConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    cross_session: CrossSessionConfig = Field(default_factory=CrossSessionConfig)
    forgetting: ForgettingConfig = Field(default_factory=ForgettingConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    ephemeral: EphemeralConfig = Field(default_factory=EphemeralConfig)
    profile: ProfileConfig = Field(default_factory=ProfileConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)


_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def read_yaml(config_path: str | Path) -> dict[str, Any]:
    """Read a YAML file, substituting ``${VAR}`` with environment variables.

    Raises:
        FileNotFoundError: If the configuration file is not found.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    content = path.read_text(encoding="utf-8")

    def replacer(match: re.Match) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = _ENV_PATTERN.sub(replacer, content)

    try:
        return yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise


def load_memory_config(config_path: str | Path) -> MemoryConfig:
    """Load and validate a :class:`MemoryConfig` from YAML.

    The memory settings may sit at the top level or under a ``memory`` key.
    """
    data = read_yaml(config_path)
    section = data.get("memory", data)
    config = MemoryConfig.model_validate(section)
    logger.info(f"Loaded memory config from {config_path}")
    return config
