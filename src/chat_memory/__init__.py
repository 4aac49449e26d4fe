"""
chat-memory - tiered, self-maintaining memory for conversational AI

Decides what to remember, fits it into a bounded context window, lets it
decay over time and consolidates frequently used fragments into longer-lived
knowledge.
"""

from .models import (
    ChatMessage,
    CrossSessionRequest,
    LongTermMemory,
    MaintenanceReport,
    MemoryContext,
    MemoryKind,
    MemoryRecord,
    MemoryRelation,
    ScoringInput,
    SearchResult,
    UserPreferences,
)
from .config import MemoryConfig, load_memory_config
from .exceptions import (
    ExternalServiceError,
    MaintenanceRecordError,
    MemorySystemError,
    ValidationError,
)
from .consolidation import MemoryConsolidator
from .context_assembler import ContextAssembler
from .cross_session import CrossSessionRetriever
from .embedding import EmbeddingService, cosine_similarity
from .ephemeral import ConversationBuffer
from .forgetting import DecayEngine, ForgettingStrategy
from .importance import ImportanceScorer
from .insights import InsightGenerator
from .logging_setup import configure_logging
from .memory_service import MemoryService
from .profile_learner import ProfileLearner
from .scheduler import MaintenanceScheduler
from .semantic_store import SemanticStore
from .storage import SQLiteStore
from .text_intelligence import LLMTextIntelligence
from .token_counter import TokenCounter

__all__ = [
    "ChatMessage",
    "CrossSessionRequest",
    "LongTermMemory",
    "MaintenanceReport",
    "MemoryContext",
    "MemoryKind",
    "MemoryRecord",
    "MemoryRelation",
    "ScoringInput",
    "SearchResult",
    "UserPreferences",
    "MemoryConfig",
    "load_memory_config",
    "ExternalServiceError",
    "MaintenanceRecordError",
    "MemorySystemError",
    "ValidationError",
    "MemoryConsolidator",
    "ContextAssembler",
    "CrossSessionRetriever",
    "EmbeddingService",
    "cosine_similarity",
    "ConversationBuffer",
    "DecayEngine",
    "ForgettingStrategy",
    "ImportanceScorer",
    "InsightGenerator",
    "configure_logging",
    "MemoryService",
    "ProfileLearner",
    "MaintenanceScheduler",
    "SemanticStore",
    "SQLiteStore",
    "LLMTextIntelligence",
    "TokenCounter",
]
