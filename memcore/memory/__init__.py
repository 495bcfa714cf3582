"""
MemCore — Memory Package
==========================
Ingestion, addressing, dedup and retrieval over a relational record of
truth and a rebuildable vector index.

Layers, encoded in ``group_id``:
- User:    ``None``                    (Profile)
- Scope:   ``<scope>``, ``<scope>:docs`` (Episodic, Foresight)
- Session: ``<scope>:session:<id>``      (EventLog)
"""

from memcore.memory.capabilities import (
    ConfirmResult,
    DedupConfirmer,
    LLMDedupConfirmer,
    LLMQueryExpander,
    LLMReranker,
    LLMSufficiencyJudge,
    QueryExpander,
    Reranker,
    SufficiencyJudge,
    SufficiencyResult,
)
from memcore.memory.dedup import DedupService
from memcore.memory.embeddings import EmbeddingProvider, EmbeddingService, MockEmbeddingProvider
from memcore.memory.extractors import (
    EpisodeExtractor,
    EventLogExtractor,
    Extractor,
    ForesightExtractor,
    LLMUnifiedExtractor,
    ProfileExtractor,
    UnifiedExtractor,
)
from memcore.memory.fusion import reciprocal_rank_fusion
from memcore.memory.manager import MemoryManager
from memcore.memory.relational_store import RelationalStore, SQLRelationalStore
from memcore.memory.retrieval import RetrievalManager
from memcore.memory.types import (
    IngestionResult,
    MemCell,
    MemoryRecord,
    MemoryType,
    RankedRecord,
    RetrievalFilters,
    RetrieveMethod,
    RoutingContext,
    Scene,
    StoredMemory,
    UndoResult,
)
from memcore.memory.vector_store import ChromaVectorStore, VectorStore
from memcore.memory.writer import DualWriter

__all__ = [
    "ChromaVectorStore",
    "ConfirmResult",
    "DedupConfirmer",
    "DedupService",
    "DualWriter",
    "EmbeddingProvider",
    "EmbeddingService",
    "EpisodeExtractor",
    "EventLogExtractor",
    "Extractor",
    "ForesightExtractor",
    "IngestionResult",
    "LLMDedupConfirmer",
    "LLMQueryExpander",
    "LLMReranker",
    "LLMSufficiencyJudge",
    "LLMUnifiedExtractor",
    "MemCell",
    "MemoryManager",
    "MemoryRecord",
    "MemoryType",
    "MockEmbeddingProvider",
    "ProfileExtractor",
    "QueryExpander",
    "RankedRecord",
    "RelationalStore",
    "Reranker",
    "RetrievalFilters",
    "RetrievalManager",
    "RetrieveMethod",
    "RoutingContext",
    "SQLRelationalStore",
    "Scene",
    "StoredMemory",
    "SufficiencyJudge",
    "SufficiencyResult",
    "UndoResult",
    "UnifiedExtractor",
    "VectorStore",
    "reciprocal_rank_fusion",
]
