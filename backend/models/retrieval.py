"""Query-time data models: temporal ranges, ranked results and assembled context."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional, Tuple

from .chunk import Chunk
from .document import ContentType, Document, ensure_utc

STRATEGY_VECTOR = "vector"
STRATEGY_LEXICAL = "lexical"
STRATEGY_TEMPORAL = "temporal"


@dataclass(frozen=True)
class TemporalRange:
    """Half-open calendar interval [start, end)."""
    start: datetime
    end: datetime

    def __post_init__(self):
        # frozen: normalise through object.__setattr__
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.start >= self.end:
            raise ValueError(f"Temporal range start {self.start} must be before end {self.end}")

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) < self.end


@dataclass(frozen=True)
class QueryAnalysis:
    """What the query analyzer extracted from a free-text query."""
    raw_query: str
    keywords: FrozenSet[str]
    temporal_range: Optional[TemporalRange] = None
    temporal_phrase: Optional[str] = None


@dataclass(frozen=True)
class RetrievalResult:
    """One entry of a single strategy's ranked list."""
    chunk: Chunk
    document: Document
    strategy: str
    rank: int  # 1-indexed
    score: float


@dataclass
class FusedResult:
    """A chunk after reciprocal rank fusion across strategies."""
    chunk: Chunk
    document: Document
    fused_score: float
    strategies: Tuple[str, ...]


@dataclass
class ContextChunk:
    """A chunk selected for the answer generator, with source attribution."""
    chunk_id: str
    document_id: str
    document_name: str
    content_type: ContentType
    content_timestamp: datetime
    source_url: Optional[str]
    chunk_index: int
    text: str
    score: float
    strategies: Tuple[str, ...]
    truncated: bool = False


@dataclass
class QueryResult:
    """Ordered context chunks plus diagnostics about how they were found."""
    chunks: List[ContextChunk]
    analysis: QueryAnalysis
    temporal_range: Optional[TemporalRange] = None
    temporal_relaxed: bool = False
    failed_strategies: List[str] = field(default_factory=list)
    candidates_considered: int = 0
