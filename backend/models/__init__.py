"""Data models for the Second Brain retrieval engine."""
from .document import ContentType, Document
from .chunk import Chunk, TextSpan
from .retrieval import (
    ContextChunk,
    FusedResult,
    QueryAnalysis,
    QueryResult,
    RetrievalResult,
    TemporalRange,
)
from .api import (
    AskResponse,
    DocumentRequest,
    DocumentResponse,
    QueryRequest,
    QueryResponse,
)

__all__ = [
    "ContentType",
    "Document",
    "Chunk",
    "TextSpan",
    "ContextChunk",
    "FusedResult",
    "QueryAnalysis",
    "QueryResult",
    "RetrievalResult",
    "TemporalRange",
    "AskResponse",
    "DocumentRequest",
    "DocumentResponse",
    "QueryRequest",
    "QueryResponse",
]
