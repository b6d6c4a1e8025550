"""Request and response bodies of the HTTP API."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .document import ContentType


class DocumentRequest(BaseModel):
    """Text of one piece of content, already extracted by a content processor."""
    owner_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    text: str
    content_timestamp: datetime
    content_type: Optional[ContentType] = None  # inferred from name when omitted
    document_id: Optional[str] = None  # generated when omitted
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DocumentResponse(BaseModel):
    document_id: str
    owner_id: str
    name: str
    content_type: ContentType
    content_timestamp: datetime
    ingested_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DocumentListResponse(BaseModel):
    documents: List[DocumentResponse]
    total: int


class ClearResponse(BaseModel):
    owner_id: str
    documents_deleted: int


class TemporalRangeModel(BaseModel):
    start: datetime
    end: datetime


class QueryRequest(BaseModel):
    """Query against one owner's knowledge base."""
    owner_id: str = Field(..., min_length=1)
    query: str
    max_chunks: int = Field(default=5, gt=0)
    temporal_range: Optional[TemporalRangeModel] = None
    temporal_policy: Optional[str] = None  # "strict" or "relax"


class ContextChunkModel(BaseModel):
    chunk_id: str
    document_id: str
    document_name: str
    content_type: ContentType
    content_timestamp: datetime
    source_url: Optional[str] = None
    chunk_index: int
    text: str
    score: float
    strategies: List[str]
    truncated: bool = False


class QueryDiagnostics(BaseModel):
    keywords: List[str]
    temporal_range: Optional[TemporalRangeModel] = None
    temporal_phrase: Optional[str] = None
    temporal_relaxed: bool = False
    failed_strategies: List[str] = Field(default_factory=list)
    candidates_considered: int = 0
    latency_ms: int


class QueryResponse(BaseModel):
    chunks: List[ContextChunkModel]
    diagnostics: QueryDiagnostics


class TokenUsage(BaseModel):
    input: int
    output: int


class AskResponse(BaseModel):
    answer: str
    degraded: bool
    model_used: Optional[str] = None
    tokens: Optional[TokenUsage] = None
    fallback_reason: Optional[str] = None
    sources: List[str]
    chunks: List[ContextChunkModel]
    diagnostics: QueryDiagnostics
