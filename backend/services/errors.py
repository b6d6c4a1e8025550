"""Error kinds raised by the indexing and retrieval services."""
from typing import Any, Dict, Optional


class RetrievalEngineError(Exception):
    """Base error carrying a stable code and structured details."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigError(RetrievalEngineError):
    """Invalid configuration; fatal at startup."""
    code = "CONFIG_ERROR"


class IndexingError(RetrievalEngineError):
    """A document could not be indexed. The store holds no partial state for it."""
    code = "INDEX_ERROR"


class InvalidDocumentError(IndexingError):
    code = "INVALID_DOCUMENT"


class EmbeddingError(IndexingError):
    """The embedding function failed; `transient` tells whether a retry may help."""

    code = "EMBEDDING_ERROR"
    transient = False


class TransientEmbeddingError(EmbeddingError):
    code = "EMBEDDING_UNAVAILABLE"
    transient = True


class PermanentEmbeddingError(EmbeddingError):
    code = "EMBEDDING_REJECTED"
    transient = False


class IndexWriteError(IndexingError):
    """The store is unavailable or rejected the write."""
    code = "INDEX_WRITE_ERROR"


class StrategyTimeoutError(RetrievalEngineError):
    code = "STRATEGY_TIMEOUT"


class TemporalParseAmbiguous(RetrievalEngineError):
    """A temporal phrase matched but its dates could not be resolved."""
    code = "TEMPORAL_PARSE_AMBIGUOUS"


class NotFoundError(RetrievalEngineError):
    code = "NOT_FOUND"


class QueryError(RetrievalEngineError):
    code = "QUERY_ERROR"


class QueryUnavailableError(QueryError):
    """Every retrieval strategy of a query failed."""
    code = "QUERY_UNAVAILABLE"
