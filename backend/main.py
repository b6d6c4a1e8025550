"""Main entry point for the Second Brain retrieval API."""
import logging
import time
import uuid
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import PORT, LOG_LEVEL, LOG_FORMAT, CORS_ORIGINS
from logger import setup_logging
from models.api import (
    AskResponse,
    ClearResponse,
    ContextChunkModel,
    DocumentListResponse,
    DocumentRequest,
    DocumentResponse,
    QueryDiagnostics,
    QueryRequest,
    QueryResponse,
    TemporalRangeModel,
    TokenUsage,
)
from models.document import ContentType, Document
from models.retrieval import ContextChunk, QueryResult, TemporalRange
from services.errors import (
    ConfigError,
    EmbeddingError,
    IndexWriteError,
    InvalidDocumentError,
    NotFoundError,
    QueryError,
    QueryUnavailableError,
    RetrievalEngineError,
)
from services.knowledge_base import KnowledgeBase, build_knowledge_base
from services.llm_client import GeneratedAnswer
from services.retrieval_engine import TemporalFallbackPolicy

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Second Brain Retrieval API",
    description="Hybrid vector, lexical and temporal retrieval over personal content",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services (will be done on startup)
knowledge_base: KnowledgeBase = None

# Most specific first: QueryUnavailableError is a QueryError
_STATUS_CODES = [
    (NotFoundError, 404),
    (InvalidDocumentError, 400),
    (QueryUnavailableError, 503),
    (QueryError, 400),
    (EmbeddingError, 502),
    (IndexWriteError, 503),
    (ConfigError, 500),
]


def status_code_for(error: RetrievalEngineError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global knowledge_base

    if LOG_FORMAT == "json":
        setup_logging(LOG_LEVEL)

    logger.info("Initializing Second Brain retrieval services...")

    try:
        knowledge_base = build_knowledge_base()
        if not await knowledge_base.warmup():
            logger.warning("Embedding model not ready; the first requests may be slow")
        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.exception_handler(RetrievalEngineError)
async def engine_error_handler(request: Request, exc: RetrievalEngineError) -> JSONResponse:
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        f"{request.method} {request.url.path} failed: {exc.message}",
        extra={"error_code": exc.code, "status_code": status_code}
    )
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Second Brain Retrieval API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy" if knowledge_base is not None else "starting",
        "service": "second-brain-retrieval",
        "version": "1.0.0"
    }


@app.post("/documents", response_model=DocumentResponse, status_code=201)
async def ingest_document(request: DocumentRequest) -> DocumentResponse:
    """
    Ingest extracted text as a new document.

    The document is queryable through every index once this returns.
    """
    document = _to_document(request, request.document_id or str(uuid.uuid4()))
    await knowledge_base.ingest(document)
    return _document_response(document)


@app.put("/documents/{document_id}", response_model=DocumentResponse)
async def reindex_document(document_id: str, request: DocumentRequest) -> DocumentResponse:
    """Replace the content of an existing document and re-index it."""
    document = _to_document(request, document_id)
    await knowledge_base.reindex(document)
    return _document_response(document)


@app.get("/documents", response_model=DocumentListResponse)
async def list_documents(owner_id: str) -> DocumentListResponse:
    documents = await knowledge_base.list_documents(owner_id)
    return DocumentListResponse(
        documents=[_document_response(d) for d in documents],
        total=len(documents)
    )


@app.get("/documents/{document_id}", response_model=DocumentResponse)
async def get_document(document_id: str, owner_id: Optional[str] = None) -> DocumentResponse:
    document = await knowledge_base.get_document(document_id, owner_id)
    return _document_response(document)


@app.delete("/documents/{document_id}", status_code=204)
async def delete_document(document_id: str, owner_id: Optional[str] = None) -> None:
    """Delete a document; it is gone from every index when this returns."""
    await knowledge_base.delete(document_id, owner_id)


@app.delete("/owners/{owner_id}/documents", response_model=ClearResponse)
async def clear_owner(owner_id: str) -> ClearResponse:
    """Delete all documents of an owner."""
    removed = await knowledge_base.clear_owner(owner_id)
    return ClearResponse(owner_id=owner_id, documents_deleted=removed)


@app.get("/owners/{owner_id}/stats")
async def owner_stats(owner_id: str):
    return await knowledge_base.stats(owner_id)


@app.post("/query", response_model=QueryResponse)
async def query_endpoint(request: QueryRequest) -> QueryResponse:
    """
    Retrieve context chunks for a query.

    Runs vector, lexical and (when the query names a time) temporal
    retrieval concurrently, fuses them with RRF and assembles the top
    chunks under the context budget.

    Args:
        request: QueryRequest with owner, query and optional temporal range

    Returns:
        QueryResponse with ordered chunks and retrieval diagnostics
    """
    start_time = time.time()
    temporal_range, policy = _parse_query_options(request)

    result = await knowledge_base.query(
        request.owner_id,
        request.query,
        max_chunks=request.max_chunks,
        temporal_range=temporal_range,
        temporal_policy=policy
    )

    total_latency_ms = int((time.time() - start_time) * 1000)
    return QueryResponse(
        chunks=_chunk_models(result.chunks),
        diagnostics=_diagnostics(result, total_latency_ms)
    )


@app.post("/ask", response_model=AskResponse)
async def ask_endpoint(request: QueryRequest) -> AskResponse:
    """
    Answer a query from the owner's knowledge base.

    Generator failures do not fail the request: the answer degrades to a
    templated list of the retrieved sources.
    """
    start_time = time.time()
    temporal_range, policy = _parse_query_options(request)

    answer, result = await knowledge_base.ask(
        request.owner_id,
        request.query,
        max_chunks=request.max_chunks,
        temporal_range=temporal_range,
        temporal_policy=policy
    )

    total_latency_ms = int((time.time() - start_time) * 1000)
    response = AskResponse(
        answer=answer.text,
        degraded=answer.degraded,
        sources=answer.sources,
        chunks=_chunk_models(result.chunks),
        diagnostics=_diagnostics(result, total_latency_ms)
    )
    if isinstance(answer, GeneratedAnswer):
        response.model_used = answer.model_used
        response.tokens = TokenUsage(input=answer.tokens_input, output=answer.tokens_output)
    else:
        response.fallback_reason = answer.reason

    logger.info(f"Query answered in {total_latency_ms}ms (degraded: {answer.degraded})")
    return response


def _to_document(request: DocumentRequest, document_id: str) -> Document:
    if not request.text.strip():
        raise InvalidDocumentError("Document text cannot be empty", {"document_id": document_id})
    return Document(
        document_id=document_id,
        owner_id=request.owner_id,
        name=request.name,
        content_type=request.content_type or ContentType.from_filename(request.name),
        text=request.text,
        content_timestamp=request.content_timestamp,
        metadata=dict(request.metadata)
    )


def _document_response(document: Document) -> DocumentResponse:
    return DocumentResponse(
        document_id=document.document_id,
        owner_id=document.owner_id,
        name=document.name,
        content_type=document.content_type,
        content_timestamp=document.content_timestamp,
        ingested_at=document.ingested_at,
        metadata=document.metadata
    )


def _parse_query_options(request: QueryRequest):
    temporal_range = None
    if request.temporal_range is not None:
        try:
            temporal_range = TemporalRange(request.temporal_range.start, request.temporal_range.end)
        except ValueError as e:
            raise QueryError(str(e), {"temporal_range": request.temporal_range.model_dump(mode="json")}) from e

    policy = None
    if request.temporal_policy is not None:
        try:
            policy = TemporalFallbackPolicy(request.temporal_policy)
        except ValueError as e:
            raise QueryError(
                f"Unknown temporal_policy '{request.temporal_policy}'",
                {"allowed": [p.value for p in TemporalFallbackPolicy]}
            ) from e
    return temporal_range, policy


def _chunk_models(chunks: List[ContextChunk]) -> List[ContextChunkModel]:
    return [
        ContextChunkModel(
            chunk_id=c.chunk_id,
            document_id=c.document_id,
            document_name=c.document_name,
            content_type=c.content_type,
            content_timestamp=c.content_timestamp,
            source_url=c.source_url,
            chunk_index=c.chunk_index,
            text=c.text,
            score=c.score,
            strategies=list(c.strategies),
            truncated=c.truncated
        )
        for c in chunks
    ]


def _diagnostics(result: QueryResult, latency_ms: int) -> QueryDiagnostics:
    temporal_range = None
    if result.temporal_range is not None:
        temporal_range = TemporalRangeModel(start=result.temporal_range.start, end=result.temporal_range.end)
    return QueryDiagnostics(
        keywords=sorted(result.analysis.keywords),
        temporal_range=temporal_range,
        temporal_phrase=result.analysis.temporal_phrase,
        temporal_relaxed=result.temporal_relaxed,
        failed_strategies=result.failed_strategies,
        candidates_considered=result.candidates_considered,
        latency_ms=latency_ms
    )


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting Second Brain Retrieval API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
