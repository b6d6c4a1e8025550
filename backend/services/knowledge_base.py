"""Knowledge base facade: ingest, delete and query a user's second brain."""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from models.document import Document
from models.retrieval import QueryResult, TemporalRange
from services.chunking_engine import ChunkingEngine
from services.context_assembler import ContextAssembler
from services.embedding_model import EmbeddingModel
from services.errors import NotFoundError, QueryError
from services.index_store import IndexStore, InMemoryIndexStore
from services.index_writer import IndexWriter
from services.llm_client import Answer, FallbackAnswer, LLMClient, source_names
from services.query_analyzer import QueryAnalyzer
from services.rank_fusion import fuse
from services.retrieval_engine import RetrievalEngine, TemporalFallbackPolicy
from services.token_counter import TokenCounter
from config import (
    CHUNK_OVERLAP,
    CHUNK_SIZE,
    CONTEXT_BUDGET,
    CONTEXT_BUDGET_UNIT,
    GROQ_API_KEY,
    MAX_CHUNKS,
    RRF_K,
    STORE_BACKEND,
    SUPABASE_KEY,
    SUPABASE_URL,
)

logger = logging.getLogger(__name__)


class KnowledgeBase:
    """Entry point used by the HTTP layer and the ingestion CLI."""

    def __init__(
        self,
        store: IndexStore,
        embedding_model: EmbeddingModel,
        chunking_engine: Optional[ChunkingEngine] = None,
        analyzer: Optional[QueryAnalyzer] = None,
        retrieval_engine: Optional[RetrievalEngine] = None,
        assembler: Optional[ContextAssembler] = None,
        llm_client: Optional[LLMClient] = None,
        index_writer: Optional[IndexWriter] = None,
        rrf_k: int = RRF_K,
        context_budget: int = CONTEXT_BUDGET
    ):
        """
        Wire the indexing and retrieval components around one store.

        Args:
            store: IndexStore shared by writer and retriever
            embedding_model: Embedding function used for chunks and queries
            chunking_engine: Chunker (configured defaults when omitted)
            analyzer: Query analyzer (wall clock when omitted)
            retrieval_engine: Retriever (built over `store` when omitted)
            assembler: Context assembler (configured defaults when omitted)
            llm_client: Answer generator; without one `ask` always falls back
            index_writer: Writer (built over `store` when omitted)
            rrf_k: Rank fusion constant
            context_budget: Size budget of assembled context
        """
        self.store = store
        self.embedding_model = embedding_model
        self.chunking_engine = chunking_engine or ChunkingEngine()
        self.analyzer = analyzer or QueryAnalyzer()
        self.retrieval_engine = retrieval_engine or RetrievalEngine(store, embedding_model)
        self.assembler = assembler or ContextAssembler()
        self.llm_client = llm_client
        self.index_writer = index_writer or IndexWriter(store, embedding_model, self.chunking_engine)
        self.rrf_k = rrf_k
        self.context_budget = context_budget

        logger.info(f"Initialized KnowledgeBase with {type(store).__name__}")

    async def ingest(self, document: Document) -> str:
        """
        Index a new document.

        Returns:
            The document id

        Raises:
            InvalidDocumentError: If the id is already indexed or the text is empty
            EmbeddingError: If the embedding function failed
            IndexWriteError: If the store write failed after retries
        """
        await self.index_writer.index(document, require_new=True)
        return document.document_id

    async def reindex(self, document: Document) -> str:
        """
        Replace the chunk set of an existing document.

        Raises:
            NotFoundError: If the document is unknown or belongs to another owner
            IndexingError: As for ingest
        """
        await self.index_writer.index(document, require_existing=True)
        return document.document_id

    async def warmup(self) -> bool:
        """Load the embedding model ahead of the first request."""
        return await self.embedding_model.warmup()

    async def delete(self, document_id: str, owner_id: Optional[str] = None) -> None:
        """
        Delete a document from every index; visible to all queries started afterwards.

        Raises:
            NotFoundError: If the document is unknown or belongs to another owner
        """
        await self.index_writer.delete(document_id, owner_id)

    async def clear_owner(self, owner_id: str) -> int:
        """Delete every document of an owner; returns how many were removed."""
        removed = await asyncio.to_thread(self.store.delete_owner, owner_id)
        logger.info(f"Cleared {removed} documents", extra={"owner_id": owner_id})
        return removed

    async def get_document(self, document_id: str, owner_id: Optional[str] = None) -> Document:
        document = await asyncio.to_thread(self.store.get_document, document_id)
        if document is None or (owner_id is not None and document.owner_id != owner_id):
            raise NotFoundError(f"Document {document_id} not found", {"document_id": document_id})
        return document

    async def list_documents(self, owner_id: str) -> List[Document]:
        return await asyncio.to_thread(self.store.list_documents, owner_id)

    async def stats(self, owner_id: str) -> Dict[str, Any]:
        documents = await self.list_documents(owner_id)
        chunks = await asyncio.to_thread(self.store.count, owner_id)
        return {"owner_id": owner_id, "documents": len(documents), "chunks": chunks}

    async def query(
        self,
        owner_id: str,
        query_text: str,
        max_chunks: int = MAX_CHUNKS,
        temporal_range: Optional[TemporalRange] = None,
        temporal_policy: Optional[TemporalFallbackPolicy] = None
    ) -> QueryResult:
        """
        Retrieve the context chunks most relevant to a query.

        Args:
            owner_id: Owner whose documents are searched
            query_text: Natural-language query
            max_chunks: Maximum chunks in the result
            temporal_range: Explicit range; overrides any phrase in the query
            temporal_policy: Behaviour when the temporal filter leaves nothing

        Returns:
            QueryResult with chunks in fused order

        Raises:
            QueryError: If the request is malformed
            QueryUnavailableError: If every retrieval strategy failed
        """
        if not owner_id:
            raise QueryError("owner_id is required")
        if not query_text or not query_text.strip():
            raise QueryError("Query text cannot be empty")
        if max_chunks <= 0:
            raise QueryError("max_chunks must be positive", {"max_chunks": max_chunks})

        start_time = time.time()
        analysis = self.analyzer.analyze(query_text)
        outcome = await self.retrieval_engine.retrieve(
            analysis,
            owner_id,
            temporal_range=temporal_range,
            temporal_policy=temporal_policy
        )
        fused = fuse(list(outcome.ranked_lists.values()), k=self.rrf_k)
        chunks = self.assembler.assemble(fused, max_chunks, self.context_budget)

        latency_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Query returned {len(chunks)} chunks from {len(fused)} fused candidates in {latency_ms}ms",
            extra={"owner_id": owner_id, "latency_ms": latency_ms}
        )
        return QueryResult(
            chunks=chunks,
            analysis=analysis,
            temporal_range=outcome.temporal_range,
            temporal_relaxed=outcome.temporal_relaxed,
            failed_strategies=outcome.failed_strategies,
            candidates_considered=outcome.candidates_considered
        )

    async def ask(
        self,
        owner_id: str,
        query_text: str,
        max_chunks: int = MAX_CHUNKS,
        temporal_range: Optional[TemporalRange] = None,
        temporal_policy: Optional[TemporalFallbackPolicy] = None
    ) -> Tuple[Answer, QueryResult]:
        """Query, then answer from the assembled context."""
        result = await self.query(owner_id, query_text, max_chunks, temporal_range, temporal_policy)

        if self.llm_client is None:
            sources = source_names(result.chunks)
            answer = FallbackAnswer(
                text=LLMClient.fallback_text(query_text, sources),
                sources=sources,
                reason="NO_GENERATOR"
            )
        else:
            answer = await self.llm_client.answer(query_text, result.chunks)
        return answer, result


def build_knowledge_base(store_backend: str = STORE_BACKEND) -> KnowledgeBase:
    """
    Build a KnowledgeBase from configuration.

    Raises:
        ValueError: If the store backend is unknown or credentials are missing
    """
    if store_backend == "memory":
        store: IndexStore = InMemoryIndexStore()
    elif store_backend == "supabase":
        from services.vector_store import SupabaseIndexStore
        store = SupabaseIndexStore(SUPABASE_URL, SUPABASE_KEY)
    else:
        raise ValueError(f"Unknown STORE_BACKEND '{store_backend}'")

    token_counter = TokenCounter()
    chunking_engine = ChunkingEngine(CHUNK_SIZE, CHUNK_OVERLAP, token_counter=token_counter)
    assembler = ContextAssembler(budget_unit=CONTEXT_BUDGET_UNIT, token_counter=token_counter)
    llm_client = LLMClient() if GROQ_API_KEY else None
    if llm_client is None:
        logger.warning("GROQ_API_KEY not set; answers will use the fallback template")

    return KnowledgeBase(
        store=store,
        embedding_model=EmbeddingModel(),
        chunking_engine=chunking_engine,
        assembler=assembler,
        llm_client=llm_client
    )
