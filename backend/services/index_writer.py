"""Index writer: embeds and signs chunks, then stores a document's chunk set atomically."""
import asyncio
import logging
import time
import weakref
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from models.chunk import Chunk
from models.document import Document
from services.chunking_engine import ChunkingEngine
from services.embedding_model import EmbeddingModel
from services.errors import (
    EmbeddingError,
    IndexWriteError,
    InvalidDocumentError,
    NotFoundError,
    PermanentEmbeddingError,
)
from services.index_store import IndexStore
from services.text_analysis import lexical_signature
from config import EMBEDDING_CONCURRENCY, INDEX_WRITE_MAX_RETRIES, INDEX_WRITE_INITIAL_DELAY

logger = logging.getLogger(__name__)


@dataclass
class IndexedDocument:
    """Outcome of a successful index operation."""
    document: Document
    chunk_count: int
    embeddings_reused: int
    latency_ms: int


class IndexWriter:
    """
    Keep a document's chunks consistent across the vector, lexical and temporal indexes.

    Each document id has its own lock covering embedding and the store write,
    so concurrent re-index or delete calls for one document run one at a time
    in arrival order (the last call wins). Different documents proceed in
    parallel.
    """

    def __init__(
        self,
        store: IndexStore,
        embedding_model: EmbeddingModel,
        chunking_engine: ChunkingEngine,
        embedding_concurrency: int = EMBEDDING_CONCURRENCY,
        max_write_retries: int = INDEX_WRITE_MAX_RETRIES,
        initial_write_delay: float = INDEX_WRITE_INITIAL_DELAY
    ):
        if embedding_concurrency <= 0:
            raise ValueError("embedding_concurrency must be positive")
        if max_write_retries <= 0:
            raise ValueError("max_write_retries must be positive")

        self.store = store
        self.embedding_model = embedding_model
        self.chunking_engine = chunking_engine
        self.embedding_concurrency = embedding_concurrency
        self.max_write_retries = max_write_retries
        self.initial_write_delay = initial_write_delay
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

        logger.info("Initialized IndexWriter")

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    async def index(
        self,
        document: Document,
        chunks: Optional[List[Chunk]] = None,
        require_new: bool = False,
        require_existing: bool = False
    ) -> IndexedDocument:
        """
        Index (or re-index) a document.

        Any previous chunk set of the document is replaced in the same atomic
        store write. Nothing is written unless every chunk was embedded.

        Args:
            document: Document to index
            chunks: Pre-computed chunks; chunked with the configured engine when omitted
            require_new: Refuse ids that are already indexed
            require_existing: Refuse ids that are unknown or owned by someone else

        Returns:
            IndexedDocument summary

        Raises:
            InvalidDocumentError: If the document has no text, or exists while `require_new` is set
            NotFoundError: If the document is missing while `require_existing` is set
            EmbeddingError: If any chunk could not be embedded
            IndexWriteError: If the store write failed after all retries
        """
        if not document.text or not document.text.strip():
            raise InvalidDocumentError("Document text cannot be empty", {"document_id": document.document_id})

        if chunks is None:
            chunks = self.chunking_engine.chunk_document(document)

        start_time = time.time()
        async with self._lock_for(document.document_id):
            # Checked under the lock so two ingests of one id cannot both pass
            if require_new or require_existing:
                existing = await asyncio.to_thread(self.store.get_document, document.document_id)
                self._check_existing(document, existing, require_new, require_existing)

            previous = await asyncio.to_thread(self.store.get_chunks, document.document_id)
            cached = {c.text: c.embedding for c in previous if c.embedding is not None}

            reused = await self._prepare_chunks(document, chunks, cached)
            await self._write_with_retry(document, chunks)

        latency_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Indexed document {document.document_id}: {len(chunks)} chunks "
            f"({reused} cached embeddings) in {latency_ms}ms",
            extra={"document_id": document.document_id, "owner_id": document.owner_id}
        )
        return IndexedDocument(
            document=document,
            chunk_count=len(chunks),
            embeddings_reused=reused,
            latency_ms=latency_ms
        )

    async def delete(self, document_id: str, owner_id: Optional[str] = None) -> Document:
        """
        Remove a document from every index before returning.

        Raises:
            NotFoundError: If the document is unknown or belongs to another owner
        """
        async with self._lock_for(document_id):
            document = await asyncio.to_thread(self.store.delete_document, document_id, owner_id)

        logger.info(f"Deleted document {document_id}", extra={"document_id": document_id})
        return document

    @staticmethod
    def _check_existing(
        document: Document,
        existing: Optional[Document],
        require_new: bool,
        require_existing: bool
    ) -> None:
        if require_new and existing is not None:
            raise InvalidDocumentError(
                f"Document {document.document_id} already exists; re-index it instead",
                {"document_id": document.document_id}
            )
        if require_existing and (existing is None or existing.owner_id != document.owner_id):
            raise NotFoundError(
                f"Document {document.document_id} not found",
                {"document_id": document.document_id}
            )

    async def _prepare_chunks(
        self,
        document: Document,
        chunks: List[Chunk],
        cached: Dict[str, np.ndarray]
    ) -> int:
        """Fill lexical signatures and embeddings; returns how many embeddings were reused."""
        semaphore = asyncio.Semaphore(self.embedding_concurrency)
        reused = 0
        pending = []

        for chunk in chunks:
            chunk.lexical_signature = lexical_signature(chunk.text)
            if chunk.text in cached:
                chunk.embedding = cached[chunk.text]
                reused += 1
            else:
                pending.append(chunk)

        async def embed(chunk: Chunk) -> None:
            async with semaphore:
                chunk.embedding = await self.embedding_model.embed_text(chunk.text)

        tasks = [asyncio.create_task(embed(chunk)) for chunk in pending]
        try:
            await asyncio.gather(*tasks)
        except BaseException as e:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if isinstance(e, EmbeddingError):
                logger.error(
                    f"Embedding failed for document {document.document_id}: {e.message}",
                    extra={"document_id": document.document_id, "error_code": e.code}
                )
            raise

        dimensions = {chunk.embedding.shape[0] for chunk in chunks}
        if len(dimensions) > 1:
            raise PermanentEmbeddingError(
                "Embeddings of one document differ in dimensionality",
                {"document_id": document.document_id, "dimensions": sorted(dimensions)}
            )
        return reused

    async def _write_with_retry(self, document: Document, chunks: List[Chunk]) -> None:
        delay = self.initial_write_delay
        last_error: Optional[IndexWriteError] = None

        for attempt in range(self.max_write_retries):
            try:
                await asyncio.to_thread(self.store.replace_document, document, chunks)
                return
            except IndexWriteError as e:
                last_error = e
                logger.warning(
                    f"Index write failed for {document.document_id} on attempt "
                    f"{attempt + 1}/{self.max_write_retries}: {e.message}"
                )
                if attempt < self.max_write_retries - 1:
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, 30.0)

        logger.error(f"Giving up on indexing document {document.document_id}")
        raise last_error
