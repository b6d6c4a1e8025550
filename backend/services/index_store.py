"""Index storage: document arena with vector, lexical and temporal indexes per owner.

Writes publish a fresh immutable partition for the affected owner under a
lock (copy-on-write); readers take a snapshot, which is a single reference
read. A query therefore sees a document either with all of its chunks in
every index, or not at all.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

import numpy as np
from rank_bm25 import BM25Plus

from models.chunk import Chunk
from models.document import Document
from models.retrieval import TemporalRange
from services.errors import IndexWriteError, NotFoundError

logger = logging.getLogger(__name__)

# (chunk, owning document, raw strategy score)
ScoredCandidate = Tuple[Chunk, Document, float]


class StoreSnapshot(ABC):
    """Read-only, owner-scoped view of the indexes used by one query."""

    owner_id: str

    @abstractmethod
    def chunk_count(self) -> int:
        """Number of indexed chunks visible in this snapshot."""

    @abstractmethod
    def rank_by_vector(
        self,
        query_vector: np.ndarray,
        temporal_range: Optional[TemporalRange] = None
    ) -> List[ScoredCandidate]:
        """Chunks by descending cosine similarity; ties by newer content timestamp.

        With a range, only chunks of documents inside it are ranked.
        """

    @abstractmethod
    def rank_by_keywords(
        self,
        keywords: Iterable[str],
        temporal_range: Optional[TemporalRange] = None
    ) -> List[ScoredCandidate]:
        """Chunks sharing at least one keyword, by descending relevance; ties by chunk index.

        With a range, only chunks of documents inside it are ranked.
        """

    @abstractmethod
    def documents_in_range(self, temporal_range: TemporalRange) -> Set[str]:
        """Ids of documents whose content timestamp lies in the range."""

    @abstractmethod
    def document_versions(self, document_ids: Iterable[str]) -> Dict[str, datetime]:
        """`ingested_at` of each listed document still present; missing ids are omitted."""


class IndexStore(ABC):
    """Persistence for documents, chunks and their derived index entries."""

    @abstractmethod
    def replace_document(self, document: Document, chunks: List[Chunk]) -> None:
        """Atomically replace everything stored for the document with `chunks`."""

    @abstractmethod
    def delete_document(self, document_id: str, owner_id: Optional[str] = None) -> Document:
        """Remove a document and all its chunks; NotFoundError if unknown or owned by someone else."""

    @abstractmethod
    def delete_owner(self, owner_id: str) -> int:
        """Remove every document of an owner; returns how many were removed."""

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def get_chunks(self, document_id: str) -> List[Chunk]:
        ...

    @abstractmethod
    def list_documents(self, owner_id: str) -> List[Document]:
        ...

    @abstractmethod
    def count(self, owner_id: Optional[str] = None) -> int:
        """Number of indexed chunks, optionally for one owner."""

    @abstractmethod
    def snapshot(self, owner_id: str) -> StoreSnapshot:
        ...


def validate_chunk_set(document: Document, chunks: List[Chunk]) -> None:
    """Reject chunk sets that would leave the indexes inconsistent."""
    if not chunks:
        raise IndexWriteError("A document needs at least one chunk", {"document_id": document.document_id})

    dimension = None
    for expected_index, chunk in enumerate(chunks):
        if chunk.document_id != document.document_id or chunk.owner_id != document.owner_id:
            raise IndexWriteError(
                "Chunk does not belong to the document",
                {"document_id": document.document_id, "chunk_id": chunk.chunk_id}
            )
        if chunk.chunk_index != expected_index:
            raise IndexWriteError(
                "Chunk indexes must be contiguous and 0-based",
                {"document_id": document.document_id, "chunk_id": chunk.chunk_id}
            )
        if chunk.embedding is None:
            raise IndexWriteError("Chunk is missing its embedding", {"chunk_id": chunk.chunk_id})
        if dimension is None:
            dimension = chunk.embedding.shape[0]
        elif chunk.embedding.shape[0] != dimension:
            raise IndexWriteError("Chunk embeddings differ in dimensionality", {"chunk_id": chunk.chunk_id})


@dataclass(frozen=True)
class _OwnerPartition:
    documents: Mapping[str, Document]
    chunks_by_document: Mapping[str, Tuple[Chunk, ...]]
    chunks: Tuple[Chunk, ...]
    matrix: Optional[np.ndarray]  # L2-normalised embeddings, one row per chunk
    bm25: Optional[BM25Plus]


def _build_partition(
    documents: Dict[str, Document],
    chunks_by_document: Dict[str, Tuple[Chunk, ...]]
) -> _OwnerPartition:
    chunks = tuple(
        chunk
        for document_id in sorted(chunks_by_document)
        for chunk in chunks_by_document[document_id]
    )

    matrix = None
    bm25 = None
    if chunks:
        dimensions = {chunk.embedding.shape[0] for chunk in chunks}
        if len(dimensions) != 1:
            raise IndexWriteError("Embedding dimensionality differs from the owner's index", {"dimensions": sorted(dimensions)})
        matrix = np.vstack([chunk.embedding for chunk in chunks]).astype(np.float32)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        matrix = matrix / np.where(norms == 0, 1.0, norms)

        corpus = [list(chunk.lexical_signature.elements()) for chunk in chunks]
        if any(corpus):
            bm25 = BM25Plus(corpus)

    return _OwnerPartition(
        documents=MappingProxyType(dict(documents)),
        chunks_by_document=MappingProxyType(dict(chunks_by_document)),
        chunks=chunks,
        matrix=matrix,
        bm25=bm25,
    )


_EMPTY_PARTITION = _build_partition({}, {})


class InMemorySnapshot(StoreSnapshot):
    """Snapshot over one immutable owner partition."""

    def __init__(self, owner_id: str, partition: _OwnerPartition):
        self.owner_id = owner_id
        self._partition = partition

    def chunk_count(self) -> int:
        return len(self._partition.chunks)

    def rank_by_vector(
        self,
        query_vector: np.ndarray,
        temporal_range: Optional[TemporalRange] = None
    ) -> List[ScoredCandidate]:
        partition = self._partition
        if partition.matrix is None:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        if query.shape[0] != partition.matrix.shape[1]:
            raise ValueError(
                f"Query vector has dimension {query.shape[0]}, index has {partition.matrix.shape[1]}"
            )
        norm = np.linalg.norm(query)
        if norm == 0:
            return []
        similarities = partition.matrix @ (query / norm)

        candidates = [
            (chunk, partition.documents[chunk.document_id], float(similarity))
            for chunk, similarity in zip(partition.chunks, similarities)
            if self._in_range(chunk, temporal_range)
        ]
        candidates.sort(key=lambda c: (-c[2], -c[1].content_timestamp.timestamp(), c[0].chunk_id))
        return candidates

    def rank_by_keywords(
        self,
        keywords: Iterable[str],
        temporal_range: Optional[TemporalRange] = None
    ) -> List[ScoredCandidate]:
        partition = self._partition
        terms = sorted(set(keywords))
        if partition.bm25 is None or not terms:
            return []

        scores = partition.bm25.get_scores(terms)
        candidates = []
        for chunk, score in zip(partition.chunks, scores):
            # BM25+ gives every chunk a floor score; only actual matches count
            if any(term in chunk.lexical_signature for term in terms) and self._in_range(chunk, temporal_range):
                candidates.append((chunk, partition.documents[chunk.document_id], float(score)))

        candidates.sort(key=lambda c: (-c[2], c[0].chunk_index, c[0].chunk_id))
        return candidates

    def documents_in_range(self, temporal_range: TemporalRange) -> Set[str]:
        return {
            document_id
            for document_id, document in self._partition.documents.items()
            if temporal_range.contains(document.content_timestamp)
        }

    def document_versions(self, document_ids: Iterable[str]) -> Dict[str, datetime]:
        documents = self._partition.documents
        return {
            document_id: documents[document_id].ingested_at
            for document_id in document_ids
            if document_id in documents
        }

    def _in_range(self, chunk: Chunk, temporal_range: Optional[TemporalRange]) -> bool:
        if temporal_range is None:
            return True
        return temporal_range.contains(self._partition.documents[chunk.document_id].content_timestamp)


class InMemoryIndexStore(IndexStore):
    """Process-local arena of documents, partitioned by owner."""

    def __init__(self):
        self._lock = threading.Lock()
        self._partitions: Dict[str, _OwnerPartition] = {}
        self._document_owner: Dict[str, str] = {}
        logger.info("Initialized InMemoryIndexStore")

    def replace_document(self, document: Document, chunks: List[Chunk]) -> None:
        validate_chunk_set(document, chunks)

        with self._lock:
            partition = self._partitions.get(document.owner_id, _EMPTY_PARTITION)
            documents = dict(partition.documents)
            chunks_by_document = dict(partition.chunks_by_document)
            documents[document.document_id] = document
            chunks_by_document[document.document_id] = tuple(chunks)
            rebuilt = _build_partition(documents, chunks_by_document)

            previous_owner = self._document_owner.get(document.document_id)
            if previous_owner is not None and previous_owner != document.owner_id:
                self._partitions[previous_owner] = self._without(previous_owner, [document.document_id])

            self._partitions[document.owner_id] = rebuilt
            self._document_owner[document.document_id] = document.owner_id

        logger.debug(f"Stored {len(chunks)} chunks for document {document.document_id}")

    def delete_document(self, document_id: str, owner_id: Optional[str] = None) -> Document:
        with self._lock:
            current_owner = self._document_owner.get(document_id)
            if current_owner is None or (owner_id is not None and owner_id != current_owner):
                raise NotFoundError(f"Document {document_id} not found", {"document_id": document_id})

            document = self._partitions[current_owner].documents[document_id]
            self._partitions[current_owner] = self._without(current_owner, [document_id])
            del self._document_owner[document_id]

        logger.debug(f"Deleted document {document_id}")
        return document

    def delete_owner(self, owner_id: str) -> int:
        with self._lock:
            partition = self._partitions.pop(owner_id, None)
            if partition is None:
                return 0
            for document_id in partition.documents:
                self._document_owner.pop(document_id, None)
            return len(partition.documents)

    def get_document(self, document_id: str) -> Optional[Document]:
        owner_id = self._document_owner.get(document_id)
        if owner_id is None:
            return None
        return self._partitions.get(owner_id, _EMPTY_PARTITION).documents.get(document_id)

    def get_chunks(self, document_id: str) -> List[Chunk]:
        owner_id = self._document_owner.get(document_id)
        if owner_id is None:
            return []
        return list(self._partitions.get(owner_id, _EMPTY_PARTITION).chunks_by_document.get(document_id, ()))

    def list_documents(self, owner_id: str) -> List[Document]:
        documents = self._partitions.get(owner_id, _EMPTY_PARTITION).documents.values()
        return sorted(documents, key=lambda d: (-d.content_timestamp.timestamp(), d.document_id))

    def count(self, owner_id: Optional[str] = None) -> int:
        if owner_id is not None:
            return len(self._partitions.get(owner_id, _EMPTY_PARTITION).chunks)
        return sum(len(p.chunks) for p in list(self._partitions.values()))

    def snapshot(self, owner_id: str) -> StoreSnapshot:
        return InMemorySnapshot(owner_id, self._partitions.get(owner_id, _EMPTY_PARTITION))

    def _without(self, owner_id: str, document_ids: List[str]) -> _OwnerPartition:
        partition = self._partitions.get(owner_id, _EMPTY_PARTITION)
        documents = {k: v for k, v in partition.documents.items() if k not in document_ids}
        chunks_by_document = {k: v for k, v in partition.chunks_by_document.items() if k not in document_ids}
        return _build_partition(documents, chunks_by_document)
