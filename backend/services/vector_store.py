"""Index store implementation using Supabase (Postgres + pgvector + full-text search)."""
import json
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import numpy as np
from supabase import create_client, Client

from models.chunk import Chunk
from models.document import Document
from models.retrieval import TemporalRange
from services.errors import IndexWriteError, NotFoundError
from services.index_store import IndexStore, ScoredCandidate, StoreSnapshot, validate_chunk_set
from config import SUPABASE_URL, SUPABASE_KEY, RETRIEVAL_TOP_N

logger = logging.getLogger(__name__)

# The database side is created once per project:
#
# CREATE TABLE documents (
#   document_id text PRIMARY KEY,
#   owner_id text NOT NULL,
#   name text NOT NULL,
#   content_type text NOT NULL,
#   text text NOT NULL,
#   content_timestamp timestamptz NOT NULL,
#   ingested_at timestamptz NOT NULL,
#   metadata jsonb NOT NULL DEFAULT '{}'
# );
# CREATE INDEX documents_owner_type ON documents (owner_id, content_type);
# CREATE INDEX documents_owner_time ON documents (owner_id, content_timestamp);
#
# CREATE TABLE document_chunks (
#   chunk_id text PRIMARY KEY,
#   document_id text NOT NULL REFERENCES documents ON DELETE CASCADE,
#   owner_id text NOT NULL,
#   chunk_index int NOT NULL,
#   start_offset int NOT NULL,
#   end_offset int NOT NULL,
#   text text NOT NULL,
#   char_count int NOT NULL,
#   token_count int NOT NULL,
#   embedding vector(768) NOT NULL,
#   lexical_signature jsonb NOT NULL,
#   lexical_tsv tsvector NOT NULL
# );
# CREATE INDEX document_chunks_owner ON document_chunks (owner_id);
# CREATE INDEX document_chunks_tsv ON document_chunks USING gin (lexical_tsv);
#
# -- Runs in one transaction: old chunk set out, new chunk set in.
# CREATE FUNCTION replace_document_chunks(p_document jsonb, p_chunks jsonb) RETURNS void
# LANGUAGE plpgsql AS $$
# BEGIN
#   DELETE FROM documents WHERE document_id = p_document->>'document_id';
#   INSERT INTO documents SELECT * FROM jsonb_populate_record(NULL::documents, p_document);
#   INSERT INTO document_chunks
#     SELECT c.chunk_id, c.document_id, c.owner_id, c.chunk_index, c.start_offset, c.end_offset,
#            c.text, c.char_count, c.token_count, c.embedding, c.lexical_signature,
#            to_tsvector('simple', c.lexical_text)
#     FROM jsonb_to_recordset(p_chunks) AS c(
#       chunk_id text, document_id text, owner_id text, chunk_index int, start_offset int,
#       end_offset int, text text, char_count int, token_count int, embedding vector(768),
#       lexical_signature jsonb, lexical_text text);
# END; $$;
#
# CREATE FUNCTION match_chunks(query_embedding vector(768), p_owner_id text, match_count int,
#                              p_start timestamptz DEFAULT NULL, p_end timestamptz DEFAULT NULL)
# RETURNS TABLE (chunk columns with text AS chunk_text, name text, content_type text, content_timestamp timestamptz,
#                ingested_at timestamptz, metadata jsonb, similarity float)
# -- joined with documents, WHERE owner_id = p_owner_id
# --   AND (p_start IS NULL OR content_timestamp >= p_start) AND (p_end IS NULL OR content_timestamp < p_end)
# -- ORDER BY embedding <=> query_embedding LIMIT match_count
#
# CREATE FUNCTION search_chunks_fts(p_owner_id text, p_terms text[], match_count int,
#                                   p_start timestamptz DEFAULT NULL, p_end timestamptz DEFAULT NULL)
# RETURNS TABLE (... same columns ..., rank float)
# -- WHERE lexical_tsv @@ to_tsquery('simple', (SELECT string_agg(quote_literal(t), ' | ')
# --                                             FROM unnest(p_terms) t))
# --   AND the same p_start/p_end bounds on content_timestamp
# -- ORDER BY ts_rank(lexical_tsv, query) DESC LIMIT match_count


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _parse_vector(value: Any) -> Optional[np.ndarray]:
    if value is None:
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return np.asarray(value, dtype=np.float32)


def _document_from_row(row: Dict[str, Any]) -> Document:
    return Document(
        document_id=row["document_id"],
        owner_id=row["owner_id"],
        name=row["name"],
        content_type=row["content_type"],
        text=row.get("text", ""),
        content_timestamp=_parse_timestamp(row["content_timestamp"]),
        ingested_at=_parse_timestamp(row["ingested_at"]),
        metadata=row.get("metadata") or {}
    )


def _chunk_from_row(row: Dict[str, Any]) -> Chunk:
    return Chunk(
        chunk_id=row["chunk_id"],
        document_id=row["document_id"],
        owner_id=row["owner_id"],
        chunk_index=row["chunk_index"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        text=row["chunk_text"] if "chunk_text" in row else row["text"],
        char_count=row.get("char_count", 0),
        token_count=row.get("token_count", 0),
        embedding=_parse_vector(row.get("embedding")),
        lexical_signature=Counter(row.get("lexical_signature") or {})
    )


class SupabaseSnapshot(StoreSnapshot):
    """
    Owner-scoped reads through Supabase RPCs.

    Each call is isolated by Postgres; a document is written and deleted in
    single transactions, so every call sees all of its chunks or none. Calls
    are separate transactions, so a write can land between two of them; the
    retriever closes that gap with `document_versions` once the ranked lists
    are joined.
    """

    def __init__(self, client: Client, owner_id: str, candidate_limit: int):
        self.client = client
        self.owner_id = owner_id
        self.candidate_limit = candidate_limit

    def chunk_count(self) -> int:
        response = (
            self.client.table("document_chunks")
            .select("chunk_id", count="exact")
            .eq("owner_id", self.owner_id)
            .execute()
        )
        return response.count if response.count is not None else 0

    def rank_by_vector(
        self,
        query_vector: np.ndarray,
        temporal_range: Optional[TemporalRange] = None
    ) -> List[ScoredCandidate]:
        response = self.client.rpc(
            "match_chunks",
            {
                "query_embedding": np.asarray(query_vector, dtype=float).tolist(),
                "p_owner_id": self.owner_id,
                "match_count": self.candidate_limit,
                **self._range_params(temporal_range)
            }
        ).execute()

        candidates = [
            (_chunk_from_row(row), _document_from_row(row), float(row["similarity"]))
            for row in response.data
        ]
        candidates.sort(key=lambda c: (-c[2], -c[1].content_timestamp.timestamp(), c[0].chunk_id))
        return candidates

    def rank_by_keywords(
        self,
        keywords: Iterable[str],
        temporal_range: Optional[TemporalRange] = None
    ) -> List[ScoredCandidate]:
        terms = sorted(set(keywords))
        if not terms:
            return []

        response = self.client.rpc(
            "search_chunks_fts",
            {
                "p_owner_id": self.owner_id,
                "p_terms": terms,
                "match_count": self.candidate_limit,
                **self._range_params(temporal_range)
            }
        ).execute()

        candidates = [
            (_chunk_from_row(row), _document_from_row(row), float(row["rank"]))
            for row in response.data
        ]
        candidates.sort(key=lambda c: (-c[2], c[0].chunk_index, c[0].chunk_id))
        return candidates

    def documents_in_range(self, temporal_range: TemporalRange) -> Set[str]:
        response = (
            self.client.table("documents")
            .select("document_id")
            .eq("owner_id", self.owner_id)
            .gte("content_timestamp", temporal_range.start.isoformat())
            .lt("content_timestamp", temporal_range.end.isoformat())
            .execute()
        )
        return {row["document_id"] for row in response.data}

    def document_versions(self, document_ids: Iterable[str]) -> Dict[str, datetime]:
        ids = sorted(set(document_ids))
        if not ids:
            return {}

        response = (
            self.client.table("documents")
            .select("document_id, ingested_at")
            .eq("owner_id", self.owner_id)
            .in_("document_id", ids)
            .execute()
        )
        return {row["document_id"]: _parse_timestamp(row["ingested_at"]) for row in response.data}

    @staticmethod
    def _range_params(temporal_range: Optional[TemporalRange]) -> Dict[str, Optional[str]]:
        # Applied inside the RPC before LIMIT so in-range rows are never cut off
        if temporal_range is None:
            return {"p_start": None, "p_end": None}
        return {"p_start": temporal_range.start.isoformat(), "p_end": temporal_range.end.isoformat()}


class SupabaseIndexStore(IndexStore):
    """Store documents and chunk index entries in Supabase Postgres."""

    def __init__(
        self,
        supabase_url: Optional[str] = SUPABASE_URL,
        supabase_key: Optional[str] = SUPABASE_KEY,
        candidate_limit: int = RETRIEVAL_TOP_N * 5
    ):
        """
        Initialize the store with a Supabase client.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase API key
            candidate_limit: Rows fetched per ranking RPC, after the temporal bounds

        Raises:
            ValueError: If Supabase credentials are missing
        """
        if not supabase_url or not supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")

        self.candidate_limit = candidate_limit
        self.client: Client = create_client(supabase_url, supabase_key)

        logger.info("Initialized SupabaseIndexStore")

    def replace_document(self, document: Document, chunks: List[Chunk]) -> None:
        validate_chunk_set(document, chunks)

        document_record = {
            "document_id": document.document_id,
            "owner_id": document.owner_id,
            "name": document.name,
            "content_type": document.content_type.value,
            "text": document.text,
            "content_timestamp": document.content_timestamp.isoformat(),
            "ingested_at": document.ingested_at.isoformat(),
            "metadata": document.metadata
        }
        chunk_records = [
            {
                "chunk_id": chunk.chunk_id,
                "document_id": chunk.document_id,
                "owner_id": chunk.owner_id,
                "chunk_index": chunk.chunk_index,
                "start_offset": chunk.start_offset,
                "end_offset": chunk.end_offset,
                "text": chunk.text,
                "char_count": chunk.char_count,
                "token_count": chunk.token_count,
                "embedding": chunk.embedding.astype(float).tolist(),
                "lexical_signature": dict(chunk.lexical_signature),
                "lexical_text": " ".join(chunk.lexical_signature.elements())
            }
            for chunk in chunks
        ]

        try:
            self.client.rpc(
                "replace_document_chunks",
                {"p_document": document_record, "p_chunks": chunk_records}
            ).execute()
        except Exception as e:
            error_msg = f"Failed to write document {document.document_id}: {str(e)}"
            logger.error(error_msg)
            raise IndexWriteError(error_msg, {"document_id": document.document_id}) from e

        logger.info(f"Stored {len(chunks)} chunks for document {document.document_id}")

    def delete_document(self, document_id: str, owner_id: Optional[str] = None) -> Document:
        document = self.get_document(document_id)
        if document is None or (owner_id is not None and document.owner_id != owner_id):
            raise NotFoundError(f"Document {document_id} not found", {"document_id": document_id})

        try:
            # Chunks go with it through ON DELETE CASCADE
            self.client.table("documents").delete().eq("document_id", document_id).execute()
        except Exception as e:
            error_msg = f"Failed to delete document {document_id}: {str(e)}"
            logger.error(error_msg)
            raise IndexWriteError(error_msg, {"document_id": document_id}) from e

        logger.info(f"Deleted document {document_id}")
        return document

    def delete_owner(self, owner_id: str) -> int:
        try:
            response = self.client.table("documents").delete().eq("owner_id", owner_id).execute()
        except Exception as e:
            error_msg = f"Failed to clear documents of owner {owner_id}: {str(e)}"
            logger.error(error_msg)
            raise IndexWriteError(error_msg, {"owner_id": owner_id}) from e
        return len(response.data or [])

    def get_document(self, document_id: str) -> Optional[Document]:
        response = self.client.table("documents").select("*").eq("document_id", document_id).execute()
        if not response.data:
            return None
        return _document_from_row(response.data[0])

    def get_chunks(self, document_id: str) -> List[Chunk]:
        response = (
            self.client.table("document_chunks")
            .select("*")
            .eq("document_id", document_id)
            .order("chunk_index")
            .execute()
        )
        return [_chunk_from_row(row) for row in response.data]

    def list_documents(self, owner_id: str) -> List[Document]:
        response = (
            self.client.table("documents")
            .select("*")
            .eq("owner_id", owner_id)
            .order("content_timestamp", desc=True)
            .execute()
        )
        return [_document_from_row(row) for row in response.data]

    def count(self, owner_id: Optional[str] = None) -> int:
        query = self.client.table("document_chunks").select("chunk_id", count="exact")
        if owner_id is not None:
            query = query.eq("owner_id", owner_id)
        response = query.execute()
        return response.count if response.count is not None else 0

    def snapshot(self, owner_id: str) -> StoreSnapshot:
        return SupabaseSnapshot(self.client, owner_id, self.candidate_limit)
