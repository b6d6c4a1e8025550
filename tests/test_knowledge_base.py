"""Tests for the KnowledgeBase facade: ingest, delete, query and ask end to end."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest

from conftest import FIXED_NOW, HashingEmbedder, make_document
from models.retrieval import TemporalRange
from services.chunking_engine import ChunkingEngine
from services.context_assembler import ContextAssembler
from services.errors import InvalidDocumentError, NotFoundError, QueryError
from services.index_store import InMemoryIndexStore
from services.knowledge_base import KnowledgeBase, build_knowledge_base
from services.llm_client import FallbackAnswer, GeneratedAnswer
from services.query_analyzer import QueryAnalyzer
from services.retrieval_engine import TemporalFallbackPolicy

NOTES = {
    "launch": ("Launch plan: the product launch moves to September after the budget review.", 3),
    "budget": ("Budget review notes. The marketing budget grows by ten percent.", 12),
    "garden": ("Garden log: repotted the tomato seedlings and watered the basil.", 1),
}


def _knowledge_base(embedder=None, llm_client=None, **kwargs):
    store = InMemoryIndexStore()
    embedder = embedder or HashingEmbedder()
    return KnowledgeBase(
        store=store,
        embedding_model=embedder,
        chunking_engine=ChunkingEngine(chunk_size=200, chunk_overlap=20),
        analyzer=QueryAnalyzer(clock=lambda: FIXED_NOW),
        assembler=ContextAssembler(per_document_cap=2),
        llm_client=llm_client,
        **kwargs
    )


async def _ingest_notes(kb):
    for document_id, (text, age_days) in NOTES.items():
        await kb.ingest(make_document(document_id, text, content_timestamp=FIXED_NOW - timedelta(days=age_days)))


class TestKnowledgeBase:
    """Test suite for KnowledgeBase."""

    @pytest.mark.asyncio
    async def test_ingest_then_query(self):
        kb = _knowledge_base()
        await _ingest_notes(kb)

        result = await kb.query("alice", "budget review", max_chunks=5)

        document_ids = [c.document_id for c in result.chunks]
        assert set(document_ids[:2]) == {"launch", "budget"}
        assert result.chunks[0].score >= result.chunks[-1].score
        assert result.failed_strategies == []
        assert "budget" in result.analysis.keywords

    @pytest.mark.asyncio
    async def test_ingest_existing_id_is_rejected(self):
        kb = _knowledge_base()
        await _ingest_notes(kb)

        with pytest.raises(InvalidDocumentError):
            await kb.ingest(make_document("garden", "Something else"))

    @pytest.mark.asyncio
    async def test_concurrent_ingests_of_one_id(self):
        kb = _knowledge_base(embedder=HashingEmbedder(delay=0.02))

        results = await asyncio.gather(
            kb.ingest(make_document("same", "First version of the launch plan.")),
            kb.ingest(make_document("same", "Second version of the launch plan.")),
            return_exceptions=True
        )

        assert results[0] == "same"
        assert isinstance(results[1], InvalidDocumentError)
        document = await kb.get_document("same")
        assert document.text == "First version of the launch plan."

    @pytest.mark.asyncio
    async def test_reindex_racing_delete_finds_nothing(self):
        kb = _knowledge_base(embedder=HashingEmbedder(delay=0.02))
        await kb.ingest(make_document("garden", "Garden log: repotted the tomato seedlings."))

        results = await asyncio.gather(
            kb.delete("garden", "alice"),
            kb.reindex(make_document("garden", "Garden log: the peppers are flowering.")),
            return_exceptions=True
        )

        assert isinstance(results[1], NotFoundError)
        assert await kb.list_documents("alice") == []

    @pytest.mark.asyncio
    async def test_warmup_delegates_to_embedding_model(self):
        embedder = HashingEmbedder()
        kb = _knowledge_base(embedder=embedder)

        assert await kb.warmup() is True
        assert embedder.warmed_up is True

    @pytest.mark.asyncio
    async def test_reindex_requires_existing_document(self):
        kb = _knowledge_base()

        with pytest.raises(NotFoundError):
            await kb.reindex(make_document("missing", "text"))

    @pytest.mark.asyncio
    async def test_reindex_replaces_content(self):
        kb = _knowledge_base()
        await _ingest_notes(kb)

        await kb.reindex(make_document("garden", "Garden log: the peppers are flowering."))

        old = await kb.query("alice", "tomato seedlings")
        new = await kb.query("alice", "peppers flowering")
        assert all("tomato" not in c.text for c in old.chunks)
        assert new.chunks[0].document_id == "garden"

    @pytest.mark.asyncio
    async def test_query_validation(self):
        kb = _knowledge_base()

        with pytest.raises(QueryError):
            await kb.query("alice", "   ")
        with pytest.raises(QueryError):
            await kb.query("", "budget")
        with pytest.raises(QueryError):
            await kb.query("alice", "budget", max_chunks=0)

    @pytest.mark.asyncio
    async def test_max_chunks(self):
        kb = _knowledge_base()
        await _ingest_notes(kb)

        result = await kb.query("alice", "budget review", max_chunks=1)

        assert len(result.chunks) == 1

    @pytest.mark.asyncio
    async def test_delete_is_visible_to_subsequent_queries(self):
        kb = _knowledge_base()
        await _ingest_notes(kb)

        await kb.delete("budget")
        result = await kb.query("alice", "marketing budget review")

        assert "budget" not in {c.document_id for c in result.chunks}
        with pytest.raises(NotFoundError):
            await kb.get_document("budget")

    @pytest.mark.asyncio
    async def test_delete_checks_owner(self):
        kb = _knowledge_base()
        await _ingest_notes(kb)

        with pytest.raises(NotFoundError):
            await kb.delete("budget", owner_id="bob")
        assert (await kb.get_document("budget", "alice")).document_id == "budget"

    @pytest.mark.asyncio
    async def test_query_started_before_delete_is_consistent(self):
        kb = _knowledge_base(embedder=HashingEmbedder(delay=0.05))
        await _ingest_notes(kb)

        query = asyncio.create_task(kb.query("alice", "marketing budget review"))
        await asyncio.sleep(0)
        await kb.delete("budget")
        raced = await query
        after = await kb.query("alice", "marketing budget review")

        raced_budget = [c for c in raced.chunks if c.document_id == "budget"]
        assert all(set(c.strategies) == {"vector", "lexical"} for c in raced_budget)
        assert "budget" not in {c.document_id for c in after.chunks}

    @pytest.mark.asyncio
    async def test_temporal_phrase_restricts_results(self):
        kb = _knowledge_base()
        await _ingest_notes(kb)

        result = await kb.query("alice", "budget review last week")

        assert {c.document_id for c in result.chunks} <= {"launch", "garden"}
        assert "launch" in {c.document_id for c in result.chunks}
        assert result.temporal_range == TemporalRange(FIXED_NOW - timedelta(days=7), FIXED_NOW)

    @pytest.mark.asyncio
    async def test_explicit_range_with_relaxed_policy(self):
        kb = _knowledge_base()
        await _ingest_notes(kb)
        empty_range = TemporalRange(FIXED_NOW - timedelta(days=400), FIXED_NOW - timedelta(days=300))

        strict = await kb.query("alice", "budget", temporal_range=empty_range)
        relaxed = await kb.query(
            "alice", "budget", temporal_range=empty_range, temporal_policy=TemporalFallbackPolicy.RELAX
        )

        assert strict.chunks == []
        assert relaxed.temporal_relaxed is True
        assert relaxed.chunks

    @pytest.mark.asyncio
    async def test_list_stats_and_clear(self):
        kb = _knowledge_base()
        await _ingest_notes(kb)

        documents = await kb.list_documents("alice")
        stats = await kb.stats("alice")
        removed = await kb.clear_owner("alice")

        assert [d.document_id for d in documents] == ["garden", "launch", "budget"]
        assert stats == {"owner_id": "alice", "documents": 3, "chunks": 3}
        assert removed == 3
        assert await kb.list_documents("alice") == []

    @pytest.mark.asyncio
    async def test_ask_without_generator_falls_back(self):
        kb = _knowledge_base()
        await _ingest_notes(kb)

        answer, result = await kb.ask("alice", "tomato seedlings")

        assert isinstance(answer, FallbackAnswer)
        assert answer.degraded is True
        assert answer.sources[0] == "garden.txt"
        assert 'The most relevant is "garden.txt"' in answer.text
        assert result.chunks

    @pytest.mark.asyncio
    async def test_ask_uses_generator(self):
        llm_client = Mock()
        llm_client.answer = AsyncMock(return_value=GeneratedAnswer(
            text="You repotted the tomatoes.",
            sources=["garden.txt"],
            model_used="llama-3.1-8b-instant",
            tokens_input=100,
            tokens_output=10,
            latency_ms=50
        ))
        kb = _knowledge_base(llm_client=llm_client)
        await _ingest_notes(kb)

        answer, result = await kb.ask("alice", "tomato seedlings")

        assert answer.text == "You repotted the tomatoes."
        llm_client.answer.assert_awaited_once()
        query, context = llm_client.answer.await_args.args
        assert query == "tomato seedlings"
        assert context == result.chunks


class TestBuildKnowledgeBase:
    """Test suite for build_knowledge_base."""

    def test_memory_backend(self):
        with patch('services.knowledge_base.EmbeddingModel') as mock_embedding, \
                patch('services.knowledge_base.GROQ_API_KEY', None):
            kb = build_knowledge_base("memory")

        assert isinstance(kb.store, InMemoryIndexStore)
        assert kb.embedding_model is mock_embedding.return_value
        assert kb.llm_client is None

    def test_supabase_backend(self):
        with patch('services.knowledge_base.EmbeddingModel'), \
                patch('services.knowledge_base.LLMClient') as mock_llm, \
                patch('services.knowledge_base.GROQ_API_KEY', "test_key"), \
                patch('services.knowledge_base.SUPABASE_URL', "https://example.supabase.co"), \
                patch('services.knowledge_base.SUPABASE_KEY', "key"), \
                patch('services.vector_store.create_client') as mock_create:
            kb = build_knowledge_base("supabase")

        assert kb.store.client is mock_create.return_value
        assert kb.llm_client is mock_llm.return_value

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="STORE_BACKEND"):
            build_knowledge_base("redis")
