"""Unit tests for IndexWriter."""
import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import HashingEmbedder, make_document
from services.chunking_engine import ChunkingEngine
from services.errors import IndexWriteError, InvalidDocumentError, PermanentEmbeddingError, NotFoundError
from services.index_writer import IndexWriter

LONG_TEXT = " ".join(f"Sentence number {i} talks about topic {i % 7}." for i in range(40))


@pytest.fixture
def chunker():
    return ChunkingEngine(chunk_size=200, chunk_overlap=40)


@pytest.fixture
def writer(store, embedder, chunker):
    return IndexWriter(store, embedder, chunker, embedding_concurrency=3, initial_write_delay=0)


class TestIndexWriter:
    """Test suite for IndexWriter."""

    @pytest.mark.asyncio
    async def test_index_makes_chunks_queryable(self, writer, store):
        document = make_document("doc-1", LONG_TEXT)

        result = await writer.index(document)

        chunks = store.get_chunks("doc-1")
        assert result.chunk_count == len(chunks) > 1
        assert result.embeddings_reused == 0
        assert all(c.embedding is not None for c in chunks)
        assert all(c.lexical_signature for c in chunks)
        assert store.snapshot("alice").rank_by_keywords({"topic"})

    @pytest.mark.asyncio
    async def test_empty_text_is_rejected(self, writer, store):
        with pytest.raises(InvalidDocumentError):
            await writer.index(make_document("doc-1", "   "))
        assert store.get_document("doc-1") is None

    @pytest.mark.asyncio
    async def test_embedding_failure_leaves_nothing_indexed(self, writer, store, embedder):
        embedder.fail_on = {"number 35"}

        with pytest.raises(PermanentEmbeddingError):
            await writer.index(make_document("doc-1", LONG_TEXT))

        assert store.get_document("doc-1") is None
        assert store.count("alice") == 0

    @pytest.mark.asyncio
    async def test_failed_reindex_keeps_previous_version(self, writer, store, embedder):
        await writer.index(make_document("doc-1", "The original version of the note."))
        embedder.fail_on = {"poison"}

        with pytest.raises(PermanentEmbeddingError):
            await writer.index(make_document("doc-1", "A poison edit."))

        assert [c.text for c in store.get_chunks("doc-1")] == ["The original version of the note."]

    @pytest.mark.asyncio
    async def test_reindex_replaces_stale_chunks(self, writer, store):
        await writer.index(make_document("doc-1", LONG_TEXT))

        await writer.index(make_document("doc-1", "A much shorter replacement about gardening."))

        chunks = store.get_chunks("doc-1")
        assert [c.chunk_id for c in chunks] == ["doc-1:0"]
        assert store.snapshot("alice").rank_by_keywords({"topic"}) == []

    @pytest.mark.asyncio
    async def test_reindex_reuses_cached_embeddings(self, writer, embedder):
        document = make_document("doc-1", LONG_TEXT)
        first = await writer.index(document)
        calls = len(embedder.calls)

        second = await writer.index(make_document("doc-1", LONG_TEXT))

        assert second.embeddings_reused == first.chunk_count
        assert len(embedder.calls) == calls

    @pytest.mark.asyncio
    async def test_embedding_concurrency_is_bounded(self, store, chunker):
        class TrackingEmbedder(HashingEmbedder):
            def __init__(self):
                super().__init__(delay=0.01)
                self.active = 0
                self.peak = 0

            async def embed_text(self, text):
                self.active += 1
                self.peak = max(self.peak, self.active)
                try:
                    return await super().embed_text(text)
                finally:
                    self.active -= 1

        embedder = TrackingEmbedder()
        writer = IndexWriter(store, embedder, chunker, embedding_concurrency=2)

        await writer.index(make_document("doc-1", LONG_TEXT))

        assert embedder.peak == 2

    @pytest.mark.asyncio
    async def test_concurrent_reindex_last_writer_wins(self, store, chunker):
        embedder = HashingEmbedder(delay=0.01)
        writer = IndexWriter(store, embedder, chunker)

        await asyncio.gather(
            writer.index(make_document("doc-1", "First version about apples.")),
            writer.index(make_document("doc-1", "Second version about pears.")),
        )

        assert [c.text for c in store.get_chunks("doc-1")] == ["Second version about pears."]

    @pytest.mark.asyncio
    async def test_delete_waits_for_inflight_index(self, store, chunker):
        embedder = HashingEmbedder(delay=0.01)
        writer = IndexWriter(store, embedder, chunker)

        await asyncio.gather(
            writer.index(make_document("doc-1", "Soon to be deleted.")),
            writer.delete("doc-1"),
        )

        assert store.get_document("doc-1") is None
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_delete_unknown_document(self, writer):
        with pytest.raises(NotFoundError):
            await writer.delete("missing")

    @pytest.mark.asyncio
    async def test_require_new_rejects_indexed_id(self, writer, store, embedder):
        await writer.index(make_document("doc-1", "Original text about topic one."))
        embedder.calls.clear()

        with pytest.raises(InvalidDocumentError, match="already exists"):
            await writer.index(make_document("doc-1", "Replacement text."), require_new=True)

        assert embedder.calls == []
        assert store.get_document("doc-1").text == "Original text about topic one."

    @pytest.mark.asyncio
    async def test_require_existing_checks_id_and_owner(self, writer):
        await writer.index(make_document("doc-1", "Original text about topic one."))

        with pytest.raises(NotFoundError):
            await writer.index(make_document("missing", "Some text."), require_existing=True)
        with pytest.raises(NotFoundError):
            await writer.index(make_document("doc-1", "Some text.", owner_id="bob"), require_existing=True)

    @pytest.mark.asyncio
    async def test_write_is_retried(self, embedder, chunker):
        store = MagicMock()
        store.get_chunks.return_value = []
        store.replace_document.side_effect = [IndexWriteError("store unavailable"), None]
        writer = IndexWriter(store, embedder, chunker, max_write_retries=3, initial_write_delay=0)

        result = await writer.index(make_document("doc-1", "Retry me."))

        assert result.chunk_count == 1
        assert store.replace_document.call_count == 2

    @pytest.mark.asyncio
    async def test_write_gives_up_after_retries(self, embedder, chunker):
        store = MagicMock()
        store.get_chunks.return_value = []
        store.replace_document.side_effect = IndexWriteError("store unavailable")
        writer = IndexWriter(store, embedder, chunker, max_write_retries=3, initial_write_delay=0)

        with pytest.raises(IndexWriteError):
            await writer.index(make_document("doc-1", "Retry me."))

        assert store.replace_document.call_count == 3
