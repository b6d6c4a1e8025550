"""Unit tests for the in-memory index store."""
from datetime import timedelta

import numpy as np
import pytest

from conftest import FIXED_NOW, HashingEmbedder, make_document
from models.chunk import Chunk
from models.retrieval import TemporalRange
from services.errors import IndexWriteError, NotFoundError
from services.text_analysis import lexical_signature


def _chunks(document, texts, embedder):
    chunks = []
    offset = 0
    for index, text in enumerate(texts):
        chunks.append(Chunk(
            chunk_id=Chunk.make_id(document.document_id, index),
            document_id=document.document_id,
            owner_id=document.owner_id,
            chunk_index=index,
            start_offset=offset,
            end_offset=offset + len(text),
            text=text,
            char_count=len(text),
            embedding=embedder.vector(text),
            lexical_signature=lexical_signature(text)
        ))
        offset += len(text)
    return chunks


def _put(store, embedder, document_id, texts, **kwargs):
    document = make_document(document_id, " ".join(texts), **kwargs)
    store.replace_document(document, _chunks(document, texts, embedder))
    return document


class TestInMemoryIndexStore:
    """Test suite for InMemoryIndexStore."""

    def test_replace_and_read_back(self, store, embedder):
        _put(store, embedder, "doc-1", ["garden tomatoes", "compost schedule"])

        assert store.get_document("doc-1").name == "doc-1.txt"
        assert [c.chunk_id for c in store.get_chunks("doc-1")] == ["doc-1:0", "doc-1:1"]
        assert store.count("alice") == 2
        assert store.count() == 2

    def test_replace_drops_stale_chunks(self, store, embedder):
        _put(store, embedder, "doc-1", ["old one", "old two", "old three"])
        _put(store, embedder, "doc-1", ["new text"])

        chunks = store.get_chunks("doc-1")
        assert [c.text for c in chunks] == ["new text"]
        snapshot = store.snapshot("alice")
        assert [c.text for c, _, _ in snapshot.rank_by_keywords({"old"})] == []
        assert snapshot.chunk_count() == 1

    def test_invalid_chunk_sets_are_rejected(self, store, embedder):
        document = make_document("doc-1", "text")
        chunks = _chunks(document, ["a b", "c d"], embedder)

        with pytest.raises(IndexWriteError):
            store.replace_document(document, [])

        chunks[1].chunk_index = 5
        with pytest.raises(IndexWriteError):
            store.replace_document(document, chunks)

        chunks = _chunks(document, ["a b"], embedder)
        chunks[0].embedding = None
        with pytest.raises(IndexWriteError):
            store.replace_document(document, chunks)

        assert store.get_document("doc-1") is None

    def test_dimension_mismatch_leaves_store_unchanged(self, store, embedder):
        _put(store, embedder, "doc-1", ["first document"])
        other = HashingEmbedder(dimension=32)

        with pytest.raises(IndexWriteError):
            _put(store, other, "doc-2", ["second document"])

        assert store.get_document("doc-2") is None
        assert store.count("alice") == 1

    def test_delete_document(self, store, embedder):
        _put(store, embedder, "doc-1", ["garden tomatoes"])

        deleted = store.delete_document("doc-1")

        assert deleted.document_id == "doc-1"
        assert store.get_document("doc-1") is None
        assert store.get_chunks("doc-1") == []
        assert store.snapshot("alice").chunk_count() == 0

    def test_delete_unknown_or_foreign_document(self, store, embedder):
        _put(store, embedder, "doc-1", ["garden tomatoes"])

        with pytest.raises(NotFoundError):
            store.delete_document("missing")
        with pytest.raises(NotFoundError):
            store.delete_document("doc-1", owner_id="bob")
        assert store.get_document("doc-1") is not None

    def test_delete_owner(self, store, embedder):
        _put(store, embedder, "doc-1", ["one"])
        _put(store, embedder, "doc-2", ["two"])
        _put(store, embedder, "doc-3", ["three"], owner_id="bob")

        assert store.delete_owner("alice") == 2
        assert store.list_documents("alice") == []
        assert store.count("bob") == 1
        assert store.delete_owner("alice") == 0

    def test_owner_move(self, store, embedder):
        _put(store, embedder, "doc-1", ["shared note"])
        _put(store, embedder, "doc-1", ["shared note"], owner_id="bob")

        assert store.list_documents("alice") == []
        assert [d.document_id for d in store.list_documents("bob")] == ["doc-1"]

    def test_list_documents_newest_first(self, store, embedder):
        _put(store, embedder, "old", ["x"], content_timestamp=FIXED_NOW - timedelta(days=9))
        _put(store, embedder, "new", ["y"], content_timestamp=FIXED_NOW)

        assert [d.document_id for d in store.list_documents("alice")] == ["new", "old"]

    def test_snapshot_is_isolated_from_later_writes(self, store, embedder):
        _put(store, embedder, "doc-1", ["garden tomatoes"])
        snapshot = store.snapshot("alice")

        store.delete_document("doc-1")
        _put(store, embedder, "doc-2", ["garden peppers"])

        assert [c.chunk_id for c, _, _ in snapshot.rank_by_keywords({"garden"})] == ["doc-1:0"]
        assert [c.chunk_id for c, _, _ in store.snapshot("alice").rank_by_keywords({"garden"})] == ["doc-2:0"]


class TestInMemorySnapshot:
    """Test suite for snapshot ranking."""

    def test_vector_ranking_by_cosine(self, store, embedder):
        _put(store, embedder, "tomatoes", ["tomatoes basil garden"])
        _put(store, embedder, "taxes", ["quarterly taxes invoice"])

        ranked = store.snapshot("alice").rank_by_vector(embedder.vector("garden tomatoes"))

        assert ranked[0][1].document_id == "tomatoes"
        assert ranked[0][2] > ranked[1][2]

    def test_vector_ties_prefer_newer_content(self, store, embedder):
        _put(store, embedder, "old", ["identical text"], content_timestamp=FIXED_NOW - timedelta(days=3))
        _put(store, embedder, "new", ["identical text"], content_timestamp=FIXED_NOW)

        ranked = store.snapshot("alice").rank_by_vector(embedder.vector("identical text"))

        assert [d.document_id for _, d, _ in ranked] == ["new", "old"]

    def test_vector_dimension_mismatch_raises(self, store, embedder):
        _put(store, embedder, "doc-1", ["text"])
        with pytest.raises(ValueError):
            store.snapshot("alice").rank_by_vector(np.ones(3, dtype=np.float32))

    def test_keyword_ranking_only_returns_matches(self, store, embedder):
        _put(store, embedder, "doc-1", ["budget budget review", "holiday photos"])
        _put(store, embedder, "doc-2", ["budget draft"])

        ranked = store.snapshot("alice").rank_by_keywords({"budget"})

        assert {c.chunk_id for c, _, _ in ranked} == {"doc-1:0", "doc-2:0"}
        assert ranked[0][0].chunk_id == "doc-1:0"

    def test_keyword_ranking_empty_inputs(self, store, embedder):
        assert store.snapshot("alice").rank_by_keywords({"budget"}) == []
        _put(store, embedder, "doc-1", ["budget"])
        assert store.snapshot("alice").rank_by_keywords(set()) == []

    def test_owner_scoping(self, store, embedder):
        _put(store, embedder, "mine", ["budget plan"])
        _put(store, embedder, "theirs", ["budget plan"], owner_id="bob")

        snapshot = store.snapshot("alice")

        assert {d.document_id for _, d, _ in snapshot.rank_by_keywords({"budget"})} == {"mine"}
        assert {d.document_id for _, d, _ in snapshot.rank_by_vector(embedder.vector("budget"))} == {"mine"}

    def test_documents_in_range_is_half_open(self, store, embedder):
        _put(store, embedder, "start", ["a"], content_timestamp=FIXED_NOW - timedelta(days=7))
        _put(store, embedder, "inside", ["b"], content_timestamp=FIXED_NOW - timedelta(days=2))
        _put(store, embedder, "end", ["c"], content_timestamp=FIXED_NOW)

        allowed = store.snapshot("alice").documents_in_range(
            TemporalRange(FIXED_NOW - timedelta(days=7), FIXED_NOW)
        )

        assert allowed == {"start", "inside"}

    def test_keyword_ties_prefer_lower_chunk_index(self, store, embedder):
        _put(store, embedder, "a", ["holiday photos", "budget review"])
        _put(store, embedder, "b", ["budget review"])

        ranked = store.snapshot("alice").rank_by_keywords({"budget"})

        assert ranked[0][2] == ranked[1][2]
        assert [c.chunk_id for c, _, _ in ranked] == ["b:0", "a:1"]

    def test_rankings_apply_temporal_range(self, store, embedder):
        _put(store, embedder, "old", ["budget review"], content_timestamp=FIXED_NOW - timedelta(days=30))
        _put(store, embedder, "recent", ["budget draft"], content_timestamp=FIXED_NOW - timedelta(days=2))
        last_week = TemporalRange(FIXED_NOW - timedelta(days=7), FIXED_NOW)
        snapshot = store.snapshot("alice")

        by_vector = snapshot.rank_by_vector(embedder.vector("budget review"), last_week)
        by_keywords = snapshot.rank_by_keywords({"budget"}, last_week)

        assert [d.document_id for _, d, _ in by_vector] == ["recent"]
        assert [d.document_id for _, d, _ in by_keywords] == ["recent"]

    def test_document_versions(self, store, embedder):
        kept = _put(store, embedder, "kept", ["budget"])
        _put(store, embedder, "theirs", ["budget"], owner_id="bob")

        versions = store.snapshot("alice").document_versions(["kept", "theirs", "missing"])

        assert versions == {"kept": kept.ingested_at}
