"""Shared fixtures for the retrieval engine test suite."""
import asyncio
import sys
import zlib
from datetime import datetime, timezone
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import numpy as np
import pytest

from models.document import ContentType, Document
from services.chunking_engine import ChunkingEngine
from services.errors import PermanentEmbeddingError
from services.index_store import InMemoryIndexStore
from services.text_analysis import content_tokens

FIXED_NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class HashingEmbedder:
    """Deterministic bag-of-words embedder standing in for the embedding API."""

    def __init__(self, dimension: int = 64, delay: float = 0.0):
        self.dimension = dimension
        self.delay = delay
        self.calls = []
        self.fail_on = set()  # substrings that trigger a rejection
        self.warmed_up = False

    def vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype=np.float32)
        for token in content_tokens(text):
            vector[zlib.crc32(token.encode("utf-8")) % self.dimension] += 1.0
        if not vector.any():
            vector[0] = 1.0
        return vector

    async def embed_text(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        for marker in self.fail_on:
            if marker in text:
                raise PermanentEmbeddingError("Embedding API rejected the text", {"marker": marker})
        return self.vector(text)

    async def warmup(self) -> bool:
        self.warmed_up = True
        return True


def make_document(
    document_id: str,
    text: str,
    owner_id: str = "alice",
    content_timestamp: datetime = FIXED_NOW,
    name: str = None,
    content_type: ContentType = ContentType.TEXT,
    **metadata
) -> Document:
    return Document(
        document_id=document_id,
        owner_id=owner_id,
        name=name or f"{document_id}.txt",
        content_type=content_type,
        text=text,
        content_timestamp=content_timestamp,
        metadata=metadata
    )


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def store():
    return InMemoryIndexStore()


@pytest.fixture
def small_chunker():
    return ChunkingEngine(chunk_size=120, chunk_overlap=20)
