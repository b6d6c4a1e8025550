"""Chunk data models."""
from collections import Counter
from dataclasses import dataclass, field
from typing import NamedTuple, Optional
import numpy as np


class TextSpan(NamedTuple):
    """A contiguous slice [start, end) of a document's text."""
    start: int
    end: int
    text: str


@dataclass(eq=False)
class Chunk:
    """Represents a document chunk for retrieval."""
    chunk_id: str  # Format: "{document_id}:{chunk_index}"
    document_id: str
    owner_id: str
    chunk_index: int
    start_offset: int
    end_offset: int
    text: str
    char_count: int = 0
    token_count: int = 0
    embedding: Optional[np.ndarray] = None
    lexical_signature: Counter = field(default_factory=Counter)

    @staticmethod
    def make_id(document_id: str, chunk_index: int) -> str:
        return f"{document_id}:{chunk_index}"
