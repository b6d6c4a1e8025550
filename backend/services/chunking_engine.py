"""Chunking engine: structure-aware splitting with exact character overlap."""
import logging
import re
from bisect import bisect_right
from typing import List, Optional, Sequence

from models.document import Document
from models.chunk import Chunk, TextSpan
from config import CHUNK_SIZE, CHUNK_OVERLAP
from services.errors import ConfigError
from services.token_counter import TokenCounter

logger = logging.getLogger(__name__)

# Regex separators in priority order: paragraph, line, sentence end, whitespace.
DEFAULT_SEPARATORS = (r"\n\n", r"\n", r"[.!?]\s", r"\s")


class ChunkingEngine:
    """Segments document text into overlapping chunks that respect structural boundaries."""

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
        token_counter: Optional[TokenCounter] = None
    ):
        """
        Initialize ChunkingEngine.

        Args:
            chunk_size: Maximum chunk length in characters
            chunk_overlap: Characters shared by consecutive chunks
            separators: Regex separators, highest priority first
            token_counter: Optional counter used to fill Chunk.token_count

        Raises:
            ConfigError: If the size/overlap combination cannot produce progress
        """
        if chunk_size <= 0:
            raise ConfigError("chunk_size must be positive", {"chunk_size": chunk_size})
        if chunk_overlap < 0:
            raise ConfigError("chunk_overlap cannot be negative", {"chunk_overlap": chunk_overlap})
        if chunk_overlap >= chunk_size:
            raise ConfigError(
                "chunk_overlap must be smaller than chunk_size",
                {"chunk_size": chunk_size, "chunk_overlap": chunk_overlap}
            )
        if not separators:
            raise ConfigError("At least one separator is required")

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = tuple(separators)
        self.token_counter = token_counter

        # Pieces never exceed this, so every chunk can advance past its overlap prefix
        self._max_piece = chunk_size - chunk_overlap
        self._patterns = [re.compile(sep) for sep in self.separators]

    def chunk(self, text: str) -> List[TextSpan]:
        """
        Split text into ordered, overlapping spans.

        Every span is a contiguous slice of `text`; each span after the first
        starts exactly `chunk_overlap` characters before the previous one ends,
        and the last span ends at len(text).

        Args:
            text: Normalized document text

        Returns:
            List of TextSpan, empty for blank text
        """
        if not text or not text.strip():
            return []

        length = len(text)
        if length <= self.chunk_size:
            return [TextSpan(0, length, text)]

        boundaries = self._segment(text, 0, length, 0)

        spans = []
        start = 0
        while length - start > self.chunk_size:
            limit = start + self.chunk_size
            end = boundaries[bisect_right(boundaries, limit) - 1]
            if end <= start + self.chunk_overlap:
                end = limit
            spans.append(TextSpan(start, end, text[start:end]))
            start = end - self.chunk_overlap

        spans.append(TextSpan(start, length, text[start:length]))
        return spans

    def chunk_document(self, document: Document) -> List[Chunk]:
        """
        Chunk a document into Chunk models (no embedding or signature yet).

        Args:
            document: Document to chunk

        Returns:
            Chunks with contiguous 0-based indexes
        """
        spans = self.chunk(document.text)
        chunks = []
        for idx, span in enumerate(spans):
            chunks.append(Chunk(
                chunk_id=Chunk.make_id(document.document_id, idx),
                document_id=document.document_id,
                owner_id=document.owner_id,
                chunk_index=idx,
                start_offset=span.start,
                end_offset=span.end,
                text=span.text,
                char_count=len(span.text),
                token_count=self.token_counter.count(span.text) if self.token_counter else 0
            ))

        logger.info(f"Created {len(chunks)} chunks for document {document.document_id}")
        return chunks

    def _segment(self, text: str, start: int, end: int, level: int) -> List[int]:
        """
        Recursively find piece end offsets within text[start:end].

        Splits at the separator of the given level; pieces still longer than
        the piece limit recurse into the next separator, and past the last
        separator they are hard-split at character boundaries.

        Returns:
            Sorted piece end offsets, the last one being `end`
        """
        if end - start <= self._max_piece:
            return [end]

        if level >= len(self._patterns):
            return list(range(start + self._max_piece, end, self._max_piece)) + [end]

        cuts = [
            match.end()
            for match in self._patterns[level].finditer(text, start, end)
            if start < match.end() < end
        ]
        if not cuts:
            return self._segment(text, start, end, level + 1)

        boundaries = []
        piece_start = start
        for cut in cuts + [end]:
            if cut <= piece_start:
                continue
            if cut - piece_start <= self._max_piece:
                boundaries.append(cut)
            else:
                boundaries.extend(self._segment(text, piece_start, cut, level + 1))
            piece_start = cut
        return boundaries
