"""Context assembler: budgeted, diversity-capped selection of fused results."""
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from models.retrieval import ContextChunk, FusedResult
from services.errors import ConfigError
from services.token_counter import TokenCounter
from config import CONTEXT_BUDGET_UNIT, PER_DOCUMENT_CAP

logger = logging.getLogger(__name__)

BUDGET_UNITS = ("chars", "tokens")


class ContextAssembler:
    """Select fused results for the answer generator under a chunk count and a size budget."""

    def __init__(
        self,
        per_document_cap: int = PER_DOCUMENT_CAP,
        budget_unit: str = CONTEXT_BUDGET_UNIT,
        token_counter: Optional[TokenCounter] = None
    ):
        """
        Args:
            per_document_cap: Most chunks any single document may contribute
            budget_unit: "chars" or "tokens"
            token_counter: Required for the "tokens" unit (created when omitted)
        """
        if per_document_cap <= 0:
            raise ConfigError("per_document_cap must be positive", {"per_document_cap": per_document_cap})
        if budget_unit not in BUDGET_UNITS:
            raise ConfigError(f"budget_unit must be one of {BUDGET_UNITS}", {"budget_unit": budget_unit})

        self.per_document_cap = per_document_cap
        self.budget_unit = budget_unit
        if budget_unit == "tokens" and token_counter is None:
            token_counter = TokenCounter()
        self.token_counter = token_counter

    def assemble(self, fused_results: Sequence[FusedResult], max_chunks: int, max_budget: int) -> List[ContextChunk]:
        """
        Pick results in fused order.

        Chunks from a document that already reached the per-document cap are
        skipped. Selection stops at `max_chunks` or when the budget runs out;
        a chunk that only partly fits is cut to the remaining budget and
        flagged `truncated`, and ends the selection.

        Args:
            fused_results: Output of rank fusion, best first
            max_chunks: Maximum number of chunks to return
            max_budget: Maximum total size, in the configured unit

        Returns:
            Selected chunks with source attribution, in fused order
        """
        if max_chunks <= 0 or max_budget <= 0:
            return []

        selected: List[ContextChunk] = []
        per_document: Dict[str, int] = defaultdict(int)
        remaining = max_budget

        for result in fused_results:
            if len(selected) >= max_chunks or remaining <= 0:
                break
            document_id = result.document.document_id
            if per_document[document_id] >= self.per_document_cap:
                continue

            text = result.chunk.text
            cost = self._measure(text)
            truncated = False
            if cost > remaining:
                text = self._truncate(text, remaining)
                truncated = True
                cost = self._measure(text)
                if not text or cost > remaining:
                    break

            selected.append(self._to_context_chunk(result, text, truncated))
            per_document[document_id] += 1
            remaining -= cost
            if truncated:
                break

        logger.debug(
            f"Assembled {len(selected)} chunks using {max_budget - remaining}/{max_budget} {self.budget_unit}"
        )
        return selected

    def _measure(self, text: str) -> int:
        if self.budget_unit == "tokens":
            return self.token_counter.count(text)
        return len(text)

    def _truncate(self, text: str, budget: int) -> str:
        if self.budget_unit == "tokens":
            return self.token_counter.truncate(text, budget)
        return text[:budget]

    @staticmethod
    def _to_context_chunk(result: FusedResult, text: str, truncated: bool) -> ContextChunk:
        document = result.document
        return ContextChunk(
            chunk_id=result.chunk.chunk_id,
            document_id=document.document_id,
            document_name=document.name,
            content_type=document.content_type,
            content_timestamp=document.content_timestamp,
            source_url=document.source_url,
            chunk_index=result.chunk.chunk_index,
            text=text,
            score=result.fused_score,
            strategies=result.strategies,
            truncated=truncated
        )
