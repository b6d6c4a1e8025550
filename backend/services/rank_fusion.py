"""Reciprocal Rank Fusion of per-strategy ranked lists.

RRF only looks at positions, so cosine similarities and BM25 scores never
have to be normalised onto a common scale. Reference:
https://plg.uwaterloo.ca/~gvcormac/cormacksigir09-rrf.pdf
"""
import logging
from typing import Dict, List, Sequence

from models.retrieval import FusedResult, RetrievalResult
from services.errors import ConfigError
from config import RRF_K

logger = logging.getLogger(__name__)


def fuse(strategy_results: Sequence[Sequence[RetrievalResult]], k: int = RRF_K) -> List[FusedResult]:
    """
    Fuse ranked lists with RRF.

    A chunk at 1-indexed position r of a list gains 1 / (k + r); contributions
    are summed over the lists it appears in. Ordering is by fused score, then
    number of contributing strategies, then newer content timestamp, then
    chunk id.

    Args:
        strategy_results: One best-first list per strategy (empty lists allowed)
        k: RRF dampening constant

    Returns:
        Fused results, one per distinct chunk

    Raises:
        ConfigError: If k is not positive
    """
    if k <= 0:
        raise ConfigError("RRF k must be positive", {"k": k})

    fused: Dict[str, FusedResult] = {}
    for results in strategy_results:
        for position, result in enumerate(results, start=1):
            contribution = 1.0 / (k + position)
            entry = fused.get(result.chunk.chunk_id)
            if entry is None:
                fused[result.chunk.chunk_id] = FusedResult(
                    chunk=result.chunk,
                    document=result.document,
                    fused_score=contribution,
                    strategies=(result.strategy,)
                )
            else:
                entry.fused_score += contribution
                if result.strategy not in entry.strategies:
                    entry.strategies = entry.strategies + (result.strategy,)

    ordered = sorted(
        fused.values(),
        key=lambda f: (
            -f.fused_score,
            -len(f.strategies),
            -f.document.content_timestamp.timestamp(),
            f.chunk.chunk_id,
        )
    )
    logger.debug(f"Fused {sum(len(r) for r in strategy_results)} results into {len(ordered)} chunks")
    return ordered
