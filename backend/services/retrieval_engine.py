"""Retrieval engine: concurrent vector, lexical and temporal strategies over one snapshot."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Dict, FrozenSet, List, Optional, Set, Tuple

import numpy as np

from models.retrieval import (
    QueryAnalysis,
    RetrievalResult,
    TemporalRange,
    STRATEGY_LEXICAL,
    STRATEGY_TEMPORAL,
    STRATEGY_VECTOR,
)
from services.embedding_model import EmbeddingModel
from services.errors import ConfigError, QueryUnavailableError, StrategyTimeoutError
from services.index_store import IndexStore, ScoredCandidate, StoreSnapshot
from config import RETRIEVAL_TOP_N, STRATEGY_TIMEOUT_SECONDS, TEMPORAL_EMPTY_POLICY

logger = logging.getLogger(__name__)


class TemporalFallbackPolicy(str, Enum):
    """What to do when the temporal filter leaves no candidate documents."""
    STRICT = "strict"  # return empty strategy lists
    RELAX = "relax"    # search without the temporal filter


def resolve_temporal_policy(value) -> TemporalFallbackPolicy:
    """Parse a configured policy name, raising ConfigError for unknown values."""
    try:
        return TemporalFallbackPolicy(value)
    except ValueError:
        raise ConfigError(
            f"Unknown temporal policy '{value}'",
            {"allowed": [policy.value for policy in TemporalFallbackPolicy]}
        )


@dataclass
class RetrievalOutcome:
    """Per-strategy ranked lists of one query, ready for fusion."""
    ranked_lists: Dict[str, List[RetrievalResult]]
    temporal_range: Optional[TemporalRange] = None
    temporal_relaxed: bool = False
    failed_strategies: List[str] = field(default_factory=list)
    candidates_considered: int = 0


class RetrievalEngine:
    """Run the retrieval strategies of a query concurrently and join them before fusion."""

    def __init__(
        self,
        store: IndexStore,
        embedding_model: EmbeddingModel,
        top_n: int = RETRIEVAL_TOP_N,
        strategy_timeout: float = STRATEGY_TIMEOUT_SECONDS,
        temporal_policy: Optional[TemporalFallbackPolicy] = None
    ):
        """
        Initialize the retrieval engine.

        Args:
            store: IndexStore providing owner snapshots
            embedding_model: EmbeddingModel instance for query embedding
            top_n: Maximum results per strategy
            strategy_timeout: Seconds each strategy may take before it counts as failed
            temporal_policy: Default behaviour when the temporal filter empties the pool
                (defaults to TEMPORAL_EMPTY_POLICY)

        Raises:
            ConfigError: If the temporal policy is unknown
        """
        if top_n <= 0:
            raise ValueError("top_n must be positive")
        if strategy_timeout <= 0:
            raise ValueError("strategy_timeout must be positive")

        self.store = store
        self.embedding_model = embedding_model
        self.top_n = top_n
        self.strategy_timeout = strategy_timeout
        self.temporal_policy = resolve_temporal_policy(temporal_policy or TEMPORAL_EMPTY_POLICY)
        logger.info("Initialized RetrievalEngine")

    async def retrieve(
        self,
        analysis: QueryAnalysis,
        owner_id: str,
        temporal_range: Optional[TemporalRange] = None,
        top_n: Optional[int] = None,
        temporal_policy: Optional[TemporalFallbackPolicy] = None
    ) -> RetrievalOutcome:
        """
        Retrieve ranked lists for an analyzed query.

        The owner's snapshot is taken once, before any strategy starts, so a
        document deleted before this call is never returned. The temporal
        range is pushed into both searches so candidate limits apply to
        in-range chunks only. Once the lists are joined, the documents they
        reference are checked against the store once more; a document deleted
        or re-indexed while the strategies ran is dropped from every list.

        Args:
            analysis: Output of the query analyzer
            owner_id: Owner whose partition is searched
            temporal_range: Explicit range; overrides the analyzer's range
            top_n: Maximum results per strategy (defaults to the engine setting)
            temporal_policy: Overrides the engine's empty-pool policy

        Returns:
            RetrievalOutcome with one ranked list per successful strategy

        Raises:
            QueryUnavailableError: If every launched strategy failed, or the
                retrieved documents could not be confirmed
        """
        start_time = time.time()
        top_n = top_n or self.top_n
        policy = TemporalFallbackPolicy(temporal_policy or self.temporal_policy)
        temporal_range = temporal_range or analysis.temporal_range

        snapshot = self.store.snapshot(owner_id)

        strategies: Dict[str, Awaitable] = {
            STRATEGY_VECTOR: self._vector_search(snapshot, analysis.raw_query, temporal_range),
            STRATEGY_LEXICAL: self._lexical_search(snapshot, analysis.keywords, temporal_range),
        }
        if temporal_range is not None:
            strategies[STRATEGY_TEMPORAL] = self._temporal_filter(snapshot, temporal_range)

        outcomes = await self._run_all(strategies, owner_id)
        failed = [name for name, (_, error) in outcomes.items() if error is not None]
        if len(failed) == len(outcomes):
            raise QueryUnavailableError(
                "All retrieval strategies failed",
                {"owner_id": owner_id, "failures": {name: str(outcomes[name][1]) for name in failed}}
            )

        query_vector, vector_ranked = outcomes[STRATEGY_VECTOR][0] or (None, [])
        lexical_ranked = outcomes[STRATEGY_LEXICAL][0] or []

        relaxed = False
        if temporal_range is not None:
            allowed, temporal_error = outcomes[STRATEGY_TEMPORAL]
            if temporal_error is not None:
                # Fail closed: without the filter nothing can be shown to be in range
                allowed = set()
            elif not allowed and policy is TemporalFallbackPolicy.RELAX:
                logger.info(f"Temporal filter {temporal_range} matched no documents; relaxing")
                relaxed = True
                vector_ranked, lexical_ranked = await self._search_unbounded(
                    snapshot, analysis.keywords, query_vector, outcomes, failed, owner_id
                )

            if not relaxed:
                vector_ranked = self._filter(vector_ranked, allowed)
                lexical_ranked = self._filter(lexical_ranked, allowed)

        vector_ranked, lexical_ranked = await self._drop_stale(snapshot, vector_ranked, lexical_ranked, owner_id)
        candidates_considered = len({c[0].chunk_id for c in vector_ranked} | {c[0].chunk_id for c in lexical_ranked})

        ranked_lists = {}
        if STRATEGY_VECTOR not in failed:
            ranked_lists[STRATEGY_VECTOR] = self._to_results(vector_ranked, STRATEGY_VECTOR, top_n)
        if STRATEGY_LEXICAL not in failed:
            ranked_lists[STRATEGY_LEXICAL] = self._to_results(lexical_ranked, STRATEGY_LEXICAL, top_n)

        latency_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Retrieved {', '.join(f'{k}={len(v)}' for k, v in ranked_lists.items())} "
            f"in {latency_ms}ms (failed: {failed or 'none'})",
            extra={"owner_id": owner_id, "latency_ms": latency_ms}
        )

        return RetrievalOutcome(
            ranked_lists=ranked_lists,
            temporal_range=temporal_range,
            temporal_relaxed=relaxed,
            failed_strategies=failed,
            candidates_considered=candidates_considered
        )

    async def _run_all(
        self,
        strategies: Dict[str, Awaitable],
        owner_id: str
    ) -> Dict[str, Tuple[object, Optional[Exception]]]:
        tasks = {
            name: asyncio.create_task(self._run_strategy(name, coro, owner_id))
            for name, coro in strategies.items()
        }
        try:
            await asyncio.gather(*tasks.values())
        finally:
            # Reached with pending tasks only when this query itself was cancelled
            for task in tasks.values():
                if not task.done():
                    task.cancel()
        return {name: task.result() for name, task in tasks.items()}

    async def _search_unbounded(
        self,
        snapshot: StoreSnapshot,
        keywords: FrozenSet[str],
        query_vector: Optional[np.ndarray],
        outcomes: Dict[str, Tuple[object, Optional[Exception]]],
        failed: List[str],
        owner_id: str
    ) -> Tuple[List[ScoredCandidate], List[ScoredCandidate]]:
        """Re-run the successful searches without the temporal bounds."""
        strategies: Dict[str, Awaitable] = {}
        if outcomes[STRATEGY_VECTOR][1] is None:
            strategies[STRATEGY_VECTOR] = asyncio.to_thread(snapshot.rank_by_vector, query_vector)
        if outcomes[STRATEGY_LEXICAL][1] is None:
            strategies[STRATEGY_LEXICAL] = self._lexical_search(snapshot, keywords)

        rerun = await self._run_all(strategies, owner_id)
        for name, (_, error) in rerun.items():
            if error is not None:
                failed.append(name)

        vector_ranked = rerun.get(STRATEGY_VECTOR, (None, None))[0] or []
        lexical_ranked = rerun.get(STRATEGY_LEXICAL, (None, None))[0] or []
        return vector_ranked, lexical_ranked

    async def _drop_stale(
        self,
        snapshot: StoreSnapshot,
        vector_ranked: List[ScoredCandidate],
        lexical_ranked: List[ScoredCandidate],
        owner_id: str
    ) -> Tuple[List[ScoredCandidate], List[ScoredCandidate]]:
        """Keep only candidates whose document version is still the stored one."""
        candidates = vector_ranked + lexical_ranked
        if not candidates:
            return vector_ranked, lexical_ranked

        document_ids = {candidate[0].document_id for candidate in candidates}
        try:
            versions = await asyncio.wait_for(
                asyncio.to_thread(snapshot.document_versions, document_ids),
                timeout=self.strategy_timeout
            )
        except Exception as e:
            logger.error(f"Could not confirm retrieved documents: {e}", extra={"owner_id": owner_id})
            raise QueryUnavailableError(
                "Could not confirm retrieved documents",
                {"owner_id": owner_id, "error": str(e)}
            ) from e

        def current(candidate: ScoredCandidate) -> bool:
            return versions.get(candidate[1].document_id) == candidate[1].ingested_at

        stale = {c[1].document_id for c in candidates if not current(c)}
        if stale:
            logger.info(
                f"Dropped {len(stale)} documents changed during retrieval",
                extra={"owner_id": owner_id, "document_ids": sorted(stale)}
            )
            vector_ranked = [c for c in vector_ranked if c[1].document_id not in stale]
            lexical_ranked = [c for c in lexical_ranked if c[1].document_id not in stale]
        return vector_ranked, lexical_ranked

    async def _run_strategy(self, name: str, coro: Awaitable, owner_id: str) -> Tuple[object, Optional[Exception]]:
        """Await one strategy under its deadline; failures become (None, error)."""
        try:
            return await asyncio.wait_for(coro, timeout=self.strategy_timeout), None
        except asyncio.TimeoutError:
            error = StrategyTimeoutError(
                f"Strategy '{name}' exceeded {self.strategy_timeout}s",
                {"strategy": name, "timeout": self.strategy_timeout}
            )
            logger.warning(error.message, extra={"owner_id": owner_id, "strategy": name})
            return None, error
        except Exception as e:
            logger.warning(
                f"Strategy '{name}' failed: {e}",
                exc_info=True,
                extra={"owner_id": owner_id, "strategy": name}
            )
            return None, e

    async def _vector_search(
        self,
        snapshot: StoreSnapshot,
        raw_query: str,
        temporal_range: Optional[TemporalRange]
    ) -> Tuple[np.ndarray, List[ScoredCandidate]]:
        query_embedding = await self.embedding_model.embed_text(raw_query)
        ranked = await asyncio.to_thread(snapshot.rank_by_vector, query_embedding, temporal_range)
        return query_embedding, ranked

    async def _lexical_search(
        self,
        snapshot: StoreSnapshot,
        keywords: FrozenSet[str],
        temporal_range: Optional[TemporalRange] = None
    ) -> List[ScoredCandidate]:
        if not keywords:
            return []
        return await asyncio.to_thread(snapshot.rank_by_keywords, keywords, temporal_range)

    async def _temporal_filter(self, snapshot: StoreSnapshot, temporal_range: TemporalRange) -> Set[str]:
        return await asyncio.to_thread(snapshot.documents_in_range, temporal_range)

    @staticmethod
    def _filter(ranked: List[ScoredCandidate], allowed: Set[str]) -> List[ScoredCandidate]:
        return [candidate for candidate in ranked if candidate[0].document_id in allowed]

    @staticmethod
    def _to_results(ranked: List[ScoredCandidate], strategy: str, top_n: int) -> List[RetrievalResult]:
        return [
            RetrievalResult(chunk=chunk, document=document, strategy=strategy, rank=rank, score=score)
            for rank, (chunk, document, score) in enumerate(ranked[:top_n], start=1)
        ]
