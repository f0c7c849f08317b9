"""
Evaluation pipeline: context → ranked, materialized recommendations.

Per context::

    snapshot = repository.load_active(context_type)      # once per type per batch
    guard check                                          # stale → cancelled
    cache lookup (CacheKey pins context version + rule_set_version)
    miss → filter_applicable → score_candidate → rank → guard check → cache put
    materialize each ranked candidate (Shown)

Failure handling
----------------
RepositoryUnavailable  → empty result, ``degraded=True``; logged at ERROR.
RuleEvaluationError    → absorbed per rule by the evaluator; the ids come
                         back in ``excluded_rule_ids``.  A ranking with
                         exclusions is not cached, so a transient failure is
                         not served from cache for a whole TTL.
CacheUnavailable       → the cache is bypassed for that call; logged.
Stale context          → empty result, ``cancelled=True``; nothing is
                         materialized or cached.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Callable, Optional, Protocol

from nba_recommender.cache.recommendation_cache import CacheKey, RankedResultCache
from nba_recommender.errors import CacheUnavailable, RepositoryUnavailable
from nba_recommender.evaluation.conditions import ConditionEvaluator
from nba_recommender.evaluation.ranker import DEFAULT_EPSILON, DEFAULT_TOP_N, rank
from nba_recommender.evaluation.scoring import ScoringEngine
from nba_recommender.lifecycle.tracker import LifecycleTracker
from nba_recommender.models.context import Context
from nba_recommender.models.recommendation import (
    EvaluationResult,
    RecommendationView,
    ScoredCandidate,
)
from nba_recommender.models.rule import RuleSnapshot
from nba_recommender.rules.repository import RuleRepository
from nba_recommender.utils.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class ContextGuard(Protocol):
    def is_current(self, context: Context) -> bool:
        """``False`` if the record was deleted or changed since ``context`` was built."""
        ...


class EvaluationPipeline:
    """Runs the evaluate path for one context or a batch of contexts.

    Attributes:
        repository: Versioned rule snapshots.
        evaluator:  Condition filter.
        scorer:     Scoring engine.
        tracker:    Materializes ranked candidates.
        cache:      Ranked-result cache, or ``None`` to disable caching.
        guard:      Staleness check, or ``None`` to skip it.
        top_n:      Maximum recommendations per context.
        epsilon:    Ranking score tolerance.
    """

    def __init__(
        self,
        repository: RuleRepository,
        evaluator: ConditionEvaluator,
        scorer: ScoringEngine,
        tracker: LifecycleTracker,
        cache: Optional[RankedResultCache] = None,
        guard: Optional[ContextGuard] = None,
        top_n: int = DEFAULT_TOP_N,
        epsilon: float = DEFAULT_EPSILON,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.evaluator = evaluator
        self.scorer = scorer
        self.tracker = tracker
        self.cache = cache
        self.guard = guard
        self.top_n = top_n
        self.epsilon = epsilon
        self._clock = clock

    def evaluate(self, context: Context, as_of: Optional[datetime] = None) -> EvaluationResult:
        return self.evaluate_batch([context], as_of=as_of)[0]

    def evaluate_batch(
        self,
        contexts: Iterable[Context],
        as_of: Optional[datetime] = None,
    ) -> list[EvaluationResult]:
        """Evaluate many contexts, fetching each context type's snapshot once.

        Every context in the call is scored against the same snapshot for its
        type and the same ``as_of``, even if a refresh publishes mid-batch.
        """
        contexts = list(contexts)
        as_of = ensure_utc(as_of) if as_of is not None else self._clock()

        snapshots: dict[str, RuleSnapshot | RepositoryUnavailable] = {}
        for context in contexts:
            if context.context_type not in snapshots:
                try:
                    snapshots[context.context_type] = self.repository.load_active(context.context_type)
                except RepositoryUnavailable as exc:
                    snapshots[context.context_type] = exc

        results: list[EvaluationResult] = []
        for context in contexts:
            snapshot = snapshots[context.context_type]
            if isinstance(snapshot, RepositoryUnavailable):
                logger.error(
                    "Degraded evaluation | context_id=%s | %s", context.context_id, snapshot
                )
                results.append(EvaluationResult(
                    context_type=context.context_type,
                    context_id=context.context_id,
                    degraded=True,
                ))
                continue
            results.append(self._evaluate_one(context, snapshot, as_of))

        logger.debug("Evaluated %d contexts as of %s", len(contexts), as_of.isoformat())
        return results

    # ── Internals ─────────────────────────────────────────────────────────────

    def _evaluate_one(
        self,
        context: Context,
        snapshot: RuleSnapshot,
        as_of: datetime,
    ) -> EvaluationResult:
        if not self._is_current(context):
            return self._cancelled(context, snapshot)

        key = CacheKey(
            context_type=context.context_type,
            context_id=context.context_id,
            context_version_hash=context.context_version_hash(),
            user_role=context.user_role,
            rule_set_version=snapshot.version,
        )
        excluded: tuple[str, ...] = ()
        ranked = self._cache_get(key)
        from_cache = ranked is not None

        if ranked is None:
            filtered = self.evaluator.filter_applicable(snapshot.rules, context)
            excluded = filtered.excluded_rule_ids
            candidates = [
                self.scorer.score_candidate(rule, context, as_of)
                for rule in filtered.applicable
            ]
            ranked = tuple(rank(candidates, n=self.top_n, epsilon=self.epsilon))

            if not self._is_current(context):
                return self._cancelled(context, snapshot)
            if not excluded:
                self._cache_put(key, ranked)

        views = tuple(
            RecommendationView.from_recommendation(
                self.tracker.materialize(context, candidate, snapshot.version)
            )
            for candidate in ranked
        )
        return EvaluationResult(
            context_type=context.context_type,
            context_id=context.context_id,
            recommendations=views,
            rule_set_version=snapshot.version,
            from_cache=from_cache,
            excluded_rule_ids=excluded,
        )

    def _is_current(self, context: Context) -> bool:
        return self.guard is None or self.guard.is_current(context)

    @staticmethod
    def _cancelled(context: Context, snapshot: RuleSnapshot) -> EvaluationResult:
        logger.info(
            "Evaluation cancelled: stale context | context_type=%s | context_id=%s",
            context.context_type, context.context_id,
        )
        return EvaluationResult(
            context_type=context.context_type,
            context_id=context.context_id,
            rule_set_version=snapshot.version,
            cancelled=True,
        )

    def _cache_get(self, key: CacheKey) -> Optional[tuple[ScoredCandidate, ...]]:
        if self.cache is None:
            return None
        try:
            cached = self.cache.get(key)
        except CacheUnavailable as exc:
            logger.warning("Cache unavailable on read, computing fresh: %s", exc)
            return None
        return tuple(cached) if cached is not None else None

    def _cache_put(self, key: CacheKey, ranked: Sequence[ScoredCandidate]) -> None:
        if self.cache is None:
            return
        try:
            self.cache.put(key, ranked)
        except CacheUnavailable as exc:
            logger.warning("Cache unavailable on write, result not cached: %s", exc)
