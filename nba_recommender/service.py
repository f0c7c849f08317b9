"""
RecommendationService — the external interface of the recommender.

Evaluate
    ``evaluate(request, as_of=None)`` / ``evaluate_batch(requests, as_of=None)``
    return ranked ``EvaluationResult`` objects; each item carries
    ``recommendation_id, rule_id, action_type, score, priority_tier, reason,
    target_object_ref, suggested_action``.

Execute
    ``execute(recommendation_id, payload, actor_id)`` validates the
    transition, delegates the side effect to the ``ActionExecutor`` and
    records the result.  A repeated call returns the recorded result without
    calling the executor again.  If recording fails, the executor result is
    held in memory and recorded by the next ``execute`` for that id.

Queries
    ``get_recommendation``, ``history``, ``list_recommendations``.

Lifecycle reporting
    ``record_shown``, ``record_response``, ``record_executed``.

Rule configuration changes reach the service through the ``RulePoller`` or
an explicit ``invalidate_rules`` call from the configuration store.

Use ``build_service(config)`` to wire the components from an ``AppConfig``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Optional

from nba_recommender.audit.sink import InMemoryAuditSink, SqliteAuditSink
from nba_recommender.cache.recommendation_cache import RecommendationCache
from nba_recommender.config import AppConfig
from nba_recommender.evaluation.conditions import ConditionEvaluator, DecisionRegistry
from nba_recommender.evaluation.modifiers import ModifierRegistry
from nba_recommender.evaluation.pipeline import ContextGuard, EvaluationPipeline
from nba_recommender.evaluation.scoring import ScoringEngine
from nba_recommender.executor import ActionExecutor, HandlerActionExecutor, run_executor
from nba_recommender.lifecycle.store import InMemoryRecommendationStore, SqliteRecommendationStore
from nba_recommender.lifecycle.tracker import LifecycleTracker, TransitionOutcome
from nba_recommender.models.context import Context
from nba_recommender.models.recommendation import (
    AuditEvent,
    EvaluationResult,
    ExecutionResult,
    Recommendation,
)
from nba_recommender.rules.poller import RulePoller
from nba_recommender.rules.repository import RuleRepository
from nba_recommender.rules.sources import RuleSource, SqliteRuleSource, TomlRuleSource

logger = logging.getLogger(__name__)

ContextRequest = Context | Mapping[str, Any]


def _as_context(request: ContextRequest) -> Context:
    if isinstance(request, Context):
        return request
    return Context.model_validate(dict(request))


class RecommendationService:
    """Facade over the evaluation pipeline, lifecycle tracker and executor.

    Attributes:
        repository: Rule snapshots (exposed for invalidation and inspection).
        pipeline:   Evaluate path.
        tracker:    Lifecycle state machine.
        executor:   Action Executor collaborator.
        cache:      Ranked-result cache, if enabled.
        poller:     Background rule refresher, if configured.
    """

    def __init__(
        self,
        repository: RuleRepository,
        pipeline: EvaluationPipeline,
        tracker: LifecycleTracker,
        executor: ActionExecutor,
        cache: Optional[RecommendationCache] = None,
        poller: Optional[RulePoller] = None,
        worker_pool: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.tracker = tracker
        self.executor = executor
        self.cache = cache
        self.poller = poller
        self._worker_pool = worker_pool
        self._unrecorded: dict[str, ExecutionResult] = {}

    # ── Evaluate ──────────────────────────────────────────────────────────────

    def evaluate(
        self, request: ContextRequest, as_of: Optional[datetime] = None
    ) -> EvaluationResult:
        return self.pipeline.evaluate(_as_context(request), as_of=as_of)

    def evaluate_batch(
        self, requests: Iterable[ContextRequest], as_of: Optional[datetime] = None
    ) -> list[EvaluationResult]:
        return self.pipeline.evaluate_batch([_as_context(r) for r in requests], as_of=as_of)

    # ── Execute ───────────────────────────────────────────────────────────────

    def execute(
        self,
        recommendation_id: str,
        payload: Optional[Mapping[str, Any]] = None,
        actor_id: str = "system",
    ) -> ExecutionResult:
        """Perform a recommendation's action once.

        If the executor ran but its result could not be recorded, the result
        is held and recorded by the next call instead of running the action
        again.

        Raises:
            UnknownRecommendation: If the id was never materialized.
            InvalidTransition: If the recommendation may not be executed from
                its current status; the executor is not called.
        """
        with self.tracker.lock_for(recommendation_id):
            prior = self.tracker.check_execution(recommendation_id)
            if prior is not None:
                logger.info("Execute repeated, returning recorded result | %s", recommendation_id)
                self._unrecorded.pop(recommendation_id, None)
                result = prior.recommendation.execution_result()
                assert result is not None
                return result

            result = self._unrecorded.pop(recommendation_id, None)
            if result is None:
                rec = self.tracker.get(recommendation_id)
                result = run_executor(self.executor, rec, dict(payload or {}))
            try:
                self.tracker.record_executed(recommendation_id, result, actor_id=actor_id)
            except Exception:
                self._unrecorded[recommendation_id] = result
                logger.error(
                    "Execution result not recorded, held for the next execute | %s",
                    recommendation_id,
                )
                raise
            return result

    # ── Lifecycle reporting ───────────────────────────────────────────────────

    def record_shown(
        self, recommendation_ids: Iterable[str], actor_id: str = "system"
    ) -> list[TransitionOutcome]:
        return self.tracker.record_shown(recommendation_ids, actor_id=actor_id)

    def record_response(
        self, recommendation_id: str, accepted: bool, actor_id: str = "system"
    ) -> TransitionOutcome:
        return self.tracker.record_response(recommendation_id, accepted, actor_id=actor_id)

    def record_executed(
        self, recommendation_id: str, result: ExecutionResult, actor_id: str = "system"
    ) -> TransitionOutcome:
        return self.tracker.record_executed(recommendation_id, result, actor_id=actor_id)

    def get_recommendation(self, recommendation_id: str) -> Recommendation:
        return self.tracker.get(recommendation_id)

    def history(self, recommendation_id: str) -> list[AuditEvent]:
        return self.tracker.history(recommendation_id)

    def list_recommendations(self, context_type: str, context_id: str) -> list[Recommendation]:
        """Every recommendation materialized for a context, oldest first."""
        return self.tracker.list_for_context(context_type, context_id)

    # ── Invalidation ──────────────────────────────────────────────────────────

    def invalidate_rules(self, context_type: Optional[str] = None) -> dict[str, int]:
        """Reload rules after a configuration change; returns published versions."""
        return self.repository.invalidate(context_type)

    def invalidate_context(self, context_id: str) -> int:
        """Drop cached rankings for a context whose relevant fields changed."""
        if self.cache is None:
            return 0
        return self.cache.invalidate(context_id)

    # ── Resources ─────────────────────────────────────────────────────────────

    def start(self) -> "RecommendationService":
        if self.poller is not None and not self.poller.running:
            self.poller.start()
        return self

    def close(self) -> None:
        if self.poller is not None:
            self.poller.stop()
        self.pipeline.evaluator.close()
        self.pipeline.scorer.close()
        if self._worker_pool is not None:
            self._worker_pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "RecommendationService":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# ── Factory ───────────────────────────────────────────────────────────────────


def build_rule_source(config: AppConfig) -> RuleSource:
    if config.rules.source == "sqlite":
        return SqliteRuleSource(
            config.database.db_path,
            wal_mode=config.database.wal_mode,
            busy_timeout_ms=config.database.busy_timeout_ms,
        )
    return TomlRuleSource(config.rules.rules_path)


def build_service(
    config: AppConfig,
    executor: Optional[ActionExecutor] = None,
    decisions: Optional[DecisionRegistry] = None,
    modifiers: Optional[ModifierRegistry] = None,
    guard: Optional[ContextGuard] = None,
    source: Optional[RuleSource] = None,
) -> RecommendationService:
    """Wire a ``RecommendationService`` from configuration.

    Args:
        config:    Validated application config.
        executor:  Action Executor; defaults to an empty ``HandlerActionExecutor``
                   (every execute reports ``no_handler``).
        decisions: External decision functions for conditions.
        modifiers: Modifier registry; defaults to the built-ins.
        guard:     Optional staleness check for contexts.
        source:    Rule source override; defaults to ``rules.source``.

    Returns:
        A service with its poller not yet started (call ``start()``).
    """
    ev = config.evaluation
    db = config.database

    repository = RuleRepository(source or build_rule_source(config))

    pool = ThreadPoolExecutor(max_workers=ev.max_workers, thread_name_prefix="nba-eval")
    evaluator = ConditionEvaluator(
        decisions=decisions, timeout_seconds=ev.condition_timeout_seconds, executor=pool
    )
    scorer = ScoringEngine(
        modifiers=modifiers, timeout_seconds=ev.modifier_timeout_seconds, executor=pool
    )

    if config.storage.backend == "sqlite":
        store = SqliteRecommendationStore(
            db.db_path, wal_mode=db.wal_mode, busy_timeout_ms=db.busy_timeout_ms
        )
        sink = SqliteAuditSink(db.db_path, wal_mode=db.wal_mode, busy_timeout_ms=db.busy_timeout_ms)
    else:
        store = InMemoryRecommendationStore()
        sink = InMemoryAuditSink()
    tracker = LifecycleTracker(store, sink)

    cache = (
        RecommendationCache(ttl_seconds=config.cache.ttl_seconds, max_entries=config.cache.max_entries)
        if config.cache.enabled
        else None
    )
    pipeline = EvaluationPipeline(
        repository=repository,
        evaluator=evaluator,
        scorer=scorer,
        tracker=tracker,
        cache=cache,
        guard=guard,
        top_n=ev.top_n,
        epsilon=ev.score_epsilon,
    )
    poller = (
        RulePoller(repository, config.rules.poll_interval_seconds)
        if config.rules.poll_interval_seconds > 0
        else None
    )

    logger.info(
        "Service built | rules=%s | storage=%s | cache=%s | top_n=%d",
        config.rules.source, config.storage.backend,
        "on" if cache is not None else "off", ev.top_n,
    )
    return RecommendationService(
        repository=repository,
        pipeline=pipeline,
        tracker=tracker,
        executor=executor or HandlerActionExecutor(),
        cache=cache,
        poller=poller,
        worker_pool=pool,
    )
