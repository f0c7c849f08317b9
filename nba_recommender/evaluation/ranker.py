"""
Candidate ranking: deterministic top-N ordering.

Sort key
--------
    (score desc, priority_tier desc, rule_id asc)

``rule_id`` is unique within a snapshot, so the order never depends on
input order.

Scores are compared with a tolerance: candidates are walked in raw score
order and grouped while they stay within ``epsilon`` of their group's first
(highest) score.  Inside a group the order falls through to the priority tier
and rule id tiebreaks, so floating-point jitter smaller than epsilon
(e.g. 80.0 vs 80.0000000001) can never flip the order between runs.
"""

from __future__ import annotations

from collections.abc import Iterable

from nba_recommender.models.recommendation import ScoredCandidate

DEFAULT_TOP_N = 3
DEFAULT_EPSILON = 1e-6


def tiebreak_key(candidate: ScoredCandidate) -> tuple[int, str]:
    """Order among candidates whose scores are within epsilon."""
    return (-candidate.priority_tier, candidate.rule_id)


def order_candidates(
    candidates: Iterable[ScoredCandidate],
    epsilon: float = DEFAULT_EPSILON,
) -> list[ScoredCandidate]:
    """Return every candidate in ranking order."""
    by_score = sorted(candidates, key=lambda c: (-c.score, *tiebreak_key(c)))
    ordered: list[ScoredCandidate] = []
    start = 0
    while start < len(by_score):
        head = by_score[start].score
        end = start + 1
        while end < len(by_score) and head - by_score[end].score <= epsilon:
            end += 1
        ordered.extend(sorted(by_score[start:end], key=tiebreak_key))
        start = end
    return ordered


def rank(
    candidates: Iterable[ScoredCandidate],
    n: int = DEFAULT_TOP_N,
    epsilon: float = DEFAULT_EPSILON,
) -> list[ScoredCandidate]:
    """Order candidates and truncate to the top ``n``.

    Args:
        candidates: Scored candidates for one context.
        n:          Maximum output length (``0`` → empty list).
        epsilon:    Score comparison tolerance.

    Returns:
        At most ``n`` candidates, best first.

    Raises:
        ValueError: If ``n`` is negative or ``epsilon`` is not positive.
    """
    if n < 0:
        raise ValueError(f"n must be >= 0, got {n}.")
    if epsilon <= 0:
        raise ValueError(f"epsilon must be > 0, got {epsilon}.")
    return order_candidates(candidates, epsilon)[:n]
