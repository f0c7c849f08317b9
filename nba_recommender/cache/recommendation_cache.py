"""
Ranked-result cache.

Memoizes a context's ranked candidate list under a key that pins every input
that can change the ranking::

    CacheKey(context_type, context_id, context_version_hash, user_role, rule_set_version)

Invalidation
------------
- Explicit: ``invalidate(context_id)`` drops every entry for the context
  (called when the caller knows relevant context fields changed).
- TTL: entries expire ``ttl_seconds`` after they were written.
- Implicit: a rule refresh bumps the repository version, so entries written
  under the old ``rule_set_version`` are simply never looked up again; a new
  context version hash does the same for context edits.  No sweep needed;
  such entries age out through TTL or size eviction.

Concurrency
-----------
All reads and writes hold one ``threading.Lock``.  An entry is an immutable
object built before the lock is taken, so a reader sees either a complete
entry or none.  Two threads missing on the same key may both compute the
ranking; the later ``put`` replaces the earlier with an equivalent value.

Any cache implementation may raise ``CacheUnavailable``; the evaluation
pipeline then bypasses the cache for that call.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import NamedTuple, Optional, Protocol

from nba_recommender.models.recommendation import ScoredCandidate

logger = logging.getLogger(__name__)


class CacheKey(NamedTuple):
    context_type:         str
    context_id:           str
    context_version_hash: str
    user_role:            str
    rule_set_version:     int


@dataclass(frozen=True)
class CacheEntry:
    key:        CacheKey
    value:      tuple[ScoredCandidate, ...]
    created_at: float
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    entries:       int
    hits:          int
    misses:        int
    evictions:     int
    expirations:   int
    invalidations: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class RankedResultCache(Protocol):
    """Interface the evaluation pipeline relies on."""

    def get(self, key: CacheKey) -> Optional[tuple[ScoredCandidate, ...]]: ...

    def put(
        self,
        key: CacheKey,
        value: Sequence[ScoredCandidate],
        ttl_seconds: Optional[float] = None,
    ) -> None: ...

    def invalidate(self, context_id: str) -> int: ...


class RecommendationCache:
    """Thread-safe in-process TTL cache of ranked candidate lists.

    Attributes:
        ttl_seconds: Default time-to-live for new entries.
        max_entries: Size bound; the oldest entry is evicted when full.
    """

    def __init__(
        self,
        ttl_seconds: float = 900.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}.")
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}.")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._by_context: dict[str, set[CacheKey]] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._invalidations = 0

    def get(self, key: CacheKey) -> Optional[tuple[ScoredCandidate, ...]]:
        """Return the cached ranking for ``key``, or ``None`` on miss/expiry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if now >= entry.expires_at:
                self._remove(key)
                self._expirations += 1
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def put(
        self,
        key: CacheKey,
        value: Sequence[ScoredCandidate],
        ttl_seconds: Optional[float] = None,
    ) -> None:
        """Store a complete ranking for ``key``."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl}.")
        now = self._clock()
        entry = CacheEntry(key=key, value=tuple(value), created_at=now, expires_at=now + ttl)

        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_oldest()
            self._entries[key] = entry
            self._by_context.setdefault(key.context_id, set()).add(key)

    def invalidate(self, context_id: str) -> int:
        """Drop every entry for ``context_id``.  Returns the number removed."""
        with self._lock:
            keys = self._by_context.pop(context_id, set())
            for key in keys:
                self._entries.pop(key, None)
            self._invalidations += len(keys)
        if keys:
            logger.debug("Cache invalidated | context_id=%s | entries=%d", context_id, len(keys))
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_context.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expirations=self._expirations,
                invalidations=self._invalidations,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # Callers hold _lock.

    def _remove(self, key: CacheKey) -> None:
        self._entries.pop(key, None)
        keys = self._by_context.get(key.context_id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._by_context[key.context_id]

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries.values(), key=lambda e: e.created_at)
        self._remove(oldest.key)
        self._evictions += 1
