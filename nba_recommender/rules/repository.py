"""
Rule repository: version-stamped, copy-on-write rule snapshots.

Readers call ``load_active(context_type)`` and get back an immutable
``RuleSnapshot``.  ``refresh(context_type)`` reloads from the ``RuleSource``
and publishes a new snapshot by swapping a single reference to an immutable
state object, so a reader in flight keeps using the snapshot it already holds
and never observes a half-applied refresh.

Concurrency
-----------
- ``load_active`` never takes the refresh lock once a context type has been
  loaded; it reads the published state reference exactly once.
- ``refresh`` calls are serialized by ``_refresh_lock``.
- The first load of a context type goes through ``refresh`` (double-checked,
  so concurrent cold readers trigger one source read).

Versioning
----------
Versions are per context type and start at 1.  A refresh bumps the version
only when the active rule content (fingerprint) changed; an identical reload
keeps the published snapshot, so polling does not invalidate cached rankings.

Failure
-------
If the source cannot be read, ``refresh`` records the context type as
unavailable and raises ``RepositoryUnavailable``.  Until a later refresh
succeeds, ``load_active`` for that type raises too: callers fail closed and
never receive the stale snapshot silently.  A type with no published
snapshot has nothing stale to protect, so ``load_active`` retries the source
for it on every call.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from nba_recommender.errors import RepositoryUnavailable
from nba_recommender.models.rule import RuleSnapshot, rules_fingerprint
from nba_recommender.rules.sources import RuleSource
from nba_recommender.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PublishedState:
    snapshots:   Mapping[str, RuleSnapshot] = field(default_factory=lambda: MappingProxyType({}))
    unavailable: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


class RuleRepository:
    """Loads, caches and versions the active rule set per context type.

    Attributes:
        source: The external rule configuration source.
    """

    def __init__(
        self,
        source: RuleSource,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.source = source
        self._clock = clock
        self._state = _PublishedState()
        self._refresh_lock = threading.Lock()

    # ── Reads ─────────────────────────────────────────────────────────────────

    def load_active(self, context_type: str) -> RuleSnapshot:
        """Return the current active rule snapshot for ``context_type``.

        A type that has never loaded successfully is retried on every call,
        so a source that was down at startup recovers without a refresh.

        Raises:
            RepositoryUnavailable: If the last refresh for a loaded context
                type failed, or the source cannot be read for an unloaded one.
        """
        state = self._state
        snapshot = state.snapshots.get(context_type)
        if snapshot is not None:
            reason = state.unavailable.get(context_type)
            if reason is not None:
                raise RepositoryUnavailable(context_type, reason)
            return snapshot

        with self._refresh_lock:
            state = self._state
            snapshot = state.snapshots.get(context_type)
            if snapshot is None:
                return self._reload(context_type)
            reason = state.unavailable.get(context_type)
            if reason is not None:
                raise RepositoryUnavailable(context_type, reason)
            return snapshot

    def current_version(self, context_type: str) -> Optional[int]:
        """Return the published version, or ``None`` if never loaded or unavailable."""
        state = self._state
        if context_type in state.unavailable:
            return None
        snapshot = state.snapshots.get(context_type)
        return snapshot.version if snapshot is not None else None

    def known_context_types(self) -> list[str]:
        state = self._state
        return sorted(set(state.snapshots) | set(state.unavailable))

    # ── Writes ────────────────────────────────────────────────────────────────

    def refresh(self, context_type: str) -> RuleSnapshot:
        """Force a reload of ``context_type`` and publish the result.

        Returns:
            The published snapshot (a new one if the content changed).

        Raises:
            RepositoryUnavailable: If the source cannot be read.
        """
        with self._refresh_lock:
            return self._reload(context_type)

    def refresh_all(self) -> dict[str, int]:
        """Refresh every known context type.

        Failures are logged and recorded (the failing types fail closed);
        they do not stop the other types from refreshing.

        Returns:
            Mapping of context type → published version for the types that
            refreshed successfully.
        """
        versions: dict[str, int] = {}
        for context_type in self.known_context_types():
            try:
                versions[context_type] = self.refresh(context_type).version
            except RepositoryUnavailable as exc:
                logger.error("Rule refresh failed: %s", exc)
        return versions

    def invalidate(self, context_type: Optional[str] = None) -> dict[str, int]:
        """Explicit invalidation signal from the configuration store.

        Args:
            context_type: Type to reload, or ``None`` for every known type.

        Raises:
            RepositoryUnavailable: When a single named type fails to reload.
        """
        if context_type is not None:
            return {context_type: self.refresh(context_type).version}
        return self.refresh_all()

    # ── Internals ─────────────────────────────────────────────────────────────

    def _reload(self, context_type: str) -> RuleSnapshot:
        """Read the source and publish.  Caller must hold ``_refresh_lock``."""
        state = self._state
        try:
            rules = self.source.load(context_type)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            self._publish(
                snapshots=state.snapshots,
                unavailable={**state.unavailable, context_type: reason},
            )
            logger.error(
                "Rule source unavailable | context_type=%s | %s", context_type, reason
            )
            raise RepositoryUnavailable(context_type, reason) from exc

        active = tuple(sorted((r for r in rules if r.active), key=lambda r: r.rule_id))
        fingerprint = rules_fingerprint(active)
        current = state.snapshots.get(context_type)

        if current is not None and current.fingerprint == fingerprint:
            snapshot = current
        else:
            snapshot = RuleSnapshot(
                context_type=context_type,
                version=current.version + 1 if current is not None else 1,
                rules=active,
                fingerprint=fingerprint,
                loaded_at=self._clock(),
            )
            logger.info(
                "Published rule snapshot | context_type=%s | version=%d | rules=%d",
                context_type, snapshot.version, len(active),
            )

        unavailable = {k: v for k, v in state.unavailable.items() if k != context_type}
        self._publish(
            snapshots={**state.snapshots, context_type: snapshot},
            unavailable=unavailable,
        )
        return snapshot

    def _publish(
        self,
        snapshots: Mapping[str, RuleSnapshot],
        unavailable: Mapping[str, str],
    ) -> None:
        self._state = _PublishedState(
            snapshots=MappingProxyType(dict(snapshots)),
            unavailable=MappingProxyType(dict(unavailable)),
        )
