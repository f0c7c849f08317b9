"""Background poller that keeps the rule repository in step with its source.

The configuration store is edited out of band.  Changes reach the repository
either through an explicit ``RuleRepository.invalidate()`` signal or through
this poller, which calls ``refresh_all()`` every ``interval_seconds``.

Typical usage::

    poller = RulePoller(repository, interval_seconds=300)
    poller.start()      # daemon thread
    ...
    poller.stop()

A failed poll is logged and recorded by the repository (the failing context
type fails closed); the poller itself keeps running.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from nba_recommender.rules.repository import RuleRepository

log = logging.getLogger(__name__)


class RulePoller:
    """Refreshes every known context type on a fixed interval.

    Parameters
    ----------
    repository:
        The ``RuleRepository`` to refresh.
    interval_seconds:
        Seconds between polls.  Must be > 0.
    """

    def __init__(self, repository: RuleRepository, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}.")
        self.repository = repository
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.polls = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll_once(self) -> dict[str, int]:
        """Run one refresh pass.  Returns the versions that refreshed."""
        versions = self.repository.refresh_all()
        self.polls += 1
        log.debug("Rule poll #%d | versions=%s", self.polls, versions)
        return versions

    def _run(self) -> None:
        log.info("Rule poller started | interval=%.1fs", self.interval_seconds)
        while not self._stop.wait(self.interval_seconds):
            try:
                self.poll_once()
            except Exception as exc:
                log.error("Rule poll failed: %s", exc, exc_info=True)
        log.info("Rule poller stopped.")

    def start(self) -> None:
        """Start the polling thread (no-op if already running)."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="nba-rule-poller", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the thread to stop and wait for it."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
