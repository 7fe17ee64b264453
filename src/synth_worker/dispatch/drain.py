"""Queue exhaustion detection for independent consumers."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class DrainCoordinator:
    """Decide when an empty queue is empty enough to stop consuming.

    An empty poll only reflects this consumer's view; other consumers may
    still requeue work. The consumer stops once it has seen at least
    ``idle_min_polls`` consecutive empty polls spanning at least
    ``idle_min_seconds``, measured from when the first of them began waiting.
    Any delivery resets the window. Between polls the caller backs off with an
    increasing delay.

    This bounds shutdown delay; it is not a consensus protocol, so work that
    reappears after every consumer has stopped stays queued for the next run.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        idle_min_polls: int = 5,
        idle_min_seconds: float = 30.0,
        backoff_initial_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        backoff_multiplier: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if idle_min_polls < 1:
            raise ValueError("idle_min_polls must be >= 1")
        if backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        self.idle_min_polls = idle_min_polls
        self.idle_min_seconds = max(0.0, idle_min_seconds)
        self.backoff_initial_seconds = max(0.0, backoff_initial_seconds)
        self.backoff_max_seconds = max(self.backoff_initial_seconds, backoff_max_seconds)
        self.backoff_multiplier = backoff_multiplier
        self._clock = clock
        self._empty_polls = 0
        self._idle_since: float | None = None

    @property
    def empty_polls(self) -> int:
        return self._empty_polls

    @property
    def idle_seconds(self) -> float:
        if self._idle_since is None:
            return 0.0
        return self._clock() - self._idle_since

    def record_delivery(self) -> None:
        if self._empty_polls:
            logger.debug("delivery after %d empty poll(s); idle window reset", self._empty_polls)
        self._empty_polls = 0
        self._idle_since = None

    def record_empty(self, *, polled_at: float | None = None) -> None:
        """Count an empty poll; ``polled_at`` is when its wait began."""

        if self._idle_since is None:
            self._idle_since = self._clock() if polled_at is None else polled_at
        self._empty_polls += 1

    def should_stop(self) -> bool:
        if self._empty_polls < self.idle_min_polls:
            return False
        return self.idle_seconds >= self.idle_min_seconds

    def next_backoff(self) -> float:
        """Delay before the next poll; grows with each consecutive empty poll."""

        exponent = min(max(self._empty_polls - 1, 0), 32)
        delay = self.backoff_initial_seconds * (self.backoff_multiplier**exponent)
        return min(self.backoff_max_seconds, delay)
