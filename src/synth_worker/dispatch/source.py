"""Task source interface and in-memory implementation."""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable, Iterable
from typing import Protocol

from synth_worker.dispatch.models import Task


class TaskSourceError(RuntimeError):
    """Invalid use of a task source, such as acking an unknown delivery."""


class TaskSourceUnavailable(RuntimeError):
    """The queue transport is gone and cannot be recovered in-process."""


class TaskSource(Protocol):
    """Shared queue seen by one consumer.

    ``next`` returns ``None`` when nothing was delivered within the wait. That
    is this consumer's momentary view only: requeues by other consumers can
    still surface more work later.
    """

    def next(self, timeout_seconds: float) -> Task | None:
        """Wait up to ``timeout_seconds`` for the next delivery."""

    def ack(self, task_id: str) -> None:
        """Acknowledge an outstanding delivery as finished."""

    def requeue(self, task_id: str) -> None:
        """Return an outstanding delivery to the queue with its attempt bumped."""

    def close(self) -> None:
        """Release transport resources."""


class InMemoryTaskSource:
    """Process-local queue with delayed delivery, used for local runs and tests."""

    def __init__(
        self,
        tasks: Iterable[Task] = (),
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        requeue_delay_seconds: float = 0.0,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self.requeue_delay_seconds = requeue_delay_seconds
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        self._pending: list[tuple[float, int, Task]] = []
        self._outstanding: dict[str, Task] = {}
        self.acked: list[str] = []
        self.requeued: list[str] = []
        self.empty_polls = 0
        for task in tasks:
            self.put(task)

    def put(self, task: Task, *, delay_seconds: float = 0.0) -> None:
        available_at = self._clock() + max(0.0, delay_seconds)
        with self._lock:
            heapq.heappush(self._pending, (available_at, next(self._sequence), task))

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def outstanding(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._outstanding)

    def next(self, timeout_seconds: float) -> Task | None:
        now = self._clock()
        deadline = now + max(0.0, timeout_seconds)
        while True:
            with self._lock:
                upcoming = self._pending[0][0] if self._pending else None
                if upcoming is not None and upcoming <= now:
                    _, _, task = heapq.heappop(self._pending)
                    self._outstanding[task.task_id] = task
                    return task
            if upcoming is None or upcoming > deadline:
                if deadline > now:
                    self._sleep(deadline - now)
                with self._lock:
                    self.empty_polls += 1
                return None
            self._sleep(max(0.0, upcoming - now))
            now = self._clock()

    def ack(self, task_id: str) -> None:
        with self._lock:
            if self._outstanding.pop(task_id, None) is None:
                raise TaskSourceError(f"task {task_id} is not outstanding; cannot ack")
            self.acked.append(task_id)

    def requeue(self, task_id: str) -> None:
        with self._lock:
            task = self._outstanding.pop(task_id, None)
            if task is None:
                raise TaskSourceError(f"task {task_id} is not outstanding; cannot requeue")
            self.requeued.append(task_id)
        self.put(task.next_attempt(), delay_seconds=self.requeue_delay_seconds)

    def close(self) -> None:
        return None
