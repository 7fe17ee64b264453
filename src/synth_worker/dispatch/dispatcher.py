"""Sequential dispatcher that drains the task queue through one engine slot."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from synth_worker.dispatch.drain import DrainCoordinator
from synth_worker.dispatch.engine import EngineSlot
from synth_worker.dispatch.models import (
    RETRYABLE_FAILURE_CLASSES,
    CompletionEvent,
    DispatcherState,
    DispatcherSummary,
    FailureClass,
    Outcome,
    SlotResult,
    SlotStatus,
    Task,
)
from synth_worker.dispatch.sink import ResultSink, ResultSinkError
from synth_worker.dispatch.source import TaskSource

logger = logging.getLogger(__name__)


class EngineUnusable(RuntimeError):
    """The engine slot keeps failing independently of any single task."""

    def __init__(self, message: str, *, engine_id: int, task_id: str | None = None) -> None:
        super().__init__(message)
        self.engine_id = engine_id
        self.task_id = task_id
        self.summary: DispatcherSummary | None = None


class Dispatcher:
    """Consumes tasks one at a time and drives them through the engine slot.

    State flow per delivery::

        IDLE -> FETCHING -> PREPARING -> SYNTHESIZING -> REPORTING -> IDLE
                         \\-> DRAINING -> IDLE | STOPPED

    A stop request is honored only between states; a remote call in flight
    always runs to its terminal outcome first.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        slot: EngineSlot,
        source: TaskSource,
        sink: ResultSink,
        drain: DrainCoordinator,
        max_retries: int = 5,
        max_consecutive_switch_failures: int = 3,
        poll_timeout_seconds: float = 2.0,
        speaker_count: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.slot = slot
        self.source = source
        self.sink = sink
        self.drain = drain
        self.max_retries = max_retries
        self.max_consecutive_switch_failures = max_consecutive_switch_failures
        self.poll_timeout_seconds = poll_timeout_seconds
        self.speaker_count = speaker_count
        self.state = DispatcherState.IDLE
        self._clock = clock
        self._sleep = sleep
        self._consecutive_switch_failures = 0
        self._stop_requested = False
        self._current_task_id: str | None = None

    @property
    def engine_id(self) -> int:
        return self.slot.engine_id

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def run_once(self) -> DispatcherSummary:
        """Fetch and process at most one delivery."""

        summary = DispatcherSummary()
        if self._stop_requested:
            self._transition(DispatcherState.STOPPED)
            return summary

        self._transition(DispatcherState.FETCHING)
        polled_at = self._clock()
        task = self.source.next(self.poll_timeout_seconds)
        if task is None:
            summary.idle_polls = 1
            self._drain_step(polled_at=polled_at)
            return summary

        self.drain.record_delivery()
        summary.processed = 1
        self._current_task_id = task.task_id
        try:
            self._process(task=task, summary=summary)
        except EngineUnusable as error:
            self._transition(DispatcherState.STOPPED)
            error.summary = summary
            raise
        finally:
            self._current_task_id = None

        self._transition(
            DispatcherState.STOPPED if self._stop_requested else DispatcherState.IDLE,
        )
        return summary

    def run_loop(self, *, max_tasks: int | None = None) -> DispatcherSummary:
        """Run until the queue is drained, a stop is requested or max_tasks is reached."""

        aggregate = DispatcherSummary()
        with self._signal_handlers():
            while True:
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    self._transition(DispatcherState.STOPPED)
                if self._stop_requested:
                    self._transition(DispatcherState.STOPPED)
                if self.state == DispatcherState.STOPPED:
                    return aggregate

                try:
                    summary = self.run_once()
                except EngineUnusable as error:
                    if error.summary is not None:
                        aggregate.merge(error.summary)
                    error.summary = aggregate
                    raise
                aggregate.merge(summary)

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self._stop_requested:
            logger.info(
                "engine %s: stop requested (%s)%s",
                self.engine_id,
                signal_name,
                f"; finishing task {self._current_task_id}" if self._current_task_id else "",
            )
        self._stop_requested = True

    def _process(self, *, task: Task, summary: DispatcherSummary) -> None:
        started = self._clock()
        invalid_reason = self._validate_task(task)
        if invalid_reason is not None:
            self._finish(
                task=task,
                failure_class=FailureClass.INVALID_TASK,
                reason=invalid_reason,
                started=started,
                summary=summary,
            )
            return

        self._transition(DispatcherState.PREPARING)
        if task.speaker_id != self.slot.current_speaker:
            prepared = self.slot.ensure_speaker(task.speaker_id, eval_id=task.eval_id)
            if not prepared.ok:
                self._handle_switch_failure(
                    task=task,
                    result=prepared,
                    started=started,
                    summary=summary,
                )
                return
            self._consecutive_switch_failures = 0
            if prepared.status == SlotStatus.OK:
                summary.switches += 1

        self._transition(DispatcherState.SYNTHESIZING)
        result = self.slot.synthesize(task)
        if result.ok:
            self.source.ack(task.task_id)
            summary.succeeded += 1
            logger.info(
                "engine %s completed task %s (speaker %s, attempt %s) in %.2fs",
                self.engine_id,
                task.task_id,
                task.speaker_id,
                task.attempt,
                result.elapsed_seconds,
            )
            self._report(
                event=self._event(task=task, outcome=Outcome.SUCCESS, started=started),
                summary=summary,
            )
            return

        self._finish(
            task=task,
            failure_class=result.failure_class,
            reason=result.reason,
            details=result.failure_details,
            started=started,
            summary=summary,
        )

    def _handle_switch_failure(
        self,
        *,
        task: Task,
        result: SlotResult,
        started: float,
        summary: DispatcherSummary,
    ) -> None:
        self._consecutive_switch_failures += 1
        engine_broken = self._consecutive_switch_failures >= self.max_consecutive_switch_failures
        if not engine_broken or task.attempt > self.max_retries:
            # Task-scoped: requeue while the task has budget left, settle it otherwise.
            self._finish(
                task=task,
                failure_class=result.failure_class,
                reason=result.reason,
                details=result.failure_details,
                started=started,
                summary=summary,
            )
        else:
            # Engine-scoped failure; another engine picks the task up.
            self._requeue(
                task=task,
                failure_class=result.failure_class,
                reason=result.reason,
                details=result.failure_details,
                started=started,
                summary=summary,
            )
        if not engine_broken:
            return

        message = (
            f"engine {self.engine_id} unusable: speaker switch failed "
            f"{self._consecutive_switch_failures} time(s) in a row, last for task "
            f"{task.task_id} (attempt {task.attempt}): {result.reason}"
        )
        logger.error("%s", message)
        raise EngineUnusable(message, engine_id=self.engine_id, task_id=task.task_id)

    def _finish(  # noqa: PLR0913
        self,
        *,
        task: Task,
        failure_class: FailureClass | None,
        reason: str | None,
        started: float,
        summary: DispatcherSummary,
        details: dict[str, object] | None = None,
    ) -> None:
        """Requeue a retryable failure or settle the task as permanently failed."""

        retryable = failure_class in RETRYABLE_FAILURE_CLASSES
        if retryable and task.attempt <= self.max_retries:
            self._requeue(
                task=task,
                failure_class=failure_class,
                reason=reason,
                details=details,
                started=started,
                summary=summary,
            )
            return

        self.source.ack(task.task_id)
        summary.failed += 1
        logger.warning(
            "engine %s failed task %s permanently (speaker %s, attempt %s): %s",
            self.engine_id,
            task.task_id,
            task.speaker_id,
            task.attempt,
            reason or "unknown error",
        )
        self._report(
            event=self._event(
                task=task,
                outcome=Outcome.FAILED,
                started=started,
                reason=reason,
                failure_class=failure_class,
                details=details,
            ),
            summary=summary,
        )

    def _requeue(  # noqa: PLR0913
        self,
        *,
        task: Task,
        failure_class: FailureClass | None,
        reason: str | None,
        started: float,
        summary: DispatcherSummary,
        details: dict[str, object] | None = None,
    ) -> None:
        self.source.requeue(task.task_id)
        summary.requeued += 1
        logger.warning(
            "engine %s requeued task %s (speaker %s, attempt %s/%s): %s",
            self.engine_id,
            task.task_id,
            task.speaker_id,
            task.attempt,
            self.max_retries + 1,
            reason or "unknown error",
        )
        self._report(
            event=self._event(
                task=task,
                outcome=Outcome.FAILED,
                started=started,
                reason=reason,
                failure_class=failure_class,
                details=details,
                terminal=False,
            ),
            summary=summary,
        )

    def _report(self, *, event: CompletionEvent, summary: DispatcherSummary) -> None:
        self._transition(DispatcherState.REPORTING)
        try:
            self.sink.publish(event)
        except ResultSinkError as error:
            summary.publish_errors += 1
            logger.warning(
                "engine %s: failed to publish result for task %s: %s",
                self.engine_id,
                event.task_id,
                error,
            )

    def _event(  # noqa: PLR0913
        self,
        *,
        task: Task,
        outcome: Outcome,
        started: float,
        reason: str | None = None,
        failure_class: FailureClass | None = None,
        details: dict[str, object] | None = None,
        terminal: bool = True,
    ) -> CompletionEvent:
        return CompletionEvent(
            task_id=task.task_id,
            engine_id=self.engine_id,
            outcome=outcome,
            latency_seconds=max(0.0, self._clock() - started),
            eval_id=task.eval_id,
            speaker_id=task.speaker_id,
            attempt=task.attempt,
            terminal=terminal,
            reason=reason,
            failure_class=failure_class,
            failure_details=details,
        )

    def _validate_task(self, task: Task) -> str | None:
        if not task.eval_id:
            return f"task {task.task_id} has no eval_id"
        if task.speaker_id < 0:
            return f"speaker_id {task.speaker_id} is negative"
        if self.speaker_count is not None and task.speaker_id >= self.speaker_count:
            return f"speaker_id {task.speaker_id} outside [0, {self.speaker_count})"
        return None

    def _drain_step(self, *, polled_at: float) -> None:
        self._transition(DispatcherState.DRAINING)
        self.drain.record_empty(polled_at=polled_at)
        if self.drain.should_stop():
            logger.info(
                "engine %s: queue idle for %d poll(s) over %.1fs; stopping",
                self.engine_id,
                self.drain.empty_polls,
                self.drain.idle_seconds,
            )
            self._transition(DispatcherState.STOPPED)
            return
        self._sleep_with_stop(self.drain.next_backoff())
        self._transition(
            DispatcherState.STOPPED if self._stop_requested else DispatcherState.IDLE,
        )

    def _transition(self, state: DispatcherState) -> None:
        if state != self.state:
            logger.debug("engine %s: %s -> %s", self.engine_id, self.state.value, state.value)
        self.state = state

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = self._clock() + seconds
        while not self._stop_requested and self._clock() < deadline:
            self._sleep(min(0.1, max(0.0, deadline - self._clock())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
