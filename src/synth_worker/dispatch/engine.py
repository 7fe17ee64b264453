"""Per-process engine slot state and single-flight remote execution."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from synth_worker.dispatch.backend import RemoteCallError, SynthesisBackend
from synth_worker.dispatch.failure_classifier import classify_remote_failure
from synth_worker.dispatch.models import FailureClass, SlotResult, SlotStatus, Task

logger = logging.getLogger(__name__)


class EngineSlot:
    """One numbered remote engine owned exclusively by this process.

    ``current_speaker`` is only updated after the remote side confirmed a
    switch. ``in_flight`` is set for the duration of every remote call and a
    reentrant call while it is set is refused with ``ALREADY_BUSY``.
    """

    def __init__(
        self,
        *,
        engine_id: int,
        backend: SynthesisBackend,
        current_speaker: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine_id = engine_id
        self.backend = backend
        self.current_speaker = current_speaker
        self.in_flight = False
        self._clock = clock

    def ensure_speaker(self, speaker_id: int, *, eval_id: str) -> SlotResult:
        """Switch the engine to ``speaker_id`` unless it is already applied."""

        if self.current_speaker == speaker_id:
            return SlotResult(status=SlotStatus.SKIPPED)
        if self.in_flight:
            return _busy()

        started = self._clock()
        self.in_flight = True
        try:
            self.backend.set_speaker(
                eval_id=eval_id,
                engine_id=self.engine_id,
                speaker_id=speaker_id,
            )
        except RemoteCallError as error:
            classified = classify_remote_failure(
                operation="speaker_switch",
                status_code=error.status_code,
                body=error.body,
                timed_out=error.timed_out,
            )
            logger.warning(
                "engine %s: speaker switch %s -> %s failed [%s, rule=%s]: %s",
                self.engine_id,
                self.current_speaker,
                speaker_id,
                classified.reason_code,
                classified.matched_rule,
                error,
            )
            return SlotResult(
                status=SlotStatus.SPEAKER_SWITCH_FAILED,
                failure_class=classified.failure_class,
                reason=classified.describe(operation="speaker switch", detail=str(error)),
                elapsed_seconds=self._clock() - started,
                failure_details=classified.to_event_details(
                    engine_id=self.engine_id,
                    status_code=error.status_code,
                ),
            )
        finally:
            self.in_flight = False

        logger.debug(
            "engine %s: speaker %s -> %s",
            self.engine_id,
            self.current_speaker,
            speaker_id,
        )
        self.current_speaker = speaker_id
        return SlotResult(status=SlotStatus.OK, elapsed_seconds=self._clock() - started)

    def synthesize(self, task: Task) -> SlotResult:
        """Submit ``task`` for synthesis on the currently applied speaker."""

        if self.current_speaker != task.speaker_id:
            return SlotResult(
                status=SlotStatus.SPEAKER_MISMATCH,
                failure_class=FailureClass.SPEAKER_MISMATCH,
                reason=(
                    f"engine {self.engine_id} has speaker {self.current_speaker}, "
                    f"task {task.task_id} needs {task.speaker_id}"
                ),
            )
        if self.in_flight:
            return _busy()

        started = self._clock()
        self.in_flight = True
        try:
            self.backend.synthesize(
                eval_id=task.eval_id,
                engine_id=self.engine_id,
                speaker_id=task.speaker_id,
                task_id=task.task_id,
            )
        except RemoteCallError as error:
            classified = classify_remote_failure(
                operation="synthesis",
                status_code=error.status_code,
                body=error.body,
                timed_out=error.timed_out,
            )
            logger.warning(
                "engine %s: synthesis of task %s failed [%s, rule=%s]: %s",
                self.engine_id,
                task.task_id,
                classified.reason_code,
                classified.matched_rule,
                error,
            )
            return SlotResult(
                status=SlotStatus.SYNTHESIS_FAILED,
                failure_class=classified.failure_class,
                reason=classified.describe(operation="synthesis", detail=str(error)),
                elapsed_seconds=self._clock() - started,
                failure_details=classified.to_event_details(
                    engine_id=self.engine_id,
                    status_code=error.status_code,
                ),
            )
        finally:
            self.in_flight = False

        return SlotResult(status=SlotStatus.OK, elapsed_seconds=self._clock() - started)


def _busy() -> SlotResult:
    return SlotResult(
        status=SlotStatus.ALREADY_BUSY,
        failure_class=FailureClass.ALREADY_BUSY,
        reason="engine slot already has a call in flight",
    )
