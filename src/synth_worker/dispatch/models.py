"""Domain models for task dispatch and engine execution."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class DispatcherState(str, Enum):
    """Dispatcher state machine states."""

    IDLE = "idle"
    FETCHING = "fetching"
    PREPARING = "preparing"
    SYNTHESIZING = "synthesizing"
    REPORTING = "reporting"
    DRAINING = "draining"
    STOPPED = "stopped"


class Outcome(str, Enum):
    """Outcome carried by a completion event."""

    SUCCESS = "success"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes used by the requeue policy."""

    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    REJECTED = "rejected"
    SPEAKER_MISMATCH = "speaker_mismatch"
    ALREADY_BUSY = "already_busy"
    INVALID_TASK = "invalid_task"


RETRYABLE_FAILURE_CLASSES: frozenset[FailureClass] = frozenset(
    {
        FailureClass.TRANSPORT,
        FailureClass.TIMEOUT,
        FailureClass.SERVER_ERROR,
        FailureClass.REJECTED,
        FailureClass.SPEAKER_MISMATCH,
    },
)


class SlotStatus(str, Enum):
    """Tagged result of one engine slot operation."""

    OK = "ok"
    SKIPPED = "skipped"
    SPEAKER_SWITCH_FAILED = "speaker_switch_failed"
    SYNTHESIS_FAILED = "synthesis_failed"
    SPEAKER_MISMATCH = "speaker_mismatch"
    ALREADY_BUSY = "already_busy"


@dataclass(frozen=True, slots=True)
class Task:
    """One unit of work as delivered by the task queue.

    ``attempt`` counts deliveries of this task and travels with the message,
    so the retry budget survives redelivery to a different engine.
    """

    task_id: str
    speaker_id: int
    eval_id: str = ""
    attempt: int = 1

    def next_attempt(self) -> Task:
        """Copy of this task for redelivery."""

        return Task(
            task_id=self.task_id,
            speaker_id=self.speaker_id,
            eval_id=self.eval_id,
            attempt=self.attempt + 1,
        )


@dataclass(frozen=True, slots=True)
class SlotResult:
    """Result of ``ensure_speaker`` / ``synthesize`` on an engine slot."""

    status: SlotStatus
    failure_class: FailureClass | None = None
    reason: str | None = None
    elapsed_seconds: float = 0.0
    failure_details: dict[str, object] | None = None

    @property
    def ok(self) -> bool:
        return self.status in {SlotStatus.OK, SlotStatus.SKIPPED}


@dataclass(frozen=True, slots=True)
class CompletionEvent:
    """Observable outcome of one task attempt.

    ``terminal`` events are produced exactly once per task; non-terminal
    failed events accompany each requeue for observability only.
    """

    task_id: str
    engine_id: int
    outcome: Outcome
    latency_seconds: float
    eval_id: str = ""
    speaker_id: int | None = None
    attempt: int = 1
    terminal: bool = True
    reason: str | None = None
    failure_class: FailureClass | None = None
    failure_details: dict[str, object] | None = None

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    def to_payload(self) -> dict[str, Any]:
        """Serialize for the result broadcast channel."""

        return {
            "eval_id": self.eval_id,
            "task_id": self.task_id,
            "engine_id": self.engine_id,
            "speaker_id": self.speaker_id,
            "success": self.success,
            "outcome": self.outcome.value,
            "error": self.reason,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "failure_details": self.failure_details,
            "attempt": self.attempt,
            "terminal": self.terminal,
            "latency_ms": round(self.latency_seconds * 1000),
        }


@dataclass(slots=True)
class DispatcherSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    requeued: int = 0
    switches: int = 0
    idle_polls: int = 0
    publish_errors: int = 0

    def merge(self, other: DispatcherSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.requeued += other.requeued
        self.switches += other.switches
        self.idle_polls += other.idle_polls
        self.publish_errors += other.publish_errors
