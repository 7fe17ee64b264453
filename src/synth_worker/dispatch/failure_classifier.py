"""Deterministic remote failure classification for the requeue policy."""

from __future__ import annotations

from dataclasses import dataclass

from synth_worker.dispatch.models import FailureClass

REMOTE_FAILURE_CLASSIFIER_VERSION = 1

# The remote service answers a speaker mismatch or an unfetched task_id with a
# generic 5xx; these body fragments only refine the reason code.
_SPEAKER_MISMATCH_PATTERNS: tuple[str, ...] = (
    "speaker mismatch",
    "speaker_id mismatch",
    "wrong speaker",
    "speaker not set",
)
_UNKNOWN_TASK_PATTERNS: tuple[str, ...] = (
    "unknown task",
    "task not found",
    "not fetched",
    "unfetched",
)
_ENGINE_BUSY_PATTERNS: tuple[str, ...] = (
    "engine busy",
    "already in progress",
    "concurrent",
)


@dataclass(slots=True)
class RemoteFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def describe(self, *, operation: str, detail: str) -> str:
        """Human readable reason for logs and completion events."""

        return f"{operation} failed [{self.reason_code}]: {detail}"

    def to_event_details(self, *, engine_id: int, status_code: int | None) -> dict[str, object]:
        """Serialize classifier diagnostics for completion events."""

        return {
            "classifier_version": REMOTE_FAILURE_CLASSIFIER_VERSION,
            "engine_id": engine_id,
            "status_code": status_code,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_remote_failure(
    *,
    operation: str,
    status_code: int | None,
    body: str,
    timed_out: bool = False,
) -> RemoteFailureClassification:
    """Classify a failed remote call into a deterministic failure class."""

    if timed_out:
        return RemoteFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code=f"{operation}_timeout",
            matched_rule="client_timeout",
            matched_pattern=None,
        )

    if status_code is None:
        return RemoteFailureClassification(
            failure_class=FailureClass.TRANSPORT,
            reason_code=f"{operation}_transport",
            matched_rule="no_response",
            matched_pattern=None,
        )

    haystack = body.lower()
    if status_code >= 500:  # noqa: PLR2004
        pattern = _first_match(haystack, _SPEAKER_MISMATCH_PATTERNS)
        if pattern is not None:
            return RemoteFailureClassification(
                failure_class=FailureClass.SERVER_ERROR,
                reason_code=f"{operation}_speaker_mismatch",
                matched_rule="server_speaker_mismatch",
                matched_pattern=pattern,
            )
        pattern = _first_match(haystack, _UNKNOWN_TASK_PATTERNS)
        if pattern is not None:
            return RemoteFailureClassification(
                failure_class=FailureClass.SERVER_ERROR,
                reason_code=f"{operation}_unknown_task",
                matched_rule="server_unknown_task",
                matched_pattern=pattern,
            )
        return RemoteFailureClassification(
            failure_class=FailureClass.SERVER_ERROR,
            reason_code=f"{operation}_server_error",
            matched_rule="generic_server_error",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _ENGINE_BUSY_PATTERNS)
    return RemoteFailureClassification(
        failure_class=FailureClass.REJECTED,
        reason_code=(
            f"{operation}_engine_busy" if pattern is not None else f"{operation}_rejected"
        ),
        matched_rule="engine_busy" if pattern is not None else "client_error",
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
