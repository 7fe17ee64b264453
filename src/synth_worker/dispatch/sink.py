"""Completion event sinks."""

from __future__ import annotations

from typing import Protocol

from synth_worker.dispatch.models import CompletionEvent


class ResultSinkError(RuntimeError):
    """Publishing a completion event failed; affects observability only."""


class ResultSink(Protocol):
    """Broadcast channel for completion events. Best effort, never retried."""

    def publish(self, event: CompletionEvent) -> None:
        """Publish ``event`` or raise ``ResultSinkError``."""


class CollectingResultSink:
    """Keeps published events in memory."""

    def __init__(self) -> None:
        self.events: list[CompletionEvent] = []

    def publish(self, event: CompletionEvent) -> None:
        self.events.append(event)

    def terminal_events(self, task_id: str | None = None) -> list[CompletionEvent]:
        return [
            event
            for event in self.events
            if event.terminal and (task_id is None or event.task_id == task_id)
        ]
