"""Backend interface for remote engine calls."""

from __future__ import annotations

from typing import Protocol


class RemoteCallError(RuntimeError):
    """Remote engine call failure with response details when available."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str = "",
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.timed_out = timed_out


class SynthesisBackend(Protocol):
    """Protocol implemented by remote engine clients.

    Both calls block until the remote side answers; there is no cancellation
    primitive once a call has been issued.
    """

    def set_speaker(self, *, eval_id: str, engine_id: int, speaker_id: int) -> None:
        """Apply ``speaker_id`` to the engine or raise ``RemoteCallError``."""

    def synthesize(self, *, eval_id: str, engine_id: int, speaker_id: int, task_id: str) -> None:
        """Run synthesis for ``task_id`` or raise ``RemoteCallError``."""
