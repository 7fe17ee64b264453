"""HTTP client for the remote synthesis engine service."""

from __future__ import annotations

import logging

import httpx

from synth_worker import __version__
from synth_worker.dispatch.backend.base import RemoteCallError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_USER_AGENT = f"synth-worker/{__version__}"
_BODY_PREVIEW_CHARS = 500


class HttpSynthesisBackend:
    """httpx wrapper for the engine speaker and synthesis endpoints.

    The read timeout must not be shorter than the service's worst-case
    latency; a timeout surfaces as a retryable ``RemoteCallError``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    def speaker_url(self, *, eval_id: str, engine_id: int) -> str:
        return f"{self.base_url}/evaluations/{eval_id}/engines/{engine_id}/speaker"

    def synthesis_url(self, *, eval_id: str, engine_id: int) -> str:
        return f"{self.base_url}/evaluations/{eval_id}/engines/{engine_id}/synthesis"

    def set_speaker(self, *, eval_id: str, engine_id: int, speaker_id: int) -> None:
        self._send(
            "PUT",
            self.speaker_url(eval_id=eval_id, engine_id=engine_id),
            payload={"speaker_id": speaker_id},
        )

    def synthesize(self, *, eval_id: str, engine_id: int, speaker_id: int, task_id: str) -> None:
        self._send(
            "POST",
            self.synthesis_url(eval_id=eval_id, engine_id=engine_id),
            payload={"speaker_id": speaker_id, "task_id": task_id},
        )

    def _send(self, method: str, url: str, *, payload: dict[str, object]) -> None:
        try:
            response = self._client.request(method, url, json=payload)
        except httpx.TimeoutException as error:
            logger.warning("Timeout on %s %s", method, url)
            raise RemoteCallError(
                f"timeout on {method} {url}",
                timed_out=True,
            ) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error on %s %s: %s", method, url, error)
            raise RemoteCallError(f"http error on {method} {url}: {error}") from error

        if response.is_success:
            return
        body = response.text[:_BODY_PREVIEW_CHARS]
        raise RemoteCallError(
            f"unexpected status {response.status_code} on {method} {url}: {body}",
            status_code=response.status_code,
            body=body,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpSynthesisBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
