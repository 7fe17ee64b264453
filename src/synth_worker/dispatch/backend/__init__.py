"""Synthesis backend implementations."""

from synth_worker.dispatch.backend.base import RemoteCallError, SynthesisBackend
from synth_worker.dispatch.backend.http_backend import HttpSynthesisBackend

__all__ = [
    "HttpSynthesisBackend",
    "RemoteCallError",
    "SynthesisBackend",
]
