"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import pytest

from synth_worker.dispatch.backend import RemoteCallError
from synth_worker.dispatch.dispatcher import Dispatcher
from synth_worker.dispatch.drain import DrainCoordinator
from synth_worker.dispatch.engine import EngineSlot
from synth_worker.dispatch.models import Task
from synth_worker.dispatch.sink import CollectingResultSink
from synth_worker.dispatch.source import InMemoryTaskSource


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(0.0, seconds)


class ScriptedBackend:
    """Remote engine stand-in that records calls and tracks server-side speaker."""

    def __init__(self, clock: FakeClock, *, call_seconds: float = 0.25) -> None:
        self.clock = clock
        self.call_seconds = call_seconds
        self.calls: list[tuple] = []
        self.intervals: list[tuple[float, float]] = []
        self.switch_failures: dict[int, int] = {}
        self.synth_failures: dict[str, int] = {}
        self.switch_always_fails = False
        self.remote_speaker: int | None = None
        self.on_synthesize: Callable[[str], None] | None = None
        self.max_concurrency = 0
        self._active = 0

    def set_speaker(self, *, eval_id: str, engine_id: int, speaker_id: int) -> None:
        self.calls.append(("switch", speaker_id))
        with self._call():
            if self.switch_always_fails or self._take(self.switch_failures, speaker_id):
                raise RemoteCallError(
                    "unexpected status 503",
                    status_code=503,
                    body="temporarily unavailable",
                )
            self.remote_speaker = speaker_id

    def synthesize(self, *, eval_id: str, engine_id: int, speaker_id: int, task_id: str) -> None:
        self.calls.append(("synth", task_id, speaker_id))
        with self._call():
            if self.on_synthesize is not None:
                self.on_synthesize(task_id)
            if self.remote_speaker != speaker_id:
                raise RemoteCallError(
                    "unexpected status 500",
                    status_code=500,
                    body="speaker mismatch",
                )
            if self._take(self.synth_failures, task_id):
                raise RemoteCallError("unexpected status 500", status_code=500, body="boom")

    def synth_calls(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "synth"]

    def switch_calls(self) -> list[int]:
        return [call[1] for call in self.calls if call[0] == "switch"]

    def close(self) -> None:
        return None

    def __enter__(self) -> ScriptedBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    @contextmanager
    def _call(self) -> Iterator[None]:
        self._active += 1
        self.max_concurrency = max(self.max_concurrency, self._active)
        started = self.clock()
        self.clock.sleep(self.call_seconds)
        try:
            yield
        finally:
            self.intervals.append((started, self.clock()))
            self._active -= 1

    @staticmethod
    def _take(failures: dict, key: object) -> bool:
        remaining = failures.get(key, 0)
        if remaining <= 0:
            return False
        failures[key] = remaining - 1
        return True


@dataclass(slots=True)
class Harness:
    dispatcher: Dispatcher
    source: InMemoryTaskSource
    sink: CollectingResultSink
    backend: ScriptedBackend
    clock: FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def backend(clock: FakeClock) -> ScriptedBackend:
    return ScriptedBackend(clock)


@pytest.fixture()
def make_harness(clock: FakeClock, backend: ScriptedBackend):
    """Build a dispatcher over an in-memory queue, a collecting sink and the fake backend."""

    def _make(  # noqa: PLR0913
        tasks: Iterable[Task] = (),
        *,
        max_retries: int = 5,
        max_consecutive_switch_failures: int = 3,
        idle_min_polls: int = 1,
        idle_min_seconds: float = 0.0,
        poll_timeout_seconds: float = 1.0,
        speaker_count: int | None = None,
        initial_speaker: int | None = None,
    ) -> Harness:
        source = InMemoryTaskSource(tasks, clock=clock, sleep=clock.sleep)
        sink = CollectingResultSink()
        dispatcher = Dispatcher(
            slot=EngineSlot(
                engine_id=7,
                backend=backend,
                current_speaker=initial_speaker,
                clock=clock,
            ),
            source=source,
            sink=sink,
            drain=DrainCoordinator(
                idle_min_polls=idle_min_polls,
                idle_min_seconds=idle_min_seconds,
                clock=clock,
            ),
            max_retries=max_retries,
            max_consecutive_switch_failures=max_consecutive_switch_failures,
            poll_timeout_seconds=poll_timeout_seconds,
            speaker_count=speaker_count,
            clock=clock,
            sleep=clock.sleep,
        )
        if initial_speaker is not None:
            backend.remote_speaker = initial_speaker
        return Harness(
            dispatcher=dispatcher,
            source=source,
            sink=sink,
            backend=backend,
            clock=clock,
        )

    return _make


@pytest.fixture()
def make_backend(clock: FakeClock):
    """Additional fake engines sharing the test clock."""

    def _make(*, call_seconds: float = 0.25) -> ScriptedBackend:
        return ScriptedBackend(clock, call_seconds=call_seconds)

    return _make
