"""Controllers for worker CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from synth_worker.config import Settings
from synth_worker.dispatch.amqp import AmqpTransport
from synth_worker.dispatch.backend import HttpSynthesisBackend, SynthesisBackend
from synth_worker.dispatch.dispatcher import Dispatcher, EngineUnusable
from synth_worker.dispatch.drain import DrainCoordinator
from synth_worker.dispatch.engine import EngineSlot
from synth_worker.dispatch.models import DispatcherSummary
from synth_worker.dispatch.sink import ResultSink
from synth_worker.dispatch.source import TaskSource, TaskSourceUnavailable

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ENGINE_UNUSABLE = 2
EXIT_QUEUE_UNAVAILABLE = 3


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for one worker process."""

    engine_id: int | None
    max_tasks: int | None = None


@dataclass(slots=True)
class WorkerRunResult:
    """Printable outcome and process exit code."""

    lines: list[str]
    exit_code: int = EXIT_OK


def build_dispatcher(
    settings: Settings,
    *,
    source: TaskSource,
    sink: ResultSink,
    backend: SynthesisBackend,
) -> Dispatcher:
    """Wire one engine slot, its drain policy and the dispatcher from settings."""

    if settings.engine_id is None:
        raise ValueError("engine_id is required to build a dispatcher")
    drain = DrainCoordinator(
        idle_min_polls=settings.drain.idle_min_polls,
        idle_min_seconds=settings.drain.idle_min_seconds,
        backoff_initial_seconds=settings.drain.backoff_initial_seconds,
        backoff_max_seconds=settings.drain.backoff_max_seconds,
        backoff_multiplier=settings.drain.backoff_multiplier,
    )
    return Dispatcher(
        slot=EngineSlot(engine_id=settings.engine_id, backend=backend),
        source=source,
        sink=sink,
        drain=drain,
        max_retries=settings.dispatch.max_retries,
        max_consecutive_switch_failures=settings.dispatch.max_consecutive_switch_failures,
        poll_timeout_seconds=settings.dispatch.poll_timeout_seconds,
        speaker_count=settings.runtime.speaker_count,
    )


class WorkerCliController:
    """Bind CLI commands to the broker, the remote service and the dispatcher."""

    def __init__(
        self,
        *,
        transport_factory: Callable[[Settings], AmqpTransport] | None = None,
        backend_factory: Callable[[Settings], HttpSynthesisBackend] | None = None,
    ) -> None:
        self._transport_factory = transport_factory or _amqp_transport
        self._backend_factory = backend_factory or _http_backend

    def run_worker(self, command: WorkerRunCommand) -> WorkerRunResult:
        """Drain the task queue through one engine until idle."""

        settings = Settings.from_env(engine_id=command.engine_id)
        settings.validate()
        engine_id = settings.engine_id
        logger.info(
            "engine %s consuming %s for eval %r (expected_tasks=%s), results to %s, service %s",
            engine_id,
            settings.amqp.task_queue,
            settings.runtime.eval_id,
            settings.runtime.task_count,
            settings.amqp.result_exchange,
            settings.remote.base_url,
        )

        try:
            with (
                self._backend_factory(settings) as backend,
                self._transport_factory(settings) as transport,
            ):
                source = transport.task_source(
                    queue=settings.amqp.task_queue,
                    consumer_tag=f"synth-worker-{engine_id}",
                    default_eval_id=settings.runtime.eval_id,
                )
                sink = transport.result_sink(exchange=settings.amqp.result_exchange)
                dispatcher = build_dispatcher(
                    settings,
                    source=source,
                    sink=sink,
                    backend=backend,
                )
                try:
                    summary = dispatcher.run_loop(max_tasks=command.max_tasks)
                finally:
                    source.close()
        except EngineUnusable as error:
            return WorkerRunResult(
                lines=[str(error), *_summary_lines(engine_id, error.summary)],
                exit_code=EXIT_ENGINE_UNUSABLE,
            )
        except TaskSourceUnavailable as error:
            logger.error("engine %s lost the task queue: %s", engine_id, error)
            return WorkerRunResult(
                lines=[f"Task queue unavailable: {error}"],
                exit_code=EXIT_QUEUE_UNAVAILABLE,
            )

        return WorkerRunResult(lines=_summary_lines(engine_id, summary))


def _summary_lines(engine_id: int | None, summary: DispatcherSummary | None) -> list[str]:
    if summary is None:
        return []
    return [
        f"Worker summary (engine {engine_id}): "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} requeued={summary.requeued} "
        f"switches={summary.switches} idle_polls={summary.idle_polls} "
        f"publish_errors={summary.publish_errors}",
    ]


def _amqp_transport(settings: Settings) -> AmqpTransport:
    return AmqpTransport(settings.amqp.url, heartbeat_seconds=settings.amqp.heartbeat_seconds)


def _http_backend(settings: Settings) -> HttpSynthesisBackend:
    return HttpSynthesisBackend(
        settings.remote.base_url,
        timeout_seconds=settings.remote.request_timeout_seconds,
        connect_timeout_seconds=settings.remote.connect_timeout_seconds,
    )
