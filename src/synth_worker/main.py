"""CLI entrypoint for synth-worker."""

import logging

import rich_click as click

from synth_worker import __version__
from synth_worker.dispatch.controllers import WorkerCliController, WorkerRunCommand

click.rich_click.USE_MARKDOWN = True
WORKER_CONTROLLER = WorkerCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="synth-worker")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level for worker output.",
)
def synth_worker(log_level: str) -> None:
    """Synthesis engine worker CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@synth_worker.command("run")
@click.argument("engine_id", type=click.IntRange(min=0), required=False)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many deliveries instead of waiting for the queue to drain.",
)
def run(engine_id: int | None, max_tasks: int | None) -> None:
    """Drain the task queue through one engine slot.

    ENGINE_ID falls back to the `SYNTH_WORKER_ENGINE_ID` environment variable.
    Exits with code 2 when the engine is unusable and 3 when the queue is lost.
    """

    try:
        result = WORKER_CONTROLLER.run_worker(
            WorkerRunCommand(engine_id=engine_id, max_tasks=max_tasks),
        )
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(result.lines)
    if result.exit_code:
        raise SystemExit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    synth_worker()
