from __future__ import annotations

import allure
import pytest

from synth_worker.dispatch.models import Task
from synth_worker.dispatch.source import InMemoryTaskSource, TaskSourceError

pytestmark = [
    allure.epic("Task Dispatch"),
    allure.feature("Task Source"),
]


def _source(clock, tasks=(), **kwargs) -> InMemoryTaskSource:
    return InMemoryTaskSource(tasks, clock=clock, sleep=clock.sleep, **kwargs)


def test_delivers_tasks_in_insertion_order(clock) -> None:
    source = _source(clock, [Task("a", 0), Task("b", 1), Task("c", 0)])

    delivered = [source.next(1.0).task_id for _ in range(3)]

    assert delivered == ["a", "b", "c"]
    assert source.outstanding == ("a", "b", "c")
    assert source.pending_count == 0


def test_empty_poll_waits_out_timeout_and_counts(clock) -> None:
    source = _source(clock)

    assert source.next(2.0) is None
    assert source.next(0.0) is None

    assert clock.now == 1002.0
    assert source.empty_polls == 2


def test_delayed_task_is_delivered_once_available(clock) -> None:
    source = _source(clock)
    source.put(Task("late", 0), delay_seconds=1.5)

    assert source.next(1.0) is None
    task = source.next(1.0)

    assert task is not None
    assert task.task_id == "late"
    assert clock.now == 1001.5


def test_ack_settles_outstanding_task_once(clock) -> None:
    source = _source(clock, [Task("a", 0)])
    source.next(1.0)

    source.ack("a")

    assert source.acked == ["a"]
    with pytest.raises(TaskSourceError, match="not outstanding"):
        source.ack("a")


def test_ack_of_undelivered_task_is_rejected(clock) -> None:
    source = _source(clock, [Task("a", 0)])

    with pytest.raises(TaskSourceError):
        source.ack("a")
    with pytest.raises(TaskSourceError):
        source.requeue("a")


def test_requeue_returns_task_with_bumped_attempt(clock) -> None:
    source = _source(clock, [Task("a", 0, eval_id="eval-1"), Task("b", 1)])
    first = source.next(1.0)

    source.requeue(first.task_id)

    assert source.requeued == ["a"]
    assert source.next(1.0).task_id == "b"
    redelivered = source.next(1.0)
    assert redelivered.task_id == "a"
    assert redelivered.attempt == 2
    assert redelivered.eval_id == "eval-1"
    assert redelivered.speaker_id == 0


def test_requeue_delay_holds_task_back(clock) -> None:
    source = _source(clock, [Task("a", 0)], requeue_delay_seconds=5.0)
    source.requeue(source.next(1.0).task_id)

    assert source.next(1.0) is None
    assert source.pending_count == 1
    assert source.next(10.0).attempt == 2
