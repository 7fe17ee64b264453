"""RabbitMQ task source and result sink built on pika's blocking adapter."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from typing import Any

import pika
from pika.adapters.blocking_connection import BlockingChannel, BlockingConnection
from pika.exceptions import AMQPError

from synth_worker.dispatch.models import CompletionEvent, Task
from synth_worker.dispatch.sink import ResultSinkError
from synth_worker.dispatch.source import TaskSourceError, TaskSourceUnavailable

logger = logging.getLogger(__name__)

ATTEMPT_HEADER = "x-synth-attempt"
_CONTENT_TYPE = "application/json"

_Delivery = tuple[Any, Any, bytes]


class TaskDecodeError(ValueError):
    """Queue message body is not a valid task."""


def decode_task(
    body: bytes,
    *,
    headers: dict[str, Any] | None = None,
    default_eval_id: str = "",
) -> Task:
    """Parse a queue message into a Task, reading the attempt from headers."""

    try:
        payload = json.loads(body)
    except ValueError as error:
        raise TaskDecodeError(f"invalid JSON payload: {error}") from error
    if not isinstance(payload, dict):
        raise TaskDecodeError("task payload must be a JSON object")

    task_id = payload.get("task_id")
    if not isinstance(task_id, str) or not task_id.strip():
        raise TaskDecodeError("task_id must be a non-empty string")
    speaker_id = payload.get("speaker_id")
    if isinstance(speaker_id, bool) or not isinstance(speaker_id, int):
        raise TaskDecodeError(f"speaker_id must be an integer, got {speaker_id!r}")
    eval_id = payload.get("eval_id") or default_eval_id
    if not isinstance(eval_id, str):
        raise TaskDecodeError(f"eval_id must be a string, got {eval_id!r}")

    attempt = (headers or {}).get(ATTEMPT_HEADER, 1)
    if isinstance(attempt, bool) or not isinstance(attempt, int) or attempt < 1:
        attempt = 1
    return Task(task_id=task_id, speaker_id=speaker_id, eval_id=eval_id, attempt=attempt)


def encode_task(task: Task) -> bytes:
    return json.dumps(
        {"eval_id": task.eval_id, "task_id": task.task_id, "speaker_id": task.speaker_id},
    ).encode("utf-8")


class AmqpTaskSource:
    """Consume tasks from a durable queue with prefetch 1 and manual acks.

    ``requeue`` republishes the task with its attempt header bumped and then
    acks the original delivery, so the retry budget travels with the message.
    A crash between the two leaves a duplicate, never a lost task.
    """

    def __init__(
        self,
        channel: BlockingChannel,
        *,
        queue: str,
        consumer_tag: str | None = None,
        default_eval_id: str = "",
    ) -> None:
        self._channel = channel
        self.queue = queue
        self.consumer_tag = consumer_tag
        self.default_eval_id = default_eval_id
        self._consumer: Iterator[_Delivery] | None = None
        self._consumer_timeout: float | None = None
        self._deliveries: dict[str, tuple[int, Task]] = {}
        try:
            self._channel.basic_qos(prefetch_count=1)
        except AMQPError as error:
            raise TaskSourceUnavailable(f"failed to set prefetch on {queue}: {error}") from error

    def next(self, timeout_seconds: float) -> Task | None:
        while True:
            method, properties, body = self._receive(timeout_seconds)
            if method is None:
                return None
            try:
                task = decode_task(
                    body,
                    headers=getattr(properties, "headers", None),
                    default_eval_id=self.default_eval_id,
                )
            except TaskDecodeError as error:
                logger.error(
                    "queue %s: dropping malformed task (delivery %s): %s",
                    self.queue,
                    method.delivery_tag,
                    error,
                )
                self._guarded(lambda: self._channel.basic_ack(delivery_tag=method.delivery_tag))
                continue
            self._deliveries[task.task_id] = (method.delivery_tag, task)
            return task

    def ack(self, task_id: str) -> None:
        delivery_tag, _ = self._pop(task_id, action="ack")
        self._guarded(lambda: self._channel.basic_ack(delivery_tag=delivery_tag))

    def requeue(self, task_id: str) -> None:
        delivery_tag, task = self._pop(task_id, action="requeue")
        redelivery = task.next_attempt()

        def _republish() -> None:
            self._channel.basic_publish(
                exchange="",
                routing_key=self.queue,
                body=encode_task(redelivery),
                properties=pika.BasicProperties(
                    content_type=_CONTENT_TYPE,
                    delivery_mode=pika.DeliveryMode.Persistent,
                    headers={ATTEMPT_HEADER: redelivery.attempt},
                ),
            )
            self._channel.basic_ack(delivery_tag=delivery_tag)

        self._guarded(_republish)

    def close(self) -> None:
        if self._consumer is None or not self._channel.is_open:
            return
        try:
            requeued = self._channel.cancel()
        except AMQPError as error:
            logger.warning("queue %s: consumer cancel failed: %s", self.queue, error)
            return
        if requeued:
            logger.info("queue %s: returned %d prefetched message(s)", self.queue, requeued)
        self._consumer = None

    def _receive(self, timeout_seconds: float) -> _Delivery:
        if self._consumer is None or self._consumer_timeout != timeout_seconds:
            self.close()
            consume_kwargs: dict[str, Any] = {"inactivity_timeout": timeout_seconds}
            if self.consumer_tag is not None:
                consume_kwargs["consumer_tag"] = self.consumer_tag
            self._consumer = self._guarded(
                lambda: self._channel.consume(self.queue, **consume_kwargs),
            )
            self._consumer_timeout = timeout_seconds
        try:
            return self._guarded(lambda: next(self._consumer))
        except StopIteration as error:
            self._consumer = None
            raise TaskSourceUnavailable(f"consumer on {self.queue} was cancelled") from error

    def _pop(self, task_id: str, *, action: str) -> tuple[int, Task]:
        delivery = self._deliveries.pop(task_id, None)
        if delivery is None:
            raise TaskSourceError(f"task {task_id} is not outstanding; cannot {action}")
        return delivery

    def _guarded(self, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except AMQPError as error:
            raise TaskSourceUnavailable(f"queue {self.queue} transport failed: {error}") from error


class AmqpResultSink:
    """Publish completion events to a topic exchange keyed by eval_id."""

    def __init__(self, channel: BlockingChannel, *, exchange: str) -> None:
        self._channel = channel
        self.exchange = exchange

    def publish(self, event: CompletionEvent) -> None:
        try:
            self._channel.basic_publish(
                exchange=self.exchange,
                routing_key=event.eval_id,
                body=json.dumps(event.to_payload()).encode("utf-8"),
                properties=pika.BasicProperties(
                    content_type=_CONTENT_TYPE,
                    delivery_mode=pika.DeliveryMode.Persistent,
                ),
            )
        except AMQPError as error:
            raise ResultSinkError(
                f"publish to {self.exchange} failed for task {event.task_id}: {error}",
            ) from error


class AmqpTransport:
    """Owns the broker connection; hands out one channel per component."""

    def __init__(
        self,
        url: str,
        *,
        heartbeat_seconds: int | None = None,
        connection_factory: Callable[[pika.URLParameters], BlockingConnection] = (
            pika.BlockingConnection
        ),
    ) -> None:
        parameters = pika.URLParameters(url)
        if heartbeat_seconds is not None:
            parameters.heartbeat = heartbeat_seconds
        try:
            self._connection = connection_factory(parameters)
        except AMQPError as error:
            raise TaskSourceUnavailable(f"cannot connect to broker: {error}") from error

    def task_source(
        self,
        *,
        queue: str,
        consumer_tag: str | None = None,
        default_eval_id: str = "",
    ) -> AmqpTaskSource:
        try:
            channel = self._connection.channel()
            channel.queue_declare(queue=queue, durable=True)
        except AMQPError as error:
            raise TaskSourceUnavailable(f"cannot declare queue {queue}: {error}") from error
        return AmqpTaskSource(
            channel,
            queue=queue,
            consumer_tag=consumer_tag,
            default_eval_id=default_eval_id,
        )

    def result_sink(self, *, exchange: str) -> AmqpResultSink:
        try:
            channel = self._connection.channel()
            channel.exchange_declare(exchange=exchange, exchange_type="topic", durable=True)
        except AMQPError as error:
            raise TaskSourceUnavailable(f"cannot declare exchange {exchange}: {error}") from error
        return AmqpResultSink(channel, exchange=exchange)

    def close(self) -> None:
        if not self._connection.is_open:
            return
        try:
            self._connection.close()
        except AMQPError as error:
            logger.warning("broker connection close failed: %s", error)

    def __enter__(self) -> AmqpTransport:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
