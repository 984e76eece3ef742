"""A consumer that reads Kafka records and feeds them to a pool of workers."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional, Protocol, runtime_checkable

from servicekit.messaging.kafka_publisher import KafkaRecord
from servicekit.messaging.message import (
    ConsumerConfig,
    Handler,
    Message,
    _error_text,
    execute_with_retry,
)
from servicekit.servicelog import emit_service_log

_STOP = object()


@runtime_checkable
class MessageReader(Protocol):
    """Reads records from Kafka and commits their offsets."""

    async def fetch_message(self) -> KafkaRecord:
        """Wait for and return the next record."""

    async def commit_messages(self, *args: KafkaRecord) -> None:
        """Commit the offsets of the given records."""

    async def close(self) -> None:
        """Release the connection."""


class KafkaConsumer:
    """Consumes a topic as part of a group, committing only handled messages.

    A message is committed when its handler succeeds, or when it fails and
    was copied to the dead-letter publisher.
    """

    def __init__(
        self,
        reader: MessageReader,
        topic: str,
        group_id: str,
        handler: Handler,
        config: Optional[ConsumerConfig] = None,
        *,
        fetch_retry_delay: float = 2.0,
    ) -> None:
        if not topic:
            raise ValueError("topic cannot be empty")
        if not group_id:
            raise ValueError("groupID cannot be empty")
        if handler is None:
            raise ValueError("handler cannot be nil")
        self._reader = reader
        self.topic = topic
        self.group_id = group_id
        self._handler = handler
        self._config = config or ConsumerConfig()
        self._fetch_retry_delay = fetch_retry_delay
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Consume until the running task is cancelled.

        On cancellation the workers finish the messages they hold before
        the cancellation propagates. Fetch errors are logged and retried.
        """
        self._stopping = asyncio.Event()
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1)
        workers = [
            asyncio.create_task(self._work(queue)) for _ in range(self._config.worker_count)
        ]
        try:
            while True:
                try:
                    record = await self._reader.fetch_message()
                except Exception as err:
                    self._observe(self.topic, "fetch_failed")
                    self._log(
                        "failed",
                        "fetch_failed",
                        {"topic": self.topic, "group": self.group_id, "error": _error_text(err)},
                        0,
                    )
                    await asyncio.sleep(self._fetch_retry_delay)
                    continue
                await queue.put(record)
        finally:
            self._stopping.set()
            for _ in workers:
                await queue.put(_STOP)
            await asyncio.gather(*workers)

    async def close(self) -> None:
        """Close the reader."""
        await self._reader.close()

    async def _work(self, queue: asyncio.Queue[Any]) -> None:
        while (item := await queue.get()) is not _STOP:
            await self._process(item)

    async def _process(self, record: KafkaRecord) -> None:
        cfg = self._config
        started = time.monotonic()
        msg = Message(
            topic=record.topic,
            key=record.key,
            payload=record.value,
            headers={key: value.decode("utf-8", errors="replace") for key, value in record.headers},
        )
        status = ""
        error_code = ""
        should_commit = False
        metadata: dict[str, Any] = {"topic": msg.topic, "group": self.group_id}

        error: Optional[Exception] = None
        try:
            await execute_with_retry(
                cfg.retry_enabled,
                cfg.max_retry,
                cfg.retry_delay,
                lambda: self._handler(msg),
            )
        except Exception as exc:
            error = exc
        if error is not None and self._stopping.is_set():
            return

        if error is None:
            should_commit = True
            status = "success"
        self._observe_duration(msg.topic, time.monotonic() - started)

        if error is not None and cfg.dlq_publisher is not None:
            dlq_msg = Message(
                topic=msg.topic + ".dlq",
                key=msg.key,
                payload=msg.payload,
                headers=msg.headers,
            )
            try:
                await cfg.dlq_publisher.publish(dlq_msg)
            except Exception as dlq_err:
                metadata.update(
                    error=_error_text(dlq_err), dlq=True, headers=len(msg.headers)
                )
                self._observe(msg.topic, "dlq_failed")
                self._log("failed", "dlq_publish_failed", metadata, time.monotonic() - started)
                return
            status = "dlq_success"
            metadata["dlq"] = True
            error = None
            should_commit = True

        if should_commit:
            try:
                await self._reader.commit_messages(record)
            except Exception as commit_err:
                self._observe(msg.topic, "commit_failed")
                self._log(
                    "failed",
                    "commit_failed",
                    {"topic": msg.topic, "group": self.group_id, "error": _error_text(commit_err)},
                    time.monotonic() - started,
                )
                return

        if error is not None:
            status = "failed"
            error_code = "consume_failed"
            metadata["error"] = _error_text(error)
        status = status or "success"

        self._observe(msg.topic, status)
        if status != "success" or cfg.success_logging:
            self._log(status, error_code, metadata, time.monotonic() - started)

    def _observe(self, topic: str, status: str) -> None:
        cfg = self._config
        if cfg.metrics is None or not cfg.service_name:
            return
        cfg.metrics.message_consume_total.labels(cfg.service_name, topic, self.group_id, status).inc()

    def _observe_duration(self, topic: str, seconds: float) -> None:
        cfg = self._config
        if cfg.metrics is None or not cfg.service_name:
            return
        cfg.metrics.message_process_duration.labels(cfg.service_name, topic, self.group_id).observe(
            seconds
        )

    def _log(self, status: str, error_code: str, metadata: dict[str, Any], seconds: float) -> None:
        emit_service_log(self._config.log, "message_consume", status, seconds, error_code, metadata)