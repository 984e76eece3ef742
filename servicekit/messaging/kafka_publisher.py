"""A publisher that writes messages to Kafka through a record writer."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from servicekit.messaging.message import (
    Message,
    PublisherConfig,
    _error_text,
    execute_with_retry,
)
from servicekit.servicelog import emit_service_log


class PublisherClosedError(Exception):
    """Raised when publishing through a publisher that has been closed."""

    def __init__(self) -> None:
        super().__init__("publisher already closed")


@dataclass
class KafkaRecord:
    """A record as it travels to and from a Kafka broker."""

    topic: str
    key: bytes = b""
    value: bytes = b""
    headers: list[tuple[str, bytes]] = field(default_factory=list)


@runtime_checkable
class MessageWriter(Protocol):
    """Writes records to Kafka."""

    async def write_messages(self, *args: KafkaRecord) -> None:
        """Write the records, raising if the broker did not accept them."""

    async def close(self) -> None:
        """Release the connection."""


class KafkaPublisher:
    """Publishes messages with optional retry and dead-letter topic."""

    def __init__(self, writer: MessageWriter, config: Optional[PublisherConfig] = None) -> None:
        self._writer = writer
        self._config = config or PublisherConfig()
        self._closed = False
        self._close_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, msg: Message) -> None:
        """Write ``msg``; on failure, copy it to ``<topic>.dlq`` if enabled and raise."""
        if self._closed:
            raise PublisherClosedError()
        started = time.monotonic()
        cfg = self._config

        record = KafkaRecord(
            topic=msg.topic,
            key=msg.key,
            value=msg.payload,
            headers=[(key, value.encode()) for key, value in msg.headers.items()],
        )

        error: Optional[Exception] = None
        try:
            await execute_with_retry(
                cfg.retry_enabled,
                cfg.max_retries,
                cfg.retry_delay,
                lambda: self._writer.write_messages(record),
            )
        except Exception as exc:
            error = exc

        if error is not None:
            if cfg.dlq_enabled:
                await self._publish_dead_letter(msg, started)
            self._observe(msg.topic, "failed")
            self._log(
                "failed",
                "publish_failed",
                {
                    "topic": msg.topic,
                    "retry_enabled": cfg.retry_enabled,
                    "dlq_enabled": cfg.dlq_enabled,
                    "error": _error_text(error),
                },
                started,
            )
            raise error

        self._observe(msg.topic, "success")
        if cfg.success_logging:
            self._log(
                "success",
                "",
                {
                    "topic": msg.topic,
                    "retry_enabled": cfg.retry_enabled,
                    "dlq_enabled": cfg.dlq_enabled,
                },
                started,
            )

    async def close(self) -> None:
        """Close the writer once; later calls do nothing."""
        if self._closed:
            return
        async with self._close_lock:
            if self._closed:
                return
            try:
                await self._writer.close()
            finally:
                self._closed = True

    async def _publish_dead_letter(self, msg: Message, started: float) -> None:
        cfg = self._config
        dlq_record = KafkaRecord(topic=msg.topic + ".dlq", key=msg.key, value=msg.payload)
        status = "dlq_success"
        error_code = ""
        metadata: dict[str, Any] = {
            "topic": msg.topic,
            "dlq_topic": dlq_record.topic,
            "retry_enabled": cfg.retry_enabled,
            "dlq_enabled": cfg.dlq_enabled,
        }
        try:
            await self._writer.write_messages(dlq_record)
        except Exception as dlq_err:
            status = "dlq_failed"
            error_code = "dlq_publish_failed"
            metadata["error"] = _error_text(dlq_err)
        self._observe(msg.topic, status)
        self._log(status, error_code, metadata, started)

    def _observe(self, topic: str, status: str) -> None:
        cfg = self._config
        if cfg.metrics is None or not cfg.service_name:
            return
        cfg.metrics.message_publish_total.labels(cfg.service_name, topic, status).inc()

    def _log(self, status: str, error_code: str, metadata: dict[str, Any], started: float) -> None:
        emit_service_log(
            self._config.log,
            "message_publish",
            status,
            time.monotonic() - started,
            error_code,
            metadata,
        )