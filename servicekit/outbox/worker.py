"""A background worker that drains the outbox table into a message publisher."""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from servicekit.messaging.message import Message, Publisher, _error_text
from servicekit.metrics import Metrics
from servicekit.outbox.queries import (
    build_mark_published_query,
    build_select_pending_query,
    normalize_driver,
)
from servicekit.servicelog import ServiceLogger, emit_service_log

_DEFAULT_BATCH_SIZE = 50
_DEFAULT_INTERVAL = 2.0


class WorkerAlreadyStartedError(Exception):
    """Raised when starting a worker that is already running."""

    def __init__(self) -> None:
        super().__init__("outbox worker already started")


@dataclass
class _PendingEvent:
    id: int
    topic: str
    key: bytes
    payload: bytes
    headers: dict[str, str] = field(default_factory=dict)


def _as_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode()
    return bytes(value)


def _parse_headers(raw: Any) -> dict[str, str]:
    if not raw:
        return {}
    try:
        decoded = json.loads(_as_bytes(raw))
    except ValueError:
        return {}
    if isinstance(decoded, dict) and all(isinstance(v, str) for v in decoded.values()):
        return {str(k): v for k, v in decoded.items()}
    return {}


def _scan(row: Any) -> _PendingEvent:
    event_id, topic, key, payload, headers_raw = row
    return _PendingEvent(
        id=int(event_id),
        topic=str(topic),
        key=_as_bytes(key),
        payload=_as_bytes(payload),
        headers=_parse_headers(headers_raw),
    )


def _format_interval(seconds: float) -> str:
    return f"{int(seconds)}s" if float(seconds).is_integer() else f"{seconds}s"


class _BatchFailure(Exception):
    def __init__(self, code: str, batch_size: int, published: int, cause: Exception) -> None:
        super().__init__(code)
        self.code = code
        self.batch_size = batch_size
        self.published = published
        self.cause = cause


class Worker:
    """Periodically publishes pending outbox events and marks them published.

    ``db`` is a DB-API connection; each batch runs in one transaction that is
    committed only when every event in it was published and marked.
    ``interval`` is in seconds.
    """

    def __init__(
        self,
        db: Any,
        publisher: Optional[Publisher],
        log: Optional[ServiceLogger],
        *,
        driver: str = "mysql",
        batch_size: int = _DEFAULT_BATCH_SIZE,
        interval: float = _DEFAULT_INTERVAL,
        metrics: Optional[Metrics] = None,
        service_name: str = "",
    ) -> None:
        self._db = db
        self._publisher = publisher
        self._log = log
        self._driver = normalize_driver(driver)
        self.batch_size = batch_size if batch_size > 0 else _DEFAULT_BATCH_SIZE
        self.interval = interval if interval > 0 else _DEFAULT_INTERVAL
        self._metrics = metrics
        self._service_name = service_name
        self._started = False
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def driver(self) -> str:
        return self._driver.strip()

    def validate(self) -> None:
        """Raise ValueError if a required dependency is missing."""
        if self._db is None:
            raise ValueError("outbox worker db is None")
        if self._publisher is None:
            raise ValueError("outbox worker publisher is None")
        if self._log is None:
            raise ValueError("outbox worker logger is None")

    async def start(self) -> None:
        """Start the polling loop in the background of the running event loop."""
        self.validate()
        if self._started:
            raise WorkerAlreadyStartedError()
        self._started = True
        emit_service_log(
            self._log,
            "outbox_worker",
            "started",
            metadata={
                "driver": self._driver,
                "batch_size": self.batch_size,
                "interval": _format_interval(self.interval),
            },
        )
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event))

    async def stop(self) -> None:
        """Ask the polling loop to stop and wait for it to finish its current batch."""
        emit_service_log(
            self._log,
            "outbox_worker",
            "shutdown_requested",
            metadata={"driver": self._driver},
        )
        if not self._started:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _loop(self, stop: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(stop.wait(), self.interval)
                return
            except asyncio.TimeoutError:
                pass
            with contextlib.suppress(Exception):
                await self.run_once()

    async def run_once(self) -> int:
        """Publish one batch of pending events and return how many were published."""
        self.validate()
        started = time.monotonic()
        try:
            cursor = self._db.cursor()
        except Exception as err:
            self._observe_batch("failed", "begin_tx_failed", 0, 0, started, err)
            raise
        try:
            published, batch_size = await self._run_batch(cursor)
        except _BatchFailure as failure:
            self._observe_batch(
                "failed", failure.code, failure.batch_size, failure.published, started, failure.cause
            )
            raise failure.cause from None
        finally:
            with contextlib.suppress(Exception):
                cursor.close()
        status = "success" if batch_size else "empty"
        self._observe_batch(status, "", batch_size, published, started, None)
        return published

    async def _run_batch(self, cursor: Any) -> tuple[int, int]:
        query, args = build_select_pending_query(self._driver, self.batch_size)
        try:
            cursor.execute(query, args)
            rows = cursor.fetchall()
        except Exception as err:
            self._rollback()
            raise _BatchFailure("query_failed", 0, 0, err) from err

        events: list[_PendingEvent] = []
        for row in rows:
            try:
                events.append(_scan(row))
            except (TypeError, ValueError) as err:
                self._rollback()
                raise _BatchFailure("scan_failed", len(events), 0, err) from err

        if not events:
            self._rollback()
            return 0, 0

        published = 0
        for event in events:
            try:
                await self._publisher.publish(
                    Message(
                        topic=event.topic,
                        key=event.key,
                        payload=event.payload,
                        headers=event.headers,
                    )
                )
            except Exception as err:
                self._rollback()
                raise _BatchFailure("publish_failed", len(events), published, err) from err
            published += 1

            update, update_args = build_mark_published_query(self._driver, event.id)
            try:
                cursor.execute(update, update_args)
            except Exception as err:
                self._rollback()
                raise _BatchFailure("mark_published_failed", len(events), published, err) from err

        try:
            self._db.commit()
        except Exception as err:
            raise _BatchFailure("commit_failed", len(events), published, err) from err
        return published, len(events)

    def _rollback(self) -> None:
        with contextlib.suppress(Exception):
            self._db.rollback()

    def _observe_batch(
        self,
        status: str,
        error_code: str,
        batch_size: int,
        published: int,
        started: float,
        err: Optional[BaseException],
    ) -> None:
        duration = time.monotonic() - started
        metadata: dict[str, Any] = {
            "driver": self._driver,
            "batch_size": batch_size,
            "published_count": published,
        }
        if err is not None:
            metadata["error"] = _error_text(err)
        emit_service_log(self._log, "outbox_batch", status, duration, error_code, metadata)
        if self._metrics is not None and self._service_name:
            self._metrics.outbox_batch_total.labels(self._service_name, status).inc()
            self._metrics.outbox_batch_duration.labels(self._service_name).observe(duration)
            self._metrics.outbox_batch_size.labels(self._service_name).observe(float(batch_size))