"""Messages, the publisher and consumer interfaces, their settings, and retrying."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar, runtime_checkable

from servicekit.metrics import Metrics
from servicekit.servicelog import ServiceLogger

T = TypeVar("T")


@dataclass
class Message:
    """A message with its routing topic, key, body and string headers."""

    topic: str
    key: bytes = b""
    payload: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


Handler = Callable[[Message], Awaitable[None]]


@runtime_checkable
class Publisher(Protocol):
    """Sends messages to a broker."""

    async def publish(self, msg: Message) -> None:
        """Send one message, raising if it could not be delivered."""

    async def close(self) -> None:
        """Release the underlying connection."""


@runtime_checkable
class Consumer(Protocol):
    """Receives messages from a broker and hands them to a handler."""

    async def start(self) -> None:
        """Consume until the running task is cancelled."""

    async def close(self) -> None:
        """Release the underlying connection."""


@dataclass
class ConsumerConfig:
    """How a consumer processes messages. ``retry_delay`` is in seconds.

    A worker count of zero or less means one worker; negative retry
    counts and delays are treated as zero.
    """

    worker_count: int = 1
    retry_enabled: bool = False
    max_retry: int = 0
    retry_delay: float = 0.0
    dlq_publisher: Optional[Publisher] = None
    log: Optional[ServiceLogger] = None
    metrics: Optional[Metrics] = None
    service_name: str = ""
    success_logging: bool = False

    def __post_init__(self) -> None:
        if self.worker_count <= 0:
            self.worker_count = 1
        self.max_retry = max(self.max_retry, 0)
        self.retry_delay = max(self.retry_delay, 0.0)

    @property
    def dlq_enabled(self) -> bool:
        return self.dlq_publisher is not None


@dataclass
class PublisherConfig:
    """How a publisher sends messages. ``retry_delay`` is in seconds.

    Negative retry counts and delays are treated as zero.
    """

    retry_enabled: bool = False
    max_retries: int = 0
    retry_delay: float = 0.0
    dlq_enabled: bool = False
    log: Optional[ServiceLogger] = None
    metrics: Optional[Metrics] = None
    service_name: str = ""
    success_logging: bool = False

    def __post_init__(self) -> None:
        self.max_retries = max(self.max_retries, 0)
        self.retry_delay = max(self.retry_delay, 0.0)


async def execute_with_retry(
    enabled: bool,
    max_retries: int,
    delay: float,
    fn: Callable[[], Awaitable[T]],
) -> T:
    """Await ``fn()``; when enabled, retry up to ``max_retries`` more times.

    ``delay`` is the pause in seconds between attempts. The last error is
    raised once attempts run out.
    """
    if not enabled:
        return await fn()

    max_retries = max(max_retries, 0)
    delay = max(delay, 0.0)

    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except Exception:
            if attempt == max_retries:
                raise
        if delay > 0:
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")


def _error_text(err: BaseException) -> str:
    return str(err) or type(err).__name__


__all_helpers__: tuple[Any, ...] = ()