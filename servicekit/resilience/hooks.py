"""Retry and timeout events, and hooks that turn them into service logs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from servicekit.servicelog import ServiceLogger, emit_service_log


@dataclass(frozen=True)
class RetryEvent:
    """Something that happened between two attempts of a retried call.

    ``delay`` is in seconds.
    """

    attempt: int
    max_attempts: int
    status: str
    delay: float = 0.0
    err: Optional[BaseException] = None


@dataclass(frozen=True)
class TimeoutEvent:
    """The outcome of a call run under a time limit given in seconds."""

    timeout: float
    status: str
    err: Optional[BaseException] = None


RetryHook = Callable[[RetryEvent], None]
TimeoutHook = Callable[[TimeoutEvent], None]

_RETRY_ERROR_CODES = {
    "retry_scheduled": "retryable_error",
    "stopped": "not_retryable",
    "canceled": "context_canceled",
}

_TIMEOUT_ERROR_CODES = {
    "timeout": "deadline_exceeded",
    "canceled": "context_canceled",
}


def _error_text(err: BaseException) -> str:
    return str(err) or type(err).__name__


def _millis(seconds: float) -> int:
    return int(seconds * 1000)


def retry_service_log_hook(
    log: ServiceLogger | None,
    target_operation: str,
    metadata: Mapping[str, Any] | None = None,
) -> RetryHook:
    """Return a retry hook that writes each event as a ``resilience_retry`` log."""

    def hook(event: RetryEvent) -> None:
        if log is None:
            return
        fields: dict[str, Any] = {
            "target_operation": target_operation,
            "attempt": event.attempt,
            "max_attempts": event.max_attempts,
            "delay_ms": _millis(event.delay),
        }
        fields.update(metadata or {})
        if event.err is not None:
            fields["error"] = _error_text(event.err)
        emit_service_log(
            log,
            "resilience_retry",
            event.status,
            error_code=_RETRY_ERROR_CODES.get(event.status, ""),
            metadata=fields,
        )

    return hook


def timeout_service_log_hook(
    log: ServiceLogger | None,
    target_operation: str,
    metadata: Mapping[str, Any] | None = None,
) -> TimeoutHook:
    """Return a timeout hook that writes each event as a ``resilience_timeout`` log."""

    def hook(event: TimeoutEvent) -> None:
        if log is None:
            return
        fields: dict[str, Any] = {
            "target_operation": target_operation,
            "timeout_ms": _millis(event.timeout),
        }
        fields.update(metadata or {})
        if event.err is not None:
            fields["error"] = _error_text(event.err)
        emit_service_log(
            log,
            "resilience_timeout",
            event.status,
            error_code=_TIMEOUT_ERROR_CODES.get(event.status, ""),
            metadata=fields,
        )

    return hook