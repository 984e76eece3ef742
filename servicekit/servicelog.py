"""Structured service-operation log entries and the interface that receives them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Mapping, Protocol, runtime_checkable


@dataclass
class ServiceLog:
    """One structured record of a service operation."""

    operation: str
    status: str
    duration_ms: int = 0
    error_code: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ServiceLogger(Protocol):
    """Anything that accepts structured service log entries."""

    def log_service(self, entry: ServiceLog) -> None: ...


def _to_milliseconds(duration: timedelta | float) -> int:
    if not isinstance(duration, timedelta):
        duration = timedelta(seconds=duration)
    whole = duration // timedelta(milliseconds=1)
    # Truncate toward zero, as negative durations should not round down.
    if whole < 0 and duration % timedelta(milliseconds=1):
        whole += 1
    return whole


def emit_service_log(
    log: ServiceLogger | None,
    operation: str,
    status: str,
    duration: timedelta | float = 0,
    error_code: str = "",
    metadata: Mapping[str, Any] | None = None,
) -> None:
    """Send a service log entry to ``log`` if one is given.

    ``duration`` is a timedelta or a number of seconds; it is recorded
    as whole milliseconds.
    """
    if log is None:
        return
    log.log_service(
        ServiceLog(
            operation=operation,
            status=status,
            duration_ms=_to_milliseconds(duration),
            error_code=error_code,
            metadata=dict(metadata or {}),
        )
    )