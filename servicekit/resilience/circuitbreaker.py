"""A circuit breaker that fails fast once a dependency keeps failing."""

from __future__ import annotations

import asyncio
import enum
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

DEFAULT_NAME = "servicekit-circuitbreaker"
_DEFAULT_TIMEOUT = 60.0


class CircuitOpenError(Exception):
    """Raised when the circuit breaker is open."""

    def __init__(self) -> None:
        super().__init__("circuit breaker is open")


class TooManyRequestsError(Exception):
    """Raised when the breaker is half-open and its trial requests are used up."""

    def __init__(self) -> None:
        super().__init__("too many requests in half-open state")


class CircuitState(enum.Enum):
    CLOSED = "closed"
    HALF_OPEN = "half-open"
    OPEN = "open"


@dataclass
class Counts:
    """Request and outcome counts for the current generation."""

    requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0

    def _on_request(self) -> None:
        self.requests += 1

    def _on_success(self) -> None:
        self.total_successes += 1
        self.consecutive_successes += 1
        self.consecutive_failures = 0

    def _on_failure(self) -> None:
        self.total_failures += 1
        self.consecutive_failures += 1
        self.consecutive_successes = 0


def _default_ready_to_trip(counts: Counts) -> bool:
    return counts.consecutive_failures > 5


@dataclass
class CircuitBreakerOptions:
    """Breaker settings. ``interval`` and ``timeout`` are in seconds.

    An interval of zero never clears the counts while closed; ``timeout`` is
    how long the breaker stays open before letting trial requests through.
    """

    name: str = ""
    max_requests: int = 0
    interval: float = 0.0
    timeout: float = 0.0
    ready_to_trip: Optional[Callable[[Counts], bool]] = None
    on_state_change: Optional[Callable[[str, CircuitState, CircuitState], None]] = None


def default_circuit_breaker_options(name: str) -> CircuitBreakerOptions:
    """Return options that trip after more than five consecutive failures."""
    return CircuitBreakerOptions(
        name=name,
        max_requests=1,
        interval=0.0,
        timeout=_DEFAULT_TIMEOUT,
        ready_to_trip=_default_ready_to_trip,
    )


class CircuitBreaker:
    """Guards asynchronous calls, opening after repeated failures."""

    def __init__(self, opts: CircuitBreakerOptions | None = None) -> None:
        opts = opts or CircuitBreakerOptions()
        self.name = opts.name or DEFAULT_NAME
        self._max_requests = opts.max_requests if opts.max_requests > 0 else 1
        self._interval = max(opts.interval, 0.0)
        self._timeout = opts.timeout if opts.timeout > 0 else _DEFAULT_TIMEOUT
        self._ready_to_trip = opts.ready_to_trip or _default_ready_to_trip
        self._on_state_change = opts.on_state_change

        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._generation = 0
        self._counts = Counts()
        self._expiry: Optional[float] = None
        self._new_generation(time.monotonic())

    @property
    def state(self) -> CircuitState:
        with self._lock:
            state, _ = self._current_state(time.monotonic())
            return state

    @property
    def counts(self) -> Counts:
        with self._lock:
            return replace(self._counts)

    async def call(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Await ``fn()`` through the breaker and return its result.

        A timeout raised by ``fn`` is not counted as a failure and yields None;
        cancellation is not counted either and propagates.
        """
        generation = self._before_request()
        try:
            result = await fn()
        except (TimeoutError, asyncio.TimeoutError):
            self._after_request(generation, success=True)
            return None
        except asyncio.CancelledError:
            self._after_request(generation, success=True)
            raise
        except BaseException:
            self._after_request(generation, success=False)
            raise
        self._after_request(generation, success=True)
        return result

    def _before_request(self) -> int:
        with self._lock:
            state, generation = self._current_state(time.monotonic())
            if state is CircuitState.OPEN:
                raise CircuitOpenError()
            if state is CircuitState.HALF_OPEN and self._counts.requests >= self._max_requests:
                raise TooManyRequestsError()
            self._counts._on_request()
            return generation

    def _after_request(self, before: int, success: bool) -> None:
        with self._lock:
            now = time.monotonic()
            state, generation = self._current_state(now)
            if generation != before:
                return
            if success:
                self._on_success(state, now)
            else:
                self._on_failure(state, now)

    def _on_success(self, state: CircuitState, now: float) -> None:
        if state is CircuitState.CLOSED:
            self._counts._on_success()
        elif state is CircuitState.HALF_OPEN:
            self._counts._on_success()
            if self._counts.consecutive_successes >= self._max_requests:
                self._set_state(CircuitState.CLOSED, now)

    def _on_failure(self, state: CircuitState, now: float) -> None:
        if state is CircuitState.CLOSED:
            self._counts._on_failure()
            if self._ready_to_trip(replace(self._counts)):
                self._set_state(CircuitState.OPEN, now)
        elif state is CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN, now)

    def _current_state(self, now: float) -> tuple[CircuitState, int]:
        if self._state is CircuitState.CLOSED:
            if self._expiry is not None and self._expiry < now:
                self._new_generation(now)
        elif self._state is CircuitState.OPEN:
            if self._expiry is not None and self._expiry < now:
                self._set_state(CircuitState.HALF_OPEN, now)
        return self._state, self._generation

    def _set_state(self, state: CircuitState, now: float) -> None:
        if self._state is state:
            return
        previous = self._state
        self._state = state
        self._new_generation(now)
        if self._on_state_change is not None:
            self._on_state_change(self.name, previous, state)

    def _new_generation(self, now: float) -> None:
        self._generation += 1
        self._counts = Counts()
        if self._state is CircuitState.CLOSED:
            self._expiry = now + self._interval if self._interval > 0 else None
        elif self._state is CircuitState.OPEN:
            self._expiry = now + self._timeout
        else:
            self._expiry = None