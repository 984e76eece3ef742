"""Retrying and time-limiting asynchronous calls."""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

from servicekit.resilience.hooks import RetryEvent, RetryHook, TimeoutEvent, TimeoutHook

AsyncCall = Callable[[], Awaitable[Any]]

_DEFAULT_BASE_DELAY = 0.2
_DEFAULT_MAX_DELAY = 2.0
_DEFAULT_JITTER = 0.1


def is_transient_error(err: Optional[BaseException]) -> bool:
    """Return True for errors worth retrying: deadline expiries."""
    if err is None:
        return False
    return isinstance(err, (TimeoutError, asyncio.TimeoutError))


@dataclass(frozen=True)
class RetryOptions:
    """How a call is retried. Delays are in seconds."""

    max_attempts: int = 1
    base_delay: float = _DEFAULT_BASE_DELAY
    max_delay: float = _DEFAULT_MAX_DELAY
    jitter: float = _DEFAULT_JITTER
    retryable: Optional[Callable[[BaseException], bool]] = is_transient_error
    on_retry: Optional[RetryHook] = None

    def normalized(self) -> RetryOptions:
        """Return a copy with out-of-range values replaced by defaults."""
        return replace(
            self,
            max_attempts=self.max_attempts if self.max_attempts > 0 else 1,
            base_delay=self.base_delay if self.base_delay > 0 else _DEFAULT_BASE_DELAY,
            max_delay=self.max_delay if self.max_delay > 0 else _DEFAULT_MAX_DELAY,
            jitter=max(self.jitter, 0.0),
            retryable=self.retryable or is_transient_error,
        )


def default_retry_options() -> RetryOptions:
    """Return the default options: one attempt, 200ms base, 2s cap, 100ms jitter."""
    return RetryOptions()


def _apply_jitter(base: float, jitter: float) -> float:
    if jitter <= 0:
        return base
    extra_ns = secrets.randbelow(int(jitter * 1e9) + 1)
    return base + extra_ns / 1e9


def _compute_backoff(attempt: int, opts: RetryOptions) -> float:
    delay = opts.base_delay
    for _ in range(1, attempt):
        delay *= 2
        if delay > opts.max_delay:
            delay = opts.max_delay
            break
    return _apply_jitter(delay, opts.jitter)


def _notify(opts: RetryOptions, event: RetryEvent) -> None:
    if opts.on_retry is not None:
        opts.on_retry(event)


async def retry(opts: RetryOptions | None, fn: AsyncCall) -> Any:
    """Await ``fn()`` until it succeeds, retrying retryable errors with backoff.

    Returns what ``fn`` returns; raises the last error once attempts run out
    or an error is not retryable.
    """
    if fn is None:
        raise ValueError("resilience: fn is nil")
    opts = (opts or RetryOptions()).normalized()

    for attempt in range(1, opts.max_attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            err = exc

        if attempt == opts.max_attempts:
            raise err
        if not opts.retryable(err):
            _notify(opts, RetryEvent(attempt, opts.max_attempts, "stopped", err=err))
            raise err

        delay = _compute_backoff(attempt, opts)
        _notify(opts, RetryEvent(attempt, opts.max_attempts, "retry_scheduled", delay, err))
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError as cancelled:
            _notify(opts, RetryEvent(attempt, opts.max_attempts, "canceled", err=cancelled))
            raise

    raise RuntimeError("resilience: retry completed with unknown error")


async def with_timeout_observed(
    timeout: float,
    hook: Optional[TimeoutHook],
    fn: AsyncCall,
) -> Any:
    """Await ``fn()`` under a time limit in seconds, reporting the outcome to ``hook``.

    A timeout of zero or less means no limit.
    """
    if fn is None:
        raise ValueError("resilience: fn is nil")
    if timeout <= 0:
        result = await fn()
        if hook is not None:
            hook(TimeoutEvent(timeout, "success"))
        return result

    try:
        result = await asyncio.wait_for(fn(), timeout)
    except (TimeoutError, asyncio.TimeoutError) as err:
        if hook is not None:
            hook(TimeoutEvent(timeout, "timeout", err))
        raise
    except asyncio.CancelledError as err:
        if hook is not None:
            hook(TimeoutEvent(timeout, "canceled", err))
        raise
    if hook is not None:
        hook(TimeoutEvent(timeout, "success"))
    return result


async def with_timeout(timeout: float, fn: AsyncCall) -> Any:
    """Await ``fn()`` under a time limit in seconds."""
    return await with_timeout_observed(timeout, None, fn)