import asyncio

import pytest

from servicekit.resilience.circuitbreaker import (
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitOpenError,
    CircuitState,
    TooManyRequestsError,
    default_circuit_breaker_options,
)


async def _ok():
    return "ok"


async def _boom():
    raise RuntimeError("boom")


def _tripping_breaker(timeout=0.05, **extra):
    opts = default_circuit_breaker_options("test-cb")
    opts.timeout = timeout
    opts.ready_to_trip = lambda counts: counts.consecutive_failures >= 2
    for key, value in extra.items():
        setattr(opts, key, value)
    return CircuitBreaker(opts)


@pytest.mark.asyncio
async def test_circuit_breaker_trips_and_fails_fast():
    cb = _tripping_breaker()

    assert await cb.call(_ok) == "ok"

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await cb.call(_boom)

    executed = False

    async def should_not_run():
        nonlocal executed
        executed = True

    with pytest.raises(CircuitOpenError):
        await cb.call(should_not_run)
    assert executed is False
    assert cb.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_half_open_success_closes_breaker():
    transitions = []
    cb = _tripping_breaker(
        on_state_change=lambda name, old, new: transitions.append((name, old, new))
    )
    for _ in range(2):
        with pytest.raises(RuntimeError):
            await cb.call(_boom)

    await asyncio.sleep(0.08)
    assert cb.state is CircuitState.HALF_OPEN
    assert await cb.call(_ok) == "ok"
    assert cb.state is CircuitState.CLOSED
    assert transitions == [
        ("test-cb", CircuitState.CLOSED, CircuitState.OPEN),
        ("test-cb", CircuitState.OPEN, CircuitState.HALF_OPEN),
        ("test-cb", CircuitState.HALF_OPEN, CircuitState.CLOSED),
    ]


@pytest.mark.asyncio
async def test_half_open_failure_reopens():
    cb = _tripping_breaker()
    for _ in range(2):
        with pytest.raises(RuntimeError):
            await cb.call(_boom)
    await asyncio.sleep(0.08)
    with pytest.raises(RuntimeError):
        await cb.call(_boom)
    assert cb.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_half_open_limits_trial_requests():
    cb = _tripping_breaker()
    for _ in range(2):
        with pytest.raises(RuntimeError):
            await cb.call(_boom)
    await asyncio.sleep(0.08)

    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "slow"

    first = asyncio.ensure_future(cb.call(slow))
    await asyncio.sleep(0)
    with pytest.raises(TooManyRequestsError):
        await cb.call(_ok)
    release.set()
    assert await first == "slow"
    assert cb.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_timeout_error_is_not_counted_as_failure():
    cb = _tripping_breaker()

    async def times_out():
        raise TimeoutError()

    for _ in range(3):
        assert await cb.call(times_out) is None
    assert cb.state is CircuitState.CLOSED
    assert cb.counts.total_failures == 0
    assert cb.counts.total_successes == 3


@pytest.mark.asyncio
async def test_default_options_trip_after_more_than_five_failures():
    cb = CircuitBreaker(default_circuit_breaker_options("svc"))
    for _ in range(5):
        with pytest.raises(RuntimeError):
            await cb.call(_boom)
    assert cb.state is CircuitState.CLOSED
    with pytest.raises(RuntimeError):
        await cb.call(_boom)
    assert cb.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures():
    cb = _tripping_breaker()
    with pytest.raises(RuntimeError):
        await cb.call(_boom)
    await cb.call(_ok)
    with pytest.raises(RuntimeError):
        await cb.call(_boom)
    assert cb.state is CircuitState.CLOSED
    assert cb.counts.consecutive_failures == 1
    assert cb.counts.requests == 3


def test_empty_name_gets_default():
    cb = CircuitBreaker(CircuitBreakerOptions())
    assert cb.name == "servicekit-circuitbreaker"
    assert cb.state is CircuitState.CLOSED


def test_default_options_values():
    opts = default_circuit_breaker_options("x")
    assert opts.name == "x"
    assert opts.max_requests == 1
    assert opts.interval == 0.0
    assert opts.timeout == 60.0