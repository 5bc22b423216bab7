from __future__ import annotations

import pytest

from ragscope.core.errors import IntegrationUnavailableError
from ragscope.services.resilience import CircuitBreaker, CircuitBreakerConfig, RetryPolicy, retry_async


class _ClientError(Exception):
    status_code = 404


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
    )
    assert result == "ok"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_client_errors() -> None:
    calls = {"count": 0}

    async def rejected() -> str:
        calls["count"] += 1
        raise _ClientError("bad request")

    with pytest.raises(_ClientError):
        await retry_async(rejected, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_circuit_breaker_transitions() -> None:
    now = {"t": 0.0}
    transitions: list[str] = []

    def time_source() -> float:
        return now["t"]

    async def on_transition(_name: str, target: str) -> None:
        transitions.append(target)

    breaker = CircuitBreaker(
        "test.node",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=10, half_open_trials=1),
        time_source=time_source,
        on_transition=on_transition,
    )
    await breaker.before_call()
    await breaker.record_failure()
    await breaker.record_failure()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    now["t"] = 11.0
    await breaker.before_call()
    # Only one trial call is allowed while half open.
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
    await breaker.record_success()
    await breaker.before_call()

    assert transitions == ["open", "half_open", "closed"]
    assert await breaker.current_state() == "closed"


@pytest.mark.asyncio
async def test_half_open_failure_reopens() -> None:
    now = {"t": 0.0}
    breaker = CircuitBreaker(
        "test.reopen",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=5, half_open_trials=1),
        time_source=lambda: now["t"],
    )
    await breaker.record_failure()
    now["t"] = 6.0
    await breaker.before_call()
    await breaker.record_failure()

    assert await breaker.current_state() == "open"


@pytest.mark.asyncio
async def test_call_skips_failures_that_do_not_trip() -> None:
    breaker = CircuitBreaker(
        "test.call",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=60, half_open_trials=1),
    )

    async def rejected() -> None:
        raise _ClientError("bad request")

    with pytest.raises(_ClientError):
        await breaker.call(rejected, trips_on=lambda exc: getattr(exc, "status_code", 500) >= 500)
    assert await breaker.current_state() == "closed"

    with pytest.raises(_ClientError):
        await breaker.call(rejected)
    assert await breaker.current_state() == "open"


class StubRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.values[key] = value


@pytest.mark.asyncio
async def test_breaker_state_is_shared_through_redis() -> None:
    redis = StubRedis()
    config = CircuitBreakerConfig(failure_threshold=1, open_seconds=60, half_open_trials=1)
    first = CircuitBreaker("shared.node", redis=redis, config=config, key_prefix="test:cb")
    second = CircuitBreaker("shared.node", redis=redis, config=config, key_prefix="test:cb")

    await first.record_failure()

    assert "test:cb:shared.node" in redis.values
    assert await second.current_state() == "open"
    with pytest.raises(IntegrationUnavailableError):
        await second.before_call()
