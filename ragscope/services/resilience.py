from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Literal

from redis.asyncio import Redis

from ragscope.core.config import Settings, get_settings
from ragscope.core.errors import IntegrationUnavailableError
from ragscope.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


BreakerState = Literal["closed", "open", "half_open"]

_STATE_GAUGE: dict[str, float] = {"closed": 0.0, "half_open": 0.5, "open": 1.0}
# Throttling and gateway statuses are worth another attempt; other 4xx are not.
_TRANSIENT_STATUSES = {408, 429}

_redis_clients: dict[int, Redis] = {}


async def get_resilience_redis(settings: Settings | None = None) -> Redis | None:
    """Shared Redis client for breaker state, one per running event loop."""
    settings = settings or get_settings()
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    client = _redis_clients.get(id(loop))
    if client is None:
        try:
            client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        except Exception as exc:  # noqa: BLE001 - breakers fall back to process-local state
            logger.warning("breaker_redis_unavailable url=%s", settings.redis_url, exc_info=exc)
            return None
        _redis_clients[id(loop)] = client
    return client


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, OSError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status in _TRANSIENT_STATUSES)


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def for_federation(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            timeout_ms=settings.federated_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def delay_s(self, attempt: int) -> float:
        # Exponential backoff with +-50% jitter so nodes are not hit in lockstep.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] = is_transient,
    label: str = "external",
) -> Any:
    """Run ``func`` under a per-attempt timeout, retrying transient failures."""
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless another attempt is allowed
            if attempt == attempts or not retryable(exc):
                raise
            increment_counter(f"external_retries_total.{label}")
            logger.info("external_retry label=%s attempt=%s error=%s", label, attempt, exc.__class__.__name__)
            await asyncio.sleep(policy.delay_s(attempt))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass(frozen=True)
class BreakerSnapshot:
    state: BreakerState = "closed"
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {"state": self.state, "failures": self.failures, "opened_at": self.opened_at, "trials": self.trials}
        )

    @classmethod
    def from_json(cls, raw: str) -> "BreakerSnapshot":
        data = json.loads(raw)
        return cls(
            state=data.get("state", "closed"),
            failures=int(data.get("failures", 0)),
            opened_at=data.get("opened_at"),
            trials=int(data.get("trials", 0)),
        )


class CircuitBreaker:
    """Per-node breaker; state is shared through Redis when a client is given.

    Opening happens after ``failure_threshold`` consecutive failures. After
    ``open_seconds`` a limited number of trial calls decide whether to close.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
        key_prefix: str | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings(settings)
        self._time = time_source or time.monotonic
        self._on_transition = on_transition
        self._key = f"{key_prefix or settings.cb_redis_prefix}:{name}"
        self._local = BreakerSnapshot()

    @property
    def name(self) -> str:
        return self._name

    async def _read(self) -> BreakerSnapshot:
        if self._redis is None:
            return self._local
        raw = await self._redis.get(self._key)
        return BreakerSnapshot.from_json(raw) if raw else BreakerSnapshot()

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        if self._redis is None:
            self._local = snapshot
            return
        # Outlive the open window so every instance sees the same decision.
        await self._redis.set(self._key, snapshot.to_json(), ex=max(self._config.open_seconds * 4, 60))

    async def _move(self, current: BreakerSnapshot, target: BreakerState) -> BreakerSnapshot:
        logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, current.state, target)
        increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
        set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
        if self._on_transition is not None:
            await self._on_transition(self._name, target)
        return BreakerSnapshot(state=target, opened_at=self._time() if target == "open" else None)

    async def current_state(self) -> BreakerState:
        return (await self._read()).state

    async def before_call(self) -> None:
        snapshot = await self._read()
        if snapshot.state == "open":
            elapsed = self._time() - (snapshot.opened_at or 0.0)
            if elapsed < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            snapshot = await self._move(snapshot, "half_open")
        if snapshot.state == "half_open":
            if snapshot.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            snapshot = replace(snapshot, trials=snapshot.trials + 1)
        await self._write(snapshot)

    async def record_success(self) -> None:
        snapshot = await self._read()
        if snapshot.state == "closed":
            await self._write(BreakerSnapshot())
            return
        await self._write(await self._move(snapshot, "closed"))

    async def record_failure(self) -> None:
        snapshot = await self._read()
        failures = snapshot.failures + 1
        if snapshot.state == "half_open" or failures >= self._config.failure_threshold:
            if snapshot.state != "open":
                snapshot = await self._move(snapshot, "open")
            await self._write(snapshot)
            return
        await self._write(replace(snapshot, failures=failures))

    async def call(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        trips_on: Callable[[Exception], bool] = lambda _exc: True,
    ) -> Any:
        """Guard ``func``; failures only count against the breaker when ``trips_on`` says so."""
        await self.before_call()
        try:
            result = await func()
        except Exception as exc:
            if trips_on(exc):
                await self.record_failure()
            raise
        await self.record_success()
        return result
