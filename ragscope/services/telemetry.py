from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class StageSample:
    ts: float
    stage: str
    latency_ms: float


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_stage_samples: Deque[StageSample] = deque(maxlen=20000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture collaborator latency and outcomes (vector store, model, federated nodes).
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def record_stage_timing(stage: str, latency_ms: float) -> None:
    # Track per-stage orchestration latency.
    _stage_samples.append(StageSample(ts=time.time(), stage=stage, latency_ms=latency_ms))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def get_counter(name: str) -> int:
    return _counters.get(name, 0)


def record_cache_lookup(cache_name: str, hit: bool) -> None:
    increment_counter(f"cache_{'hit' if hit else 'miss'}_total.{cache_name}")


def _percentile(values: list[float], pct: float) -> float:
    idx = max(0, math.ceil(pct * len(values)) - 1)
    return values[idx]


def stage_latency(window_s: int) -> dict[str, dict[str, float]]:
    # Aggregate p50/p95/max per orchestration stage.
    cutoff = time.time() - window_s
    grouped: dict[str, list[float]] = defaultdict(list)
    for sample in _stage_samples:
        if sample.ts >= cutoff:
            grouped[sample.stage].append(sample.latency_ms)
    result: dict[str, dict[str, float]] = {}
    for stage, latencies in grouped.items():
        latencies.sort()
        result[stage] = {
            "p50": _percentile(latencies, 0.5),
            "p95": _percentile(latencies, 0.95),
            "max": latencies[-1],
        }
    return result


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate external call latency and error rate per integration.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample)
    result: dict[str, dict[str, float | None]] = {}
    for integration, samples in by_integration.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        failures = sum(1 for sample in samples if not sample.success)
        result[integration] = {
            "p95": _percentile(latencies, 0.95),
            "error_rate": failures / len(samples),
        }
    return result


def snapshot() -> dict[str, dict]:
    return {"counters": dict(_counters), "gauges": dict(_gauges)}


def reset() -> None:
    # Allow tests to start from a clean telemetry state.
    _external_samples.clear()
    _stage_samples.clear()
    _counters.clear()
    _gauges.clear()
