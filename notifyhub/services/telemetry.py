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
class DeliverySample:
    ts: float
    channel: str
    path: str
    latency_ms: float
    status: str


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_delivery_samples: Deque[DeliverySample] = deque(maxlen=20000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture provider call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def record_delivery(*, channel: str, path: str, latency_ms: float, status: str) -> None:
    # Track per-channel delivery latency for the sync and queued paths.
    _delivery_samples.append(
        DeliverySample(ts=time.time(), channel=channel, path=path, latency_ms=latency_ms, status=status)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def _p95(latencies: list[float]) -> float:
    latencies.sort()
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate provider latency for integrations in the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[float]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample.latency_ms)
    return {
        integration: {"p95": _p95(latencies), "max": max(latencies)}
        for integration, latencies in by_integration.items()
    }


def delivery_latency_by_channel(window_s: int, *, path: str | None = None) -> dict[str, dict[str, float | None]]:
    cutoff = time.time() - window_s
    by_channel: dict[str, list[float]] = defaultdict(list)
    for sample in _delivery_samples:
        if sample.ts < cutoff or (path is not None and sample.path != path):
            continue
        by_channel[sample.channel].append(sample.latency_ms)
    return {
        channel: {"p95": _p95(latencies), "max": max(latencies)}
        for channel, latencies in by_channel.items()
    }


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Allow tests to start from empty counters.
    _external_samples.clear()
    _delivery_samples.clear()
    _counters.clear()
    _gauges.clear()
