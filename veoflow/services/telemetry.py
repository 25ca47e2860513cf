from __future__ import annotations

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


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def get_counters() -> dict[str, int]:
    return dict(_counters)


def external_call_summary(window_s: int) -> dict[str, dict[str, float]]:
    # Aggregate call counts and failure rates per integration in the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    summary: dict[str, dict[str, float]] = {}
    for integration, samples in grouped.items():
        failures = sum(1 for sample in samples if not sample.success)
        latencies = sorted(sample.latency_ms for sample in samples)
        summary[integration] = {
            "calls": float(len(samples)),
            "failure_rate": failures / len(samples),
            "max_latency_ms": latencies[-1],
        }
    return summary


def reset_telemetry() -> None:
    # Tests reset in-process telemetry between cases.
    _external_samples.clear()
    _counters.clear()
