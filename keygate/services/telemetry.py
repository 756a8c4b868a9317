from __future__ import annotations

import math
import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Iterable, TypeVar


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_SampleT = TypeVar("_SampleT", RequestSample, ExternalCallSample)

# Process-local ring buffers; each worker reports only its own traffic.
_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: Counter[str] = Counter()


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # integration is "key_backend.<module>.<action>" for credential backend calls.
    _external_samples.append(
        ExternalCallSample(ts=time.time(), integration=integration, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def _recent(samples: Iterable[_SampleT], window_s: int) -> list[_SampleT]:
    cutoff = time.time() - window_s
    return [sample for sample in samples if sample.ts >= cutoff]


def _p95(latencies: list[float]) -> float:
    ordered = sorted(latencies)
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def request_summary(window_s: int) -> dict[str, float | int | None]:
    samples = _recent(_request_samples, window_s)
    if not samples:
        return {"count": 0, "availability": None, "p95_ms": None, "client_errors": 0, "server_errors": 0}
    server_errors = sum(1 for sample in samples if sample.status_code >= 500)
    client_errors = sum(1 for sample in samples if 400 <= sample.status_code < 500)
    return {
        "count": len(samples),
        # Only 5xx responses count against availability.
        "availability": (len(samples) - server_errors) / len(samples) * 100.0,
        "p95_ms": _p95([sample.latency_ms for sample in samples]),
        "client_errors": client_errors,
        "server_errors": server_errors,
    }


def external_call_summary(window_s: int) -> dict[str, dict[str, float | int]]:
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _recent(_external_samples, window_s):
        grouped[sample.integration].append(sample)
    return {
        integration: {
            "calls": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95_ms": _p95([sample.latency_ms for sample in samples]),
            "max_ms": max(sample.latency_ms for sample in samples),
        }
        for integration, samples in sorted(grouped.items())
    }


def counters_snapshot(prefix: str | None = None) -> dict[str, int]:
    return {name: value for name, value in sorted(_counters.items()) if prefix is None or name.startswith(prefix)}


def reset_telemetry() -> None:
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
