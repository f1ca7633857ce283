from __future__ import annotations

import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from typing import Deque

# Samples kept per integration type; older calls fall off the ring.
SAMPLES_PER_SOURCE = 2000


@dataclass(frozen=True)
class SourceCall:
    at: float
    latency_ms: float
    status: int | None

    @property
    def failed(self) -> bool:
        # None marks a transport failure that never produced a response.
        return self.status is None or self.status >= 400


_source_calls: dict[str, Deque[SourceCall]] = defaultdict(lambda: deque(maxlen=SAMPLES_PER_SOURCE))
_counters: Counter[str] = Counter()


def record_source_call(integration: str, *, latency_ms: float, status: int | None) -> None:
    _source_calls[integration].append(SourceCall(at=time.time(), latency_ms=latency_ms, status=status))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def _percentile(values: list[float], fraction: float) -> float:
    ordered = sorted(values)
    index = min(len(ordered) - 1, int(round(fraction * (len(ordered) - 1))))
    return ordered[index]


def source_call_stats(integration: str, window_s: int = 300) -> dict[str, float | int | None]:
    cutoff = time.time() - window_s
    calls = [c for c in _source_calls.get(integration, ()) if c.at >= cutoff]
    if not calls:
        return {"count": 0, "error_rate": None, "p95_latency_ms": None, "last_status": None}
    latencies = [c.latency_ms for c in calls]
    return {
        "count": len(calls),
        "error_rate": sum(1 for c in calls if c.failed) / len(calls),
        "p95_latency_ms": _percentile(latencies, 0.95),
        "last_status": calls[-1].status,
    }


def reset_telemetry() -> None:
    # Process-global state; tests clear it between cases.
    _source_calls.clear()
    _counters.clear()
