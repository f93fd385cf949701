"""Latency summaries and the client's statistics report."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

_RULE = "=" * 30


@dataclass(frozen=True)
class LatencyStats:
    """Summary of a set of latencies in milliseconds."""

    count: int
    average: float
    minimum: float
    maximum: float
    p50: float
    p90: float
    p99: float


def summarize(latencies: Iterable[float]) -> LatencyStats:
    """Summarize latencies; percentiles index the sorted values at n*q, truncated."""
    ordered = sorted(latencies)
    if not ordered:
        raise ValueError("no latencies to summarize")
    n = len(ordered)
    return LatencyStats(
        count=n,
        average=sum(ordered) / n,
        minimum=ordered[0],
        maximum=ordered[-1],
        p50=ordered[n // 2],
        p90=ordered[int(n * 0.90)],
        p99=ordered[int(n * 0.99)],
    )


def format_report(rank: int, latencies: Iterable[float]) -> str:
    """Render the per-client latency report, ending with a blank line."""
    values = list(latencies)
    header = f"\n=== Client {rank} Latency Statistics (ms) ==="
    if not values:
        lines = [header, "No responses received.", _RULE, ""]
    else:
        stats = summarize(values)
        lines = [
            header,
            f"Requests processed: {stats.count}",
            f"Average: {stats.average:.3f}",
            f"Min:     {stats.minimum:.3f}",
            f"Max:     {stats.maximum:.3f}",
            f"P50 (Median): {stats.p50:.3f}",
            f"P90:     {stats.p90:.3f}",
            f"P99:     {stats.p99:.3f}",
            _RULE,
            "",
        ]
    return "\n".join(lines) + "\n"