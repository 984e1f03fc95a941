from __future__ import annotations

import collections
from dataclasses import dataclass, field
from typing import Iterable

CATEGORIES: tuple[str, ...] = ("api", "stream", "upload", "error")

API_DURATION = "api_duration"
STREAM_TTFB = "stream_ttfb"
UPLOAD_DURATION = "upload_duration"
UPLOAD_THROUGHPUT = "upload_throughput_mbps"
ERRORS = "errors"


@dataclass
class MetricSeries:
    """Append-only observations for one named metric."""

    name: str
    category: str
    values: list[float] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.category not in CATEGORIES:
            raise ValueError(f"unknown metric category {self.category!r}")

    def append(self, value: float) -> None:
        self.values.append(float(value))


@dataclass
class CheckTally:
    passes: int = 0
    fails: int = 0

    @property
    def total(self) -> int:
        return self.passes + self.fails

    @property
    def pass_rate(self) -> float:
        return self.passes / self.total if self.total else 0.0


class MetricsBuffer:
    """Metrics owned by a single virtual worker.

    Buffers are never shared between threads; the runner merges them once the
    workers have been joined.
    """

    def __init__(self) -> None:
        self.series: dict[str, MetricSeries] = {}
        self.checks: dict[str, CheckTally] = collections.defaultdict(CheckTally)
        self.iterations: collections.Counter[str] = collections.Counter()

    def record_value(self, name: str, category: str, value: float) -> None:
        series = self.series.get(name)
        if series is None:
            series = self.series[name] = MetricSeries(name=name, category=category)
        elif series.category != category:
            raise ValueError(f"metric {name!r} already recorded under category {series.category!r}")
        series.append(value)

    def record_duration(self, category: str, duration_ms: float) -> None:
        name = {"api": API_DURATION, "stream": STREAM_TTFB, "upload": UPLOAD_DURATION}.get(category)
        if name is None:
            raise ValueError(f"no duration metric for category {category!r}")
        self.record_value(name, category, duration_ms)

    def record_check(self, name: str, ok: bool) -> bool:
        tally = self.checks[name]
        if ok:
            tally.passes += 1
        else:
            tally.fails += 1
        self.record_value(ERRORS, "error", 0.0 if ok else 1.0)
        return ok

    def record_iteration(self, phase: str) -> None:
        self.iterations[phase] += 1

    def merge(self, other: "MetricsBuffer") -> None:
        for name, series in other.series.items():
            mine = self.series.get(name)
            if mine is None:
                mine = self.series[name] = MetricSeries(name=name, category=series.category)
            elif mine.category != series.category:
                raise ValueError(f"metric {name!r} recorded under two categories")
            mine.values.extend(series.values)
        for name, tally in other.checks.items():
            totals = self.checks[name]
            totals.passes += tally.passes
            totals.fails += tally.fails
        self.iterations.update(other.iterations)

    def error_rate(self) -> float:
        series = self.series.get(ERRORS)
        if series is None or not series.values:
            return 0.0
        return sum(series.values) / len(series.values)


def merge_buffers(buffers: Iterable[MetricsBuffer]) -> MetricsBuffer:
    merged = MetricsBuffer()
    for buffer in buffers:
        merged.merge(buffer)
    return merged
