from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

import pandas as pd

from ..metrics import MetricSeries
from .sampler import Sample

SAMPLE_COLUMNS = ["timestamp_ms", "container", "cpu_percent", "memory_mb"]


@dataclass(frozen=True)
class AggregateSummary:
    avg: float
    max: float
    p95: float
    count: int

    def to_dict(self) -> dict[str, float]:
        return {"avg": self.avg, "max": self.max, "p95": self.p95, "count": self.count}


@dataclass(frozen=True)
class ContainerSummary:
    cpu: AggregateSummary
    memory_mb: AggregateSummary

    @property
    def sample_count(self) -> int:
        return self.cpu.count

    def to_dict(self) -> dict[str, object]:
        return {"cpu": self.cpu.to_dict(), "memoryMB": self.memory_mb.to_dict(), "samples": self.sample_count}


@dataclass(frozen=True)
class CapacityProjection:
    """Linear extrapolation of sustainable concurrency; ``None`` means unbounded."""

    container: str
    observed_concurrency: int
    cpu_max: float
    memory_max_mb: float
    memory_ceiling_mb: float
    cpu_bound_estimate: int | None
    memory_bound_estimate: int | None

    def to_dict(self) -> dict[str, object]:
        return {
            "container": self.container,
            "observedConcurrency": self.observed_concurrency,
            "cpuMax": self.cpu_max,
            "memoryMaxMB": self.memory_max_mb,
            "memoryCeilingMB": self.memory_ceiling_mb,
            "cpuBoundEstimate": _bound(self.cpu_bound_estimate),
            "memoryBoundEstimate": _bound(self.memory_bound_estimate),
        }


def _bound(value: int | None) -> int | str:
    return "unbounded" if value is None else value


def percentile(values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile over a sorted copy of ``values``; 0 for no values."""
    if not values:
        return 0.0
    ordered = sorted(values)
    # rounding keeps 0.95 * 20 from landing a hair above 19
    index = math.ceil(round(p / 100.0 * len(ordered), 9)) - 1
    return float(ordered[min(max(index, 0), len(ordered) - 1)])


def summarize(values: Sequence[float]) -> AggregateSummary:
    if not values:
        return AggregateSummary(avg=0.0, max=0.0, p95=0.0, count=0)
    return AggregateSummary(
        avg=math.fsum(values) / len(values),
        max=float(max(values)),
        p95=percentile(values, 95),
        count=len(values),
    )


def samples_to_frame(samples: Iterable[Sample]) -> pd.DataFrame:
    rows = [sample.to_dict() for sample in samples]
    if not rows:
        return pd.DataFrame(columns=SAMPLE_COLUMNS)
    return pd.DataFrame(rows, columns=SAMPLE_COLUMNS)


def summarize_samples(samples: Iterable[Sample]) -> dict[str, ContainerSummary]:
    frame = samples_to_frame(samples)
    summaries: dict[str, ContainerSummary] = {}
    for container, group in frame.groupby("container", sort=True):
        summaries[str(container)] = ContainerSummary(
            cpu=summarize(group["cpu_percent"].astype(float).tolist()),
            memory_mb=summarize(group["memory_mb"].astype(float).tolist()),
        )
    return summaries


def summarize_series(series: Mapping[str, MetricSeries]) -> dict[str, AggregateSummary]:
    return {name: summarize(item.values) for name, item in sorted(series.items())}


def project_capacity(
    summary: ContainerSummary,
    observed_concurrency: int,
    memory_ceiling_mb: float,
    container: str = "",
) -> CapacityProjection:
    """Extrapolate how many workers would saturate CPU (100 %) or the memory ceiling.

    Assumes resource use grows linearly with concurrency, which is only an
    approximation.
    """
    cpu_max = summary.cpu.max
    memory_max = summary.memory_mb.max
    cpu_bound = math.floor(observed_concurrency * 100.0 / cpu_max) if cpu_max > 0 else None
    memory_bound = math.floor(observed_concurrency * memory_ceiling_mb / memory_max) if memory_max > 0 else None
    return CapacityProjection(
        container=container,
        observed_concurrency=observed_concurrency,
        cpu_max=cpu_max,
        memory_max_mb=memory_max,
        memory_ceiling_mb=memory_ceiling_mb,
        cpu_bound_estimate=cpu_bound,
        memory_bound_estimate=memory_bound,
    )


__all__ = [
    "AggregateSummary",
    "CapacityProjection",
    "ContainerSummary",
    "percentile",
    "project_capacity",
    "samples_to_frame",
    "summarize",
    "summarize_samples",
    "summarize_series",
]
