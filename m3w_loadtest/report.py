from __future__ import annotations

import json
import logging
import operator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from .charts import render_resource_chart
from .config import LoadProfile
from .metrics import API_DURATION, ERRORS, STREAM_TTFB, UPLOAD_DURATION, UPLOAD_THROUGHPUT, CheckTally
from .runner import RunStatistics
from .telemetry.capacity import (
    AggregateSummary,
    CapacityProjection,
    ContainerSummary,
    project_capacity,
    samples_to_frame,
    summarize_samples,
    summarize_series,
)
from .telemetry.sampler import Sample

LOGGER = logging.getLogger("m3w_loadtest.report")

_OPERATORS = {"<": operator.lt, "<=": operator.le, ">": operator.gt, ">=": operator.ge}


@dataclass(frozen=True)
class Threshold:
    metric: str
    stat: str  # "avg", "max", "p95" or "rate"
    operator: str
    limit: float

    def describe(self) -> str:
        return f"{self.metric} {self.stat}{self.operator}{self.limit:g}"


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: float | None

    @property
    def passed(self) -> bool | None:
        if self.observed is None:
            return None
        return _OPERATORS[self.threshold.operator](self.observed, self.threshold.limit)

    def to_dict(self) -> dict[str, object]:
        return {"threshold": self.threshold.describe(), "observed": self.observed, "passed": self.passed}


CAPACITY_THRESHOLDS: tuple[Threshold, ...] = (
    Threshold(API_DURATION, "p95", "<", 500),
    Threshold(STREAM_TTFB, "p95", "<", 200),
    Threshold(ERRORS, "rate", "<", 0.01),
)

UPLOAD_THRESHOLDS: tuple[Threshold, ...] = (
    Threshold(UPLOAD_DURATION, "p95", "<", 120_000),
    Threshold(ERRORS, "rate", "<", 0.05),
    Threshold(UPLOAD_THROUGHPUT, "avg", ">", 1),
)


def evaluate_thresholds(
    thresholds: Sequence[Threshold],
    metrics: dict[str, AggregateSummary],
) -> list[ThresholdResult]:
    results = []
    for threshold in thresholds:
        summary = metrics.get(threshold.metric)
        if summary is None or summary.count == 0:
            results.append(ThresholdResult(threshold, None))
            continue
        stat = "avg" if threshold.stat == "rate" else threshold.stat
        results.append(ThresholdResult(threshold, getattr(summary, stat)))
    return results


@dataclass
class RunReport:
    workload: str
    profile: LoadProfile
    started_at: float
    finished_at: float
    peak_active: int
    stopped_early: bool
    samples: list[Sample]
    containers: dict[str, ContainerSummary]
    metrics: dict[str, AggregateSummary]
    checks: dict[str, CheckTally]
    iterations: dict[str, int]
    thresholds: list[ThresholdResult]
    capacity: CapacityProjection | None
    sampler: dict[str, int] = field(default_factory=dict)

    @property
    def telemetry_duration_ms(self) -> int:
        return self.samples[-1].timestamp_ms if self.samples else 0

    @property
    def sample_count(self) -> int:
        """Number of sampler ticks that returned data."""
        return len({sample.timestamp_ms for sample in self.samples})

    @property
    def thresholds_passed(self) -> bool:
        return all(result.passed is not False for result in self.thresholds)

    def to_dict(self) -> dict[str, object]:
        return {
            "workload": self.workload,
            "profile": {
                "name": self.profile.name,
                "stages": [{"durationMs": s.duration_ms, "target": s.target} for s in self.profile.stages],
                "behavior": self.profile.behavior,
            },
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "peakActiveWorkers": self.peak_active,
            "stoppedEarly": self.stopped_early,
            "summary": {
                "duration": self.telemetry_duration_ms,
                "sampleCount": self.sample_count,
                "sampleRows": len(self.samples),
                "containers": {name: summary.to_dict() for name, summary in self.containers.items()},
            },
            "metrics": {name: summary.to_dict() for name, summary in self.metrics.items()},
            "checks": {
                name: {"passes": tally.passes, "fails": tally.fails} for name, tally in sorted(self.checks.items())
            },
            "iterations": dict(self.iterations),
            "thresholds": [result.to_dict() for result in self.thresholds],
            "capacity": self.capacity.to_dict() if self.capacity else None,
            "sampler": dict(self.sampler),
            "samples": [sample.to_dict() for sample in self.samples],
        }


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def build_report(
    workload: str,
    profile: LoadProfile,
    stats: RunStatistics,
    samples: list[Sample],
    service_container: str,
    memory_ceiling_mb: float,
    thresholds: Sequence[Threshold] = (),
    sampler_counters: dict[str, int] | None = None,
) -> RunReport:
    containers = summarize_samples(samples)
    metrics = summarize_series(stats.metrics.series)
    capacity = None
    service = containers.get(service_container)
    if service is not None:
        capacity = project_capacity(
            service,
            observed_concurrency=stats.peak_active,
            memory_ceiling_mb=memory_ceiling_mb,
            container=service_container,
        )
    return RunReport(
        workload=workload,
        profile=profile,
        started_at=stats.started_at,
        finished_at=stats.finished_at,
        peak_active=stats.peak_active,
        stopped_early=stats.stopped_early,
        samples=list(samples),
        containers=containers,
        metrics=metrics,
        checks=dict(stats.metrics.checks),
        iterations=dict(stats.metrics.iterations),
        thresholds=evaluate_thresholds(thresholds, metrics),
        capacity=capacity,
        sampler=dict(sampler_counters or {}),
    )


def write_report(report: RunReport, results_dir: Path, render_chart: bool = True) -> dict[str, Path]:
    results_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.fromtimestamp(report.started_at, tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    base = f"{report.workload}-{stamp}"

    paths = {"json": results_dir / f"{base}.json", "samples": results_dir / f"{base}-samples.csv"}
    with open(paths["json"], "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2)
    samples_to_frame(report.samples).to_csv(paths["samples"], index=False)

    if render_chart and report.samples:
        paths["chart"] = render_resource_chart(report.samples, results_dir / f"{base}-resources.png", report.workload)
    LOGGER.info("Results saved to %s", paths["json"])
    return paths


def format_summary(report: RunReport) -> str:
    lines = [
        "Resource Usage Summary",
        "======================",
        f"Duration: {report.telemetry_duration_ms / 1000:.1f}s | Samples: {report.sample_count}",
    ]
    if not report.containers:
        lines.append("  (no samples collected)")
    for name, summary in report.containers.items():
        lines.append(f"{name}:")
        lines.append(
            f"  CPU:    avg={summary.cpu.avg:.1f}%  max={summary.cpu.max:.1f}%  p95={summary.cpu.p95:.1f}%"
        )
        lines.append(
            f"  Memory: avg={summary.memory_mb.avg:.0f}MB  max={summary.memory_mb.max:.0f}MB"
            f"  p95={summary.memory_mb.p95:.0f}MB"
        )

    if report.metrics:
        lines.append("")
        lines.append("Workload metrics:")
        for name, summary in report.metrics.items():
            lines.append(f"  {name}: avg={summary.avg:.2f} max={summary.max:.2f} p95={summary.p95:.2f} n={summary.count}")
    if report.checks:
        lines.append("")
        lines.append("Checks:")
        for name, tally in sorted(report.checks.items()):
            lines.append(f"  {name}: {tally.passes}/{tally.total} passed ({tally.pass_rate:.1%})")
    if report.thresholds:
        lines.append("")
        lines.append("Thresholds:")
        for result in report.thresholds:
            verdict = {True: "ok", False: "FAILED", None: "no data"}[result.passed]
            observed = "-" if result.observed is None else f"{result.observed:.3f}"
            lines.append(f"  {result.threshold.describe()}: {observed} [{verdict}]")

    capacity = report.capacity
    lines.append("")
    lines.append("Capacity estimate:")
    if capacity is None:
        lines.append("  (no samples for the service container)")
    else:
        lines.append(
            f"  At {capacity.observed_concurrency} workers: CPU max {capacity.cpu_max:.1f}%,"
            f" Memory max {capacity.memory_max_mb:.0f}MB"
        )
        lines.append(f"  Theoretical max workers (CPU bound): ~{_bound_text(capacity.cpu_bound_estimate)}")
        lines.append(f"  Theoretical max workers (Memory bound): ~{_bound_text(capacity.memory_bound_estimate)}")
    return "\n".join(lines)


def _bound_text(value: int | None) -> str:
    return "unbounded" if value is None else str(value)


__all__ = [
    "CAPACITY_THRESHOLDS",
    "RunReport",
    "Threshold",
    "ThresholdResult",
    "UPLOAD_THRESHOLDS",
    "build_report",
    "evaluate_thresholds",
    "format_summary",
    "write_report",
]
