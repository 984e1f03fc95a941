from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Sequence

from ..config import ConfigurationError, LoadProfile, Stage
from ..report import RunReport

FILE_SIZES_MB: tuple[int, ...] = (5, 20, 50)
CONCURRENCY_LEVELS: tuple[int, ...] = (5, 10, 20)


@dataclass(frozen=True)
class BenchmarkCase:
    """One upload run: a fixed file size held at a fixed worker count."""

    size_mb: int
    workers: int
    ramp_up_ms: int = 30_000
    steady_ms: int = 120_000
    ramp_down_ms: int = 30_000

    def __post_init__(self) -> None:
        if self.size_mb <= 0:
            raise ConfigurationError(f"benchmark file size must be > 0 MB, got {self.size_mb}")
        if self.workers <= 0:
            raise ConfigurationError(f"benchmark concurrency must be > 0, got {self.workers}")

    @property
    def name(self) -> str:
        return f"{self.size_mb}mb-x{self.workers}"

    def profile(self) -> LoadProfile:
        return LoadProfile(
            name=f"benchmark-{self.name}",
            stages=(
                Stage(self.ramp_up_ms, self.workers),
                Stage(self.steady_ms, self.workers),
                Stage(self.ramp_down_ms, 0),
            ),
        )


@dataclass
class BenchmarkPlan:
    """Every (size, concurrency) case the benchmark will execute, in order."""

    cases: list[BenchmarkCase] = field(default_factory=list)

    def __iter__(self) -> Iterator[BenchmarkCase]:
        return iter(self.cases)

    def __len__(self) -> int:
        return len(self.cases)


def default_benchmark_plan(
    sizes_mb: Sequence[int] = FILE_SIZES_MB,
    concurrency: Sequence[int] = CONCURRENCY_LEVELS,
    duration_scale: float = 1.0,
) -> BenchmarkPlan:
    """Cross every file size with every concurrency level, sizes outermost."""
    if duration_scale <= 0:
        raise ConfigurationError("duration scale factor must be > 0")
    base = BenchmarkCase(size_mb=1, workers=1)
    cases = [
        BenchmarkCase(
            size_mb=size,
            workers=workers,
            ramp_up_ms=int(base.ramp_up_ms * duration_scale),
            steady_ms=int(base.steady_ms * duration_scale),
            ramp_down_ms=int(base.ramp_down_ms * duration_scale),
        )
        for size in sizes_mb
        for workers in concurrency
    ]
    return BenchmarkPlan(cases=cases)


@dataclass(frozen=True)
class BenchmarkResult:
    case: BenchmarkCase
    success: bool
    samples: int
    cpu_avg: float = 0.0
    cpu_max: float = 0.0
    memory_avg_mb: float = 0.0
    memory_max_mb: float = 0.0
    memory_min_mb: float = 0.0

    @classmethod
    def from_report(cls, case: BenchmarkCase, report: RunReport, service_container: str) -> "BenchmarkResult":
        success = report.thresholds_passed and not report.stopped_early
        summary = report.containers.get(service_container)
        if summary is None:
            return cls(case=case, success=success, samples=len(report.samples))
        memory_values = [s.memory_mb for s in report.samples if s.container == service_container]
        return cls(
            case=case,
            success=success,
            samples=len(report.samples),
            cpu_avg=summary.cpu.avg,
            cpu_max=summary.cpu.max,
            memory_avg_mb=summary.memory_mb.avg,
            memory_max_mb=summary.memory_mb.max,
            memory_min_mb=min(memory_values),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "sizeMB": self.case.size_mb,
            "workers": self.case.workers,
            "success": self.success,
            "samples": self.samples,
            "service": {
                "cpuAvg": round(self.cpu_avg, 1),
                "cpuMax": round(self.cpu_max, 1),
                "memAvg": round(self.memory_avg_mb),
                "memMax": round(self.memory_max_mb),
                "memMin": round(self.memory_min_mb),
            },
        }


__all__ = [
    "BenchmarkCase",
    "BenchmarkPlan",
    "BenchmarkResult",
    "CONCURRENCY_LEVELS",
    "FILE_SIZES_MB",
    "default_benchmark_plan",
]
