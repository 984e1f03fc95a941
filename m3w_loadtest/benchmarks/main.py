from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

import pandas as pd

from ..charts import render_benchmark_chart
from ..client import MediaLibraryClient, ServiceUnavailableError, verify_upload_access, wait_for_health
from ..config import DEFAULT_ENV_FILE, DEFAULT_RESULTS_DIR, ConfigurationError, load_environment
from ..main import HEALTH_TIMEOUT_S, resolve_service, resolve_telemetry, setup_logging
from ..payload import MEBIBYTE, ContentSynthesizer, generate_base_payload
from ..report import UPLOAD_THRESHOLDS
from ..session import execute_run, open_sampler
from ..workload import UploadWorkload
from .config import CONCURRENCY_LEVELS, FILE_SIZES_MB, BenchmarkPlan, BenchmarkResult, default_benchmark_plan

LOGGER = logging.getLogger("m3w_loadtest.benchmark")

QUICK_SCALE = 0.1


def _int_list(text: str) -> list[int]:
    try:
        values = [int(item) for item in text.split(",") if item.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected comma-separated integers, got {text!r}") from exc
    if not values:
        raise argparse.ArgumentTypeError("expected at least one value")
    return values


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="m3w upload benchmark matrix")
    parser.add_argument(
        "--sizes",
        type=_int_list,
        default=list(FILE_SIZES_MB),
        help="Comma-separated upload file sizes in MB",
    )
    parser.add_argument(
        "--workers",
        type=_int_list,
        default=list(CONCURRENCY_LEVELS),
        help="Comma-separated concurrency levels",
    )
    parser.add_argument("--quick", action="store_true", help=f"Scale case durations by {QUICK_SCALE}")
    parser.add_argument("--base-url", help="Service base URL (env BASE_URL)")
    parser.add_argument("--env-file", default=str(DEFAULT_ENV_FILE))
    parser.add_argument("--runtime", help="Container runtime CLI, docker or podman")
    parser.add_argument("--docker-api", action="store_true", help="Read stats through the Docker Engine API")
    parser.add_argument("--namespace", help="Container name prefix of the test stack")
    parser.add_argument("--service-container", help="Short name of the service container")
    parser.add_argument("--memory-ceiling-mb", type=float)
    parser.add_argument("--interval-ms", type=int, help="Milliseconds between resource samples")
    parser.add_argument("--results-dir", help="Directory for benchmark artefacts")
    parser.add_argument("--seed", type=int, help="Seed for per-worker random generators")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned benchmark cases without executing them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("BENCHMARK_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


@dataclass(frozen=True)
class SizeScaling:
    size_mb: int
    memory_mb_per_worker: float
    cpu_percent_per_worker: float


@dataclass(frozen=True)
class ConcurrencyScaling:
    workers: int
    memory_mb_per_file_mb: float


@dataclass
class ScalingAnalysis:
    by_size: list[SizeScaling] = field(default_factory=list)
    by_concurrency: list[ConcurrencyScaling] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "bySize": {
                str(item.size_mb): {
                    "memoryMBPerWorker": round(item.memory_mb_per_worker, 1),
                    "cpuPercentPerWorker": round(item.cpu_percent_per_worker, 2),
                }
                for item in self.by_size
            },
            "byWorkers": {
                str(item.workers): {"memoryMBPerFileMB": round(item.memory_mb_per_file_mb, 1)}
                for item in self.by_concurrency
            },
        }


def scaling_analysis(results: Sequence[BenchmarkResult]) -> ScalingAnalysis:
    """Slope between the smallest and largest case of each group.

    Groups with fewer than two cases, or whose endpoints share the same
    x value, are left out.
    """
    analysis = ScalingAnalysis()

    for size in sorted({r.case.size_mb for r in results}):
        group = sorted((r for r in results if r.case.size_mb == size), key=lambda r: r.case.workers)
        first, last = group[0], group[-1]
        span = last.case.workers - first.case.workers
        if span == 0:
            continue
        analysis.by_size.append(
            SizeScaling(
                size_mb=size,
                memory_mb_per_worker=(last.memory_max_mb - first.memory_max_mb) / span,
                cpu_percent_per_worker=(last.cpu_max - first.cpu_max) / span,
            )
        )

    for workers in sorted({r.case.workers for r in results}):
        group = sorted((r for r in results if r.case.workers == workers), key=lambda r: r.case.size_mb)
        first, last = group[0], group[-1]
        span = last.case.size_mb - first.case.size_mb
        if span == 0:
            continue
        analysis.by_concurrency.append(
            ConcurrencyScaling(
                workers=workers,
                memory_mb_per_file_mb=(last.memory_max_mb - first.memory_max_mb) / span,
            )
        )
    return analysis


def results_frame(results: Sequence[BenchmarkResult]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "size_mb": r.case.size_mb,
                "workers": r.case.workers,
                "cpu_avg": round(r.cpu_avg, 1),
                "cpu_max": round(r.cpu_max, 1),
                "memory_avg_mb": round(r.memory_avg_mb),
                "memory_max_mb": round(r.memory_max_mb),
                "memory_min_mb": round(r.memory_min_mb),
                "samples": r.samples,
                "success": r.success,
            }
            for r in results
        ],
        columns=[
            "size_mb",
            "workers",
            "cpu_avg",
            "cpu_max",
            "memory_avg_mb",
            "memory_max_mb",
            "memory_min_mb",
            "samples",
            "success",
        ],
    )


def format_results(results: Sequence[BenchmarkResult], analysis: ScalingAnalysis) -> str:
    lines = ["=" * 80, "BENCHMARK RESULTS", "=" * 80, ""]
    lines.append(f"{'File Size':>10} | {'Workers':>7} | {'CPU (avg/max)':>17} | {'Mem (avg/max)':>17} |")
    lines.append("-" * 64)
    for r in results:
        status = "ok" if r.success else "FAILED"
        lines.append(
            f"{r.case.size_mb:>8}MB | {r.case.workers:>7} | "
            f"{r.cpu_avg:>6.1f}% / {r.cpu_max:>6.1f}% | "
            f"{r.memory_avg_mb:>5.0f}MB / {r.memory_max_mb:>5.0f}MB | {status}"
        )

    lines.append("")
    lines.append("SCALING ANALYSIS:")
    for item in analysis.by_size:
        lines.append(f"  {item.size_mb}MB files:")
        lines.append(f"    Memory slope: {item.memory_mb_per_worker:.1f}MB per worker")
        lines.append(f"    CPU slope: {item.cpu_percent_per_worker:.2f}% per worker")
    for item in analysis.by_concurrency:
        lines.append(f"  {item.workers} workers:")
        lines.append(f"    Memory slope: {item.memory_mb_per_file_mb:.1f}MB per MB file size")
    return "\n".join(lines)


def write_results(
    results: Sequence[BenchmarkResult],
    analysis: ScalingAnalysis,
    results_dir: Path,
    render_chart: bool = True,
) -> dict[str, Path]:
    results_dir.mkdir(parents=True, exist_ok=True)
    now = datetime.now(tz=timezone.utc)
    base = f"benchmark-{now.strftime('%Y%m%dT%H%M%SZ')}"
    paths = {"json": results_dir / f"{base}.json", "csv": results_dir / f"{base}.csv"}

    with open(paths["json"], "w", encoding="utf-8") as f:
        json.dump(
            {
                "timestamp": now.isoformat(),
                "results": [r.to_dict() for r in results],
                "scaling": analysis.to_dict(),
            },
            f,
            indent=2,
        )
    results_frame(results).to_csv(paths["csv"], index=False)
    if render_chart and results:
        paths["chart"] = render_benchmark_chart(results, results_dir / f"{base}.png")
    LOGGER.info("Results saved to %s", paths["json"])
    return paths


def _print_plan(plan: BenchmarkPlan) -> None:
    print(f"Total cases: {len(plan)}")
    for case in plan:
        profile = case.profile()
        stages = ", ".join(f"{s.duration_ms / 1000:g}s->{s.target}" for s in profile.stages)
        print(f"  - {case.name}: {case.size_mb}MB files, {case.workers} workers [{stages}]")


def build_payload(size_mb: int) -> ContentSynthesizer:
    base = generate_base_payload(size_mb * MEBIBYTE, seed=str(int(time.time() * 1000)))
    return ContentSynthesizer(base.data, base.marker_offset)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    env = load_environment(args.env_file)
    try:
        plan = default_benchmark_plan(args.sizes, args.workers, QUICK_SCALE if args.quick else 1.0)
        service = resolve_service(args, env)
        telemetry = resolve_telemetry(args, env)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    results_dir = Path(args.results_dir or env.get("RESULTS_DIR") or DEFAULT_RESULTS_DIR)

    LOGGER.info("File sizes: %s MB", ", ".join(str(s) for s in args.sizes))
    LOGGER.info("Concurrency: %s workers", ", ".join(str(w) for w in args.workers))
    if args.dry_run:
        _print_plan(plan)
        return 0

    results: list[BenchmarkResult] = []
    with MediaLibraryClient(service) as client:
        try:
            wait_for_health(client, timeout_s=HEALTH_TIMEOUT_S)
            verify_upload_access(client, service.library_id)
        except ServiceUnavailableError as exc:
            LOGGER.error("Pre-flight failed: %s", exc)
            return 1

        # one base buffer at a time; the plan runs sizes outermost
        synthesizer: ContentSynthesizer | None = None
        synthesizer_size_mb: int | None = None
        for index, case in enumerate(plan, start=1):
            LOGGER.info("Running case %d/%d: %s", index, len(plan), case.name)
            if case.size_mb != synthesizer_size_mb:
                synthesizer = None
                synthesizer = build_payload(case.size_mb)
                synthesizer_size_mb = case.size_mb
            workload = UploadWorkload(client, synthesizer, library_id=service.library_id, cleanup=True)
            report = execute_run(
                workload,
                case.profile(),
                telemetry,
                open_sampler(telemetry),
                thresholds=UPLOAD_THRESHOLDS,
                seed=args.seed,
            )
            result = BenchmarkResult.from_report(case, report, telemetry.service_container)
            results.append(result)
            LOGGER.info(
                "  CPU: avg=%.1f%% max=%.1f%% | Mem: avg=%.0fMB max=%.0fMB",
                result.cpu_avg,
                result.cpu_max,
                result.memory_avg_mb,
                result.memory_max_mb,
            )
            if report.stopped_early:
                LOGGER.warning("Benchmark interrupted; skipping remaining cases")
                break

    analysis = scaling_analysis(results)
    print(format_results(results, analysis))
    write_results(results, analysis, results_dir)
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
