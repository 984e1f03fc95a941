from __future__ import annotations

import contextlib
import logging
import signal
import threading
from typing import Iterator, Sequence

from .config import LoadProfile, TelemetryConfig
from .report import RunReport, Threshold, build_report
from .runner import GRACEFUL_STOP_S, LoadRunner
from .scheduler import StageScheduler
from .telemetry.sampler import TelemetrySampler
from .telemetry.sources import RuntimeNotFoundError, create_stats_source
from .workload import Workload

LOGGER = logging.getLogger("m3w_loadtest.session")


def open_sampler(config: TelemetryConfig) -> TelemetrySampler | None:
    """Build a sampler for the configured runtime, or ``None`` when no runtime is reachable."""
    try:
        source = create_stats_source(
            runtime=config.runtime,
            use_docker_api=config.use_docker_api,
            name_filter=config.namespace,
        )
    except RuntimeNotFoundError as exc:
        LOGGER.warning("Resource monitoring disabled: %s", exc)
        return None
    return TelemetrySampler(
        source,
        namespace=config.namespace,
        service_alias=config.service_container,
        interval_ms=config.interval_ms,
    )


@contextlib.contextmanager
def stop_on_signals(runner: LoadRunner) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame) -> None:
        LOGGER.warning("Received %s; draining workers", signal.Signals(signum).name)
        runner.stop()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def execute_run(
    workload: Workload,
    profile: LoadProfile,
    telemetry: TelemetryConfig,
    sampler: TelemetrySampler | None,
    thresholds: Sequence[Threshold] = (),
    graceful_stop_s: float = GRACEFUL_STOP_S,
    seed: int | None = None,
) -> RunReport:
    """Run the workload while sampling resources, then summarise.

    Workers are drained before the sampler stops so the statistics include the
    cool-down tail of the run.
    """
    runner = LoadRunner(workload, StageScheduler(profile.stages), graceful_stop_s=graceful_stop_s, seed=seed)
    if sampler is not None:
        sampler.start()
    try:
        with stop_on_signals(runner):
            stats = runner.run()
    finally:
        samples = sampler.stop() if sampler is not None else []

    counters = {}
    if sampler is not None:
        counters = {"ticks": sampler.ticks, "failed": sampler.failed_ticks, "skipped": sampler.skipped_ticks}
    return build_report(
        workload=workload.name,
        profile=profile,
        stats=stats,
        samples=samples,
        service_container=telemetry.service_container,
        memory_ceiling_mb=telemetry.memory_ceiling_mb,
        thresholds=thresholds,
        sampler_counters=counters,
    )


__all__ = ["execute_run", "open_sampler", "stop_on_signals"]
