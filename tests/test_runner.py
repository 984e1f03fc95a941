from __future__ import annotations

import threading
import time

from m3w_loadtest.config import Stage
from m3w_loadtest.runner import LoadRunner
from m3w_loadtest.scheduler import StageScheduler
from m3w_loadtest.workload import WorkerContext


class CountingWorkload:
    name = "counting"

    def __init__(self, think_s: float = 0.01) -> None:
        self.think_s = think_s
        self.workers: set[int] = set()
        self._lock = threading.Lock()

    def iterate(self, ctx: WorkerContext, iteration: int) -> None:
        with self._lock:
            self.workers.add(ctx.worker_id)
        ctx.metrics.record_iteration("tick")
        ctx.metrics.record_check("tick ok", True)
        ctx.pause(self.think_s)


class ExplodingWorkload:
    name = "exploding"

    def iterate(self, ctx: WorkerContext, iteration: int) -> None:
        ctx.pause(0.01)
        raise RuntimeError("boom")


def runner_for(workload, stages, **kwargs) -> LoadRunner:
    kwargs.setdefault("control_tick_s", 0.01)
    kwargs.setdefault("graceful_stop_s", 1.0)
    return LoadRunner(workload, StageScheduler(stages), **kwargs)


class TestLoadRunner:

    def test_follows_profile(self) -> None:
        workload = CountingWorkload()
        stats = runner_for(workload, [Stage(300, 2), Stage(200, 0)], seed=1).run()

        assert stats.peak_active == 2
        assert workload.workers == {1, 2}
        assert stats.iterations > 0
        assert stats.metrics.checks["tick ok"].fails == 0
        assert not stats.stopped_early
        assert stats.finished_at >= stats.started_at

    def test_ramp_up_adds_workers(self) -> None:
        workload = CountingWorkload()
        stats = runner_for(workload, [Stage(150, 1), Stage(150, 3), Stage(100, 0)]).run()
        assert stats.peak_active == 3
        assert workload.workers == {1, 2, 3}

    def test_empty_profile(self) -> None:
        workload = CountingWorkload()
        stats = runner_for(workload, []).run()
        assert stats.peak_active == 0
        assert stats.iterations == 0

    def test_iteration_errors_are_contained(self) -> None:
        stats = runner_for(ExplodingWorkload(), [Stage(200, 1)]).run()
        tally = stats.metrics.checks["iteration completed"]
        assert tally.fails > 0
        assert tally.passes == 0

    def test_stop_cuts_think_time(self) -> None:
        runner = runner_for(CountingWorkload(think_s=30.0), [Stage(60_000, 2)], graceful_stop_s=30.0)
        result = []
        thread = threading.Thread(target=lambda: result.append(runner.run()))
        thread.start()
        time.sleep(0.2)
        runner.stop()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert result[0].stopped_early
        assert result[0].peak_active == 2

    def test_graceful_window_expires(self) -> None:
        started = time.monotonic()
        stats = runner_for(CountingWorkload(think_s=30.0), [Stage(100, 1)], graceful_stop_s=0.1).run()
        assert time.monotonic() - started < 5
        assert not stats.stopped_early
        assert stats.iterations == 1
