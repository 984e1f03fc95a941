from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable

from .metrics import MetricsBuffer, merge_buffers
from .scheduler import StageScheduler
from .workload import WorkerContext, Workload

LOGGER = logging.getLogger("m3w_loadtest.runner")

CONTROL_TICK_S = 0.1
GRACEFUL_STOP_S = 30.0


@dataclass
class RunStatistics:
    started_at: float
    finished_at: float
    peak_active: int
    metrics: MetricsBuffer
    stopped_early: bool = False

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def iterations(self) -> int:
        return sum(self.metrics.iterations.values())


class _WorkerSlot:
    def __init__(self, index: int, context: WorkerContext) -> None:
        self.index = index
        self.context = context
        self.iteration = 0
        self.thread: threading.Thread | None = None

    @property
    def alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class LoadRunner:
    """Keeps the number of running virtual workers in line with the stage scheduler.

    Worker slot ``i`` runs while the scheduled concurrency is above ``i``. On
    ramp-down a worker finishes its current iteration and exits. Each worker
    records into its own buffer; the buffers are merged after every worker
    thread has been joined.
    """

    def __init__(
        self,
        workload: Workload,
        scheduler: StageScheduler,
        control_tick_s: float = CONTROL_TICK_S,
        graceful_stop_s: float = GRACEFUL_STOP_S,
        seed: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._workload = workload
        self._scheduler = scheduler
        self._control_tick_s = control_tick_s
        self._graceful_stop_s = graceful_stop_s
        self._seed = seed
        self._clock = clock

        self._slots: list[_WorkerSlot] = []
        self._draining = threading.Event()
        self._stop_event = threading.Event()
        self._started: float | None = None
        self._peak_active = 0

    def stop(self) -> None:
        """Stop spawning, cut think-time short and let in-flight requests finish."""
        self._draining.set()
        self._stop_event.set()

    def elapsed_ms(self) -> float:
        if self._started is None:
            return 0.0
        return (self._clock() - self._started) * 1000.0

    def active_workers(self) -> int:
        return sum(1 for slot in self._slots if slot.alive)

    def run(self) -> RunStatistics:
        self._started = self._clock()
        wall_started = time.time()
        total_ms = self._scheduler.total_duration_ms
        LOGGER.info(
            "Starting %s workload: %d stage(s), %.0fs, peak %d worker(s)",
            self._workload.name,
            len(self._scheduler.stages),
            total_ms / 1000.0,
            self._scheduler.peak_concurrency,
        )

        current_stage: int | None = None
        while not self._stop_event.is_set():
            elapsed = self.elapsed_ms()
            if elapsed >= total_ms:
                break
            stage = self._scheduler.stage_index_at(elapsed)
            target = self._scheduler.concurrency_at(elapsed)
            if stage != current_stage:
                current_stage = stage
                LOGGER.info("Stage %d/%d: target %d worker(s)", stage + 1, len(self._scheduler.stages), target)
            self._reconcile(target)
            self._stop_event.wait(self._control_tick_s)

        stopped_early = self._stop_event.is_set()
        self._drain()
        finished = time.time()

        metrics = merge_buffers(slot.context.metrics for slot in self._slots)
        LOGGER.info(
            "Workload finished: %d iteration(s), peak %d worker(s)",
            sum(metrics.iterations.values()),
            self._peak_active,
        )
        return RunStatistics(
            started_at=wall_started,
            finished_at=finished,
            peak_active=self._peak_active,
            metrics=metrics,
            stopped_early=stopped_early,
        )

    def _reconcile(self, target: int) -> None:
        for index in range(target):
            slot = self._slot(index)
            if not slot.alive:
                slot.thread = threading.Thread(
                    target=self._worker_loop,
                    args=(slot,),
                    name=f"vu-{slot.context.worker_id}",
                    daemon=True,
                )
                slot.thread.start()
        self._peak_active = max(self._peak_active, self.active_workers())

    def _slot(self, index: int) -> _WorkerSlot:
        while len(self._slots) <= index:
            worker_id = len(self._slots) + 1
            rng = random.Random(None if self._seed is None else self._seed * 1_000_003 + worker_id)
            context = WorkerContext(
                worker_id=worker_id,
                metrics=MetricsBuffer(),
                rng=rng,
                pause=self._pause,
            )
            self._slots.append(_WorkerSlot(len(self._slots), context))
        return self._slots[index]

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(seconds)

    def _worker_loop(self, slot: _WorkerSlot) -> None:
        ctx = slot.context
        while not self._draining.is_set():
            if self._scheduler.concurrency_at(self.elapsed_ms()) <= slot.index:
                return
            slot.iteration += 1
            try:
                self._workload.iterate(ctx, slot.iteration)
            except Exception:  # noqa: BLE001
                LOGGER.exception("worker %d: iteration %d failed", ctx.worker_id, slot.iteration)
                ctx.metrics.record_check("iteration completed", False)

    def _drain(self) -> None:
        self._draining.set()
        deadline = self._clock() + self._graceful_stop_s
        for slot in self._slots:
            if slot.thread is None:
                continue
            slot.thread.join(timeout=max(deadline - self._clock(), 0.0))
        if self.active_workers():
            LOGGER.info("Graceful stop window elapsed; interrupting think time of %d worker(s)", self.active_workers())
            self._stop_event.set()
        for slot in self._slots:
            if slot.thread is not None:
                slot.thread.join()


__all__ = ["LoadRunner", "RunStatistics"]
