from __future__ import annotations

import enum
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable

from .sources import StatsSource

LOGGER = logging.getLogger("m3w_loadtest.telemetry.sampler")


class SamplerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Sample:
    timestamp_ms: int
    container: str
    cpu_percent: float
    memory_mb: float

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def short_name(name: str, namespace: str, service_alias: str) -> str | None:
    """Map ``m3w-load-test-postgres`` to ``postgres`` and ``m3w-load-test`` to the service alias.

    Containers outside the namespace map to ``None``.
    """
    if namespace not in name:
        return None
    return name.replace(f"{namespace}-", "").replace(namespace, service_alias)


class TelemetrySampler:
    """Polls a stats source on a fixed interval and buffers one Sample per container per tick.

    Ticks are scheduled against absolute deadlines. A deadline that passes while
    the previous tick is still collecting is skipped, never queued. A failing
    tick produces no samples and the sampler carries on.
    """

    def __init__(
        self,
        source: StatsSource,
        namespace: str,
        service_alias: str,
        interval_ms: int = 2_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        self._source = source
        self._namespace = namespace
        self._service_alias = service_alias
        self._interval_s = interval_ms / 1000.0
        self._clock = clock

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state = SamplerState.IDLE
        self._samples: list[Sample] = []
        self._started: float | None = None
        self.ticks = 0
        self.failed_ticks = 0
        self.skipped_ticks = 0

    @property
    def state(self) -> SamplerState:
        with self._lock:
            return self._state

    def samples(self) -> list[Sample]:
        with self._lock:
            return list(self._samples)

    def start(self) -> None:
        with self._lock:
            if self._state is not SamplerState.IDLE:
                raise RuntimeError(f"sampler cannot start from state {self._state.value}")
            self._state = SamplerState.RUNNING
            self._started = self._clock()
        self._thread = threading.Thread(target=self._loop, name="telemetry-sampler", daemon=True)
        self._thread.start()
        LOGGER.info("Telemetry sampler started (every %.1fs, namespace %s)", self._interval_s, self._namespace)

    def stop(self, timeout_s: float = 10.0) -> list[Sample]:
        with self._lock:
            if self._state is SamplerState.STOPPED:
                return list(self._samples)
            was_running = self._state is SamplerState.RUNNING
            self._state = SamplerState.STOPPING if was_running else SamplerState.STOPPED
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
        self._source.close()
        with self._lock:
            self._state = SamplerState.STOPPED
            samples = list(self._samples)
        LOGGER.info(
            "Telemetry sampler stopped: %d sample(s), %d tick(s), %d failed, %d skipped",
            len(samples),
            self.ticks,
            self.failed_ticks,
            self.skipped_ticks,
        )
        return samples

    def tick(self) -> list[Sample]:
        """Collect one snapshot; returns the samples kept from it."""
        started = self._started if self._started is not None else self._clock()
        timestamp_ms = max(int((self._clock() - started) * 1000), 0)
        self.ticks += 1
        try:
            readings = self._source.read()
        except Exception:  # noqa: BLE001
            self.failed_ticks += 1
            LOGGER.debug("stats collection failed", exc_info=True)
            return []

        collected = []
        for reading in readings:
            name = short_name(reading.name, self._namespace, self._service_alias)
            if name is None:
                continue
            collected.append(
                Sample(
                    timestamp_ms=timestamp_ms,
                    container=name,
                    cpu_percent=reading.cpu_percent,
                    memory_mb=reading.memory_mb,
                )
            )

        with self._lock:
            if self._state is not SamplerState.RUNNING:
                return []
            self._samples.extend(collected)
        if collected:
            LOGGER.debug(
                " | ".join(f"{s.container}: {s.cpu_percent:.1f}% CPU, {s.memory_mb:.0f}MB" for s in collected)
            )
        return collected

    def _loop(self) -> None:
        next_tick = self._clock() + self._interval_s
        while not self._stop_event.wait(max(next_tick - self._clock(), 0.0)):
            self.tick()
            next_tick += self._interval_s
            now = self._clock()
            if now > next_tick:
                missed = math.floor((now - next_tick) / self._interval_s) + 1
                self.skipped_ticks += missed
                next_tick += missed * self._interval_s


__all__ = ["Sample", "SamplerState", "TelemetrySampler", "short_name"]
