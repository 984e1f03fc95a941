from __future__ import annotations

import threading
import time

import pytest

from m3w_loadtest.telemetry.parsers import ContainerStats
from m3w_loadtest.telemetry.sampler import SamplerState, TelemetrySampler, short_name
from m3w_loadtest.telemetry.sources import StatsSource

NAMESPACE = "m3w-load-test"
LONG_INTERVAL_MS = 60_000


class FailingSource(StatsSource):
    def __init__(self) -> None:
        self.calls = 0

    def read(self) -> list[ContainerStats]:
        self.calls += 1
        raise RuntimeError("runtime went away")


class StaticSource(StatsSource):
    def __init__(self, readings: list[ContainerStats]) -> None:
        self.readings = readings
        self.calls = 0
        self.closed = False

    def read(self) -> list[ContainerStats]:
        self.calls += 1
        return list(self.readings)

    def close(self) -> None:
        self.closed = True


def stack_readings() -> list[ContainerStats]:
    return [
        ContainerStats("m3w-load-test", 10.0, 100.0),
        ContainerStats("m3w-load-test-postgres", 1.5, 50.0),
        ContainerStats("unrelated-container", 99.0, 999.0),
    ]


class TestShortName:

    def test_mapping(self) -> None:
        assert short_name("m3w-load-test", NAMESPACE, "m3w") == "m3w"
        assert short_name("m3w-load-test-postgres", NAMESPACE, "m3w") == "postgres"
        assert short_name("m3w-load-test-redis-1", NAMESPACE, "m3w") == "redis-1"

    def test_outside_namespace(self) -> None:
        assert short_name("buildkit", NAMESPACE, "m3w") is None


class TestTick:

    def test_failing_source_yields_no_samples(self) -> None:
        source = FailingSource()
        sampler = TelemetrySampler(source, NAMESPACE, "m3w", interval_ms=LONG_INTERVAL_MS)
        sampler.start()
        for _ in range(3):
            assert sampler.tick() == []
        samples = sampler.stop()

        assert samples == []
        assert sampler.failed_ticks >= 3
        assert sampler.state is SamplerState.STOPPED

    def test_filters_namespace_and_timestamps(self) -> None:
        now = [100.0]
        sampler = TelemetrySampler(
            StaticSource(stack_readings()), NAMESPACE, "m3w", interval_ms=LONG_INTERVAL_MS, clock=lambda: now[0]
        )
        sampler.start()
        now[0] = 102.5
        collected = sampler.tick()
        sampler.stop()

        assert {s.container for s in collected} == {"m3w", "postgres"}
        assert {s.timestamp_ms for s in collected} == {2500}
        service = next(s for s in collected if s.container == "m3w")
        assert service.cpu_percent == 10.0
        assert service.memory_mb == 100.0

    def test_tick_after_stop_is_dropped(self) -> None:
        sampler = TelemetrySampler(StaticSource(stack_readings()), NAMESPACE, "m3w", interval_ms=LONG_INTERVAL_MS)
        sampler.start()
        sampler.tick()
        kept = sampler.stop()
        assert sampler.tick() == []
        assert sampler.samples() == kept


class TestLifecycle:

    def test_cannot_start_twice(self) -> None:
        sampler = TelemetrySampler(StaticSource([]), NAMESPACE, "m3w", interval_ms=LONG_INTERVAL_MS)
        sampler.start()
        with pytest.raises(RuntimeError):
            sampler.start()
        sampler.stop()
        with pytest.raises(RuntimeError):
            sampler.start()

    def test_stop_without_start(self) -> None:
        sampler = TelemetrySampler(StaticSource([]), NAMESPACE, "m3w")
        assert sampler.stop() == []
        assert sampler.state is SamplerState.STOPPED

    def test_stop_closes_source(self) -> None:
        source = StaticSource([])
        sampler = TelemetrySampler(source, NAMESPACE, "m3w", interval_ms=LONG_INTERVAL_MS)
        sampler.start()
        sampler.stop()
        assert source.closed

    def test_background_sampling(self) -> None:
        source = StaticSource(stack_readings())
        sampler = TelemetrySampler(source, NAMESPACE, "m3w", interval_ms=20)
        sampler.start()
        time.sleep(0.3)
        samples = sampler.stop()

        assert sampler.ticks >= 3
        assert 2 <= len(samples) <= 2 * sampler.ticks
        assert sampler.failed_ticks == 0
        timestamps = [s.timestamp_ms for s in samples]
        assert timestamps == sorted(timestamps)

    def test_rejects_non_positive_interval(self) -> None:
        with pytest.raises(ValueError):
            TelemetrySampler(StaticSource([]), NAMESPACE, "m3w", interval_ms=0)


class SlowSource(StatsSource):
    """Source whose reads outlast the sampling interval; tracks overlapping reads."""

    def __init__(self, delay_s: float) -> None:
        self.delay_s = delay_s
        self.lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def read(self) -> list[ContainerStats]:
        with self.lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.delay_s)
            return [ContainerStats("m3w-load-test", 5.0, 64.0)]
        finally:
            with self.lock:
                self.in_flight -= 1


class TestOverrun:

    def test_slow_reads_skip_ticks(self) -> None:
        source = SlowSource(delay_s=0.25)
        sampler = TelemetrySampler(source, NAMESPACE, "m3w", interval_ms=100)
        sampler.start()
        time.sleep(1.2)
        samples = sampler.stop()

        assert source.max_in_flight == 1
        assert sampler.skipped_ticks > 0
        assert sampler.ticks >= 2
        assert len(samples) <= sampler.ticks
