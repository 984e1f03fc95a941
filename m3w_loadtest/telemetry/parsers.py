"""Turn container runtime stats into ``(name, cpu %, memory MB)`` readings.

Two parser variants share the same output type: one for the tab-separated text
printed by ``docker stats`` / ``podman stats`` and one for the JSON document
returned by the Docker Engine API. Sources pick whichever matches their input,
so the sampler never sees runtime-specific formats.
"""

from __future__ import annotations

import abc
import re
from dataclasses import dataclass
from typing import Any, Mapping

STATS_FORMAT = "{{.Name}}\t{{.CPUPerc}}\t{{.MemUsage}}"

_NUMBER = re.compile(r"[-+]?\d+(?:\.\d+)?")
_MEMORY = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-z]*)\s*$", re.IGNORECASE)

# the runtimes mix binary (KiB) and decimal (kB) suffixes; both are read with
# 1024 factors so that readings from docker and podman stay comparable
_UNIT_TO_MB: dict[str, float] = {
    "": 1.0 / (1024 * 1024),
    "b": 1.0 / (1024 * 1024),
    "kib": 1.0 / 1024,
    "kb": 1.0 / 1024,
    "k": 1.0 / 1024,
    "mib": 1.0,
    "mb": 1.0,
    "m": 1.0,
    "gib": 1024.0,
    "gb": 1024.0,
    "g": 1024.0,
    "tib": 1024.0 * 1024,
    "tb": 1024.0 * 1024,
    "t": 1024.0 * 1024,
}


class StatsParseError(ValueError):
    """Raised when a stats value cannot be interpreted."""


@dataclass(frozen=True)
class ContainerStats:
    name: str
    cpu_percent: float
    memory_mb: float


def parse_cpu_percent(text: str) -> float:
    match = _NUMBER.search(text)
    if match is None:
        raise StatsParseError(f"no CPU value in {text!r}")
    return max(float(match.group(0)), 0.0)


def parse_memory_mb(text: str) -> float:
    """Convert ``"256MiB / 2GiB"`` (or a bare ``"1.5GB"``) into MB of used memory."""
    used = text.split("/", 1)[0]
    match = _MEMORY.match(used)
    if match is None:
        raise StatsParseError(f"unrecognised memory value {text!r}")
    value, unit = match.groups()
    factor = _UNIT_TO_MB.get(unit.lower())
    if factor is None:
        raise StatsParseError(f"unknown memory unit {unit!r} in {text!r}")
    return float(value) * factor


class StatsParser(abc.ABC):
    @abc.abstractmethod
    def parse(self, raw: Any) -> list[ContainerStats]:
        """Return one reading per container found in ``raw``."""


class TabularStatsParser(StatsParser):
    """Parses ``name<TAB>cpu%<TAB>used / limit`` lines; malformed lines are skipped."""

    def parse(self, raw: str) -> list[ContainerStats]:
        readings: list[ContainerStats] = []
        for line in raw.splitlines():
            parts = line.strip().split("\t")
            if len(parts) < 3 or not parts[0].strip():
                continue
            try:
                readings.append(
                    ContainerStats(
                        name=parts[0].strip(),
                        cpu_percent=parse_cpu_percent(parts[1]),
                        memory_mb=parse_memory_mb(parts[2]),
                    )
                )
            except StatsParseError:
                continue
        return readings


CACHE_KEYS = ("inactive_file", "total_inactive_file", "cache")


class DockerApiStatsParser(StatsParser):
    """Parses Docker Engine API stats documents keyed by container name.

    CPU follows the docker CLI: container CPU delta over system CPU delta, times
    the number of online CPUs. Memory excludes the page cache.
    """

    def parse(self, raw: Mapping[str, Mapping[str, Any]]) -> list[ContainerStats]:
        readings = []
        for name, stats in raw.items():
            readings.append(
                ContainerStats(
                    name=name.lstrip("/"),
                    cpu_percent=self.cpu_percent(stats),
                    memory_mb=self.memory_mb(stats),
                )
            )
        return readings

    @staticmethod
    def cpu_percent(stats: Mapping[str, Any]) -> float:
        cpu = stats.get("cpu_stats") or {}
        precpu = stats.get("precpu_stats") or {}
        cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (precpu.get("cpu_usage") or {}).get(
            "total_usage", 0
        )
        system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
        online = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
        if cpu_delta <= 0 or system_delta <= 0:
            return 0.0
        return cpu_delta / system_delta * online * 100.0

    @staticmethod
    def memory_mb(stats: Mapping[str, Any]) -> float:
        memory = stats.get("memory_stats") or {}
        usage = memory.get("usage", 0)
        details = memory.get("stats") or {}
        # cgroup v2 reports inactive_file, v1 total_inactive_file; older engines only cache
        cache = next((details[key] for key in CACHE_KEYS if key in details), 0)
        return max(usage - cache, 0) / (1024 * 1024)


__all__ = [
    "ContainerStats",
    "DockerApiStatsParser",
    "STATS_FORMAT",
    "StatsParseError",
    "StatsParser",
    "TabularStatsParser",
    "parse_cpu_percent",
    "parse_memory_mb",
]
