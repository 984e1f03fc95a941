from __future__ import annotations

import abc
import logging
import subprocess
from typing import Callable, Sequence

import docker

from .parsers import STATS_FORMAT, ContainerStats, DockerApiStatsParser, TabularStatsParser

LOGGER = logging.getLogger("m3w_loadtest.telemetry.sources")

RUNTIMES: tuple[str, ...] = ("docker", "podman")
STATS_TIMEOUT_S = 5.0

Runner = Callable[..., subprocess.CompletedProcess]


class RuntimeNotFoundError(RuntimeError):
    """Raised when neither docker nor podman is available."""


def detect_runtime(preferred: str | None = None, run: Runner = subprocess.run) -> str:
    """Return the preferred runtime, or the first of docker/podman that answers ``--version``."""
    if preferred:
        return preferred
    for runtime in RUNTIMES:
        try:
            run([runtime, "--version"], capture_output=True, check=True, timeout=STATS_TIMEOUT_S)
        except (OSError, subprocess.SubprocessError):
            continue
        LOGGER.info("Using container runtime %s", runtime)
        return runtime
    raise RuntimeNotFoundError("neither docker nor podman found")


class StatsSource(abc.ABC):
    @abc.abstractmethod
    def read(self) -> list[ContainerStats]:
        """Take one stats snapshot of every running container; may raise on failure."""

    def close(self) -> None:
        pass


class CliStatsSource(StatsSource):
    """Runs ``<runtime> stats --no-stream`` and parses its tabular output."""

    def __init__(
        self,
        runtime: str,
        timeout_s: float = STATS_TIMEOUT_S,
        parser: TabularStatsParser | None = None,
        run: Runner = subprocess.run,
    ) -> None:
        self._runtime = runtime
        self._timeout_s = timeout_s
        self._parser = parser or TabularStatsParser()
        self._run = run

    @property
    def command(self) -> list[str]:
        return [self._runtime, "stats", "--no-stream", "--format", STATS_FORMAT]

    def read(self) -> list[ContainerStats]:
        result = self._run(
            self.command,
            capture_output=True,
            text=True,
            check=True,
            timeout=self._timeout_s,
        )
        return self._parser.parse(result.stdout)


class DockerApiStatsSource(StatsSource):
    """Reads one-shot stats for matching containers through the Docker Engine API."""

    def __init__(
        self,
        name_filter: str | None = None,
        client=None,
        parser: DockerApiStatsParser | None = None,
    ) -> None:
        if client is None:
            client = docker.from_env()
        self._client = client
        self._filters = {"name": name_filter} if name_filter else {}
        self._parser = parser or DockerApiStatsParser()

    def read(self) -> list[ContainerStats]:
        containers: Sequence = self._client.containers.list(filters=self._filters)
        raw = {container.name: container.stats(stream=False) for container in containers}
        return self._parser.parse(raw)

    def close(self) -> None:
        self._client.close()


def create_stats_source(
    runtime: str | None = None,
    use_docker_api: bool = False,
    name_filter: str | None = None,
) -> StatsSource:
    if use_docker_api:
        try:
            return DockerApiStatsSource(name_filter=name_filter)
        except docker.errors.DockerException as exc:
            raise RuntimeNotFoundError(f"docker engine unavailable: {exc}") from exc
    return CliStatsSource(detect_runtime(runtime))


__all__ = [
    "CliStatsSource",
    "create_stats_source",
    "DockerApiStatsSource",
    "RuntimeNotFoundError",
    "StatsSource",
    "detect_runtime",
]
