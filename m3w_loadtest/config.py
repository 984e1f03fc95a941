from __future__ import annotations

import dataclasses
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from dotenv import dotenv_values

DEFAULT_BASE_URL = "http://localhost:4000"
DEFAULT_NAMESPACE = "m3w-load-test"
DEFAULT_SERVICE_CONTAINER = "m3w"
DEFAULT_MEMORY_CEILING_MB = 2048.0
DEFAULT_SAMPLE_INTERVAL_MS = 2_000
DEFAULT_RESULTS_DIR = Path("results")
DEFAULT_ENV_FILE = Path(".env.test")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_FACTORS_MS = {"ms": 1, "s": 1_000, "m": 60_000, "h": 3_600_000}


class ConfigurationError(ValueError):
    """Raised when a load profile or run configuration is invalid."""


@dataclass(frozen=True)
class Stage:
    """Time-boxed target concurrency within a load profile."""

    duration_ms: int
    target: int

    def __post_init__(self) -> None:
        if isinstance(self.duration_ms, bool) or not isinstance(self.duration_ms, int):
            raise ConfigurationError(f"stage duration must be an integer, got {self.duration_ms!r}")
        if isinstance(self.target, bool) or not isinstance(self.target, int):
            raise ConfigurationError(f"stage target must be an integer, got {self.target!r}")
        if self.duration_ms < 0:
            raise ConfigurationError(f"stage duration must be >= 0, got {self.duration_ms}")
        if self.target < 0:
            raise ConfigurationError(f"stage target must be >= 0, got {self.target}")

    @classmethod
    def parse(cls, raw: Mapping[str, Any]) -> "Stage":
        try:
            duration = raw["duration"]
            target = raw["target"]
        except KeyError as exc:
            raise ConfigurationError(f"stage {dict(raw)!r} is missing {exc.args[0]!r}") from exc
        return cls(duration_ms=parse_duration_ms(duration), target=target)


@dataclass(frozen=True)
class LoadProfile:
    """Ordered stages played back-to-back plus the phase weights of the run."""

    name: str
    stages: tuple[Stage, ...]
    behavior: dict[str, float] = field(default_factory=dict)

    @property
    def total_duration_ms(self) -> int:
        return sum(stage.duration_ms for stage in self.stages)

    @property
    def peak_target(self) -> int:
        return max((stage.target for stage in self.stages), default=0)

    def scaled(self, factor: float) -> "LoadProfile":
        """Return a copy with every stage duration multiplied by ``factor``."""
        if factor <= 0:
            raise ConfigurationError("duration scale factor must be > 0")
        stages = tuple(
            Stage(duration_ms=int(round(stage.duration_ms * factor)), target=stage.target)
            for stage in self.stages
        )
        return dataclasses.replace(self, stages=stages)


@dataclass(frozen=True)
class ServiceConfig:
    """Connection details for the service under test, as written by the seed step."""

    base_url: str = DEFAULT_BASE_URL
    token: str = ""
    library_id: str = ""
    song_id: str = ""


@dataclass(frozen=True)
class TelemetryConfig:
    runtime: str | None = None
    namespace: str = DEFAULT_NAMESPACE
    service_container: str = DEFAULT_SERVICE_CONTAINER
    interval_ms: int = DEFAULT_SAMPLE_INTERVAL_MS
    memory_ceiling_mb: float = DEFAULT_MEMORY_CEILING_MB
    use_docker_api: bool = False

    def __post_init__(self) -> None:
        if self.interval_ms <= 0:
            raise ConfigurationError("sample interval must be > 0 ms")
        if self.memory_ceiling_mb <= 0:
            raise ConfigurationError("memory ceiling must be > 0 MB")


def parse_duration_ms(value: Any) -> int:
    """Convert ``1500``, ``"1500"``, ``"30s"``, ``"2m30s"`` or ``"1h"`` into milliseconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid stage duration {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ConfigurationError(f"stage duration must be whole milliseconds, got {value!r}")
        return int(value)
    if not isinstance(value, str):
        raise ConfigurationError(f"invalid stage duration {value!r}")

    text = value.strip().lower()
    if text.isdigit():
        return int(text)
    if not text or _DURATION_PART.sub("", text):
        raise ConfigurationError(f"invalid stage duration {value!r}")
    total = 0.0
    for amount, unit in _DURATION_PART.findall(text):
        total += float(amount) * _DURATION_FACTORS_MS[unit]
    return int(round(total))


CAPACITY_STAGES: tuple[Stage, ...] = (
    Stage(duration_ms=60_000, target=1),  # warm-up
    Stage(duration_ms=180_000, target=10),  # baseline
    Stage(duration_ms=180_000, target=25),
    Stage(duration_ms=180_000, target=50),  # stress
    Stage(duration_ms=180_000, target=100),  # peak
    Stage(duration_ms=120_000, target=0),  # cool-down
)

UPLOAD_STAGES: tuple[Stage, ...] = (
    Stage(duration_ms=30_000, target=1),
    Stage(duration_ms=60_000, target=5),
    Stage(duration_ms=120_000, target=10),
    Stage(duration_ms=120_000, target=20),
    Stage(duration_ms=60_000, target=0),  # memory recovery
)

BEHAVIOR_WEIGHTS: dict[str, float] = {
    "startup": 0.05,
    "listening": 0.85,
    "managing": 0.10,
}


def default_capacity_profile() -> LoadProfile:
    return LoadProfile(name="capacity", stages=CAPACITY_STAGES, behavior=dict(BEHAVIOR_WEIGHTS))


def default_upload_profile() -> LoadProfile:
    return LoadProfile(name="upload", stages=UPLOAD_STAGES)


def build_profile(
    name: str,
    stages: Sequence[Mapping[str, Any]],
    behavior: Mapping[str, float] | None = None,
) -> LoadProfile:
    return LoadProfile(
        name=name,
        stages=tuple(Stage.parse(stage) for stage in stages),
        behavior=dict(behavior or {}),
    )


def load_profile_file(path: str | Path, fallback: LoadProfile) -> LoadProfile:
    """Read a JSON profile; keys missing from the file are taken from ``fallback``."""
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"profile file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"profile file {path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"profile file {path} must contain a JSON object")

    stages = raw.get("stages")
    behavior = raw.get("behavior")
    if stages is not None and not isinstance(stages, list):
        raise ConfigurationError("profile 'stages' must be a list")
    if behavior is not None and not isinstance(behavior, dict):
        raise ConfigurationError("profile 'behavior' must be an object")

    return LoadProfile(
        name=str(raw.get("name", fallback.name)),
        stages=tuple(Stage.parse(stage) for stage in stages) if stages is not None else fallback.stages,
        behavior=dict(behavior) if behavior is not None else dict(fallback.behavior),
    )


def load_environment(env_file: str | Path | None = DEFAULT_ENV_FILE) -> dict[str, str]:
    """Merge ``.env.test`` (written by the seed step) under the process environment."""
    values: dict[str, str] = {}
    if env_file is not None and Path(env_file).is_file():
        values.update({key: value for key, value in dotenv_values(env_file).items() if value is not None})
    values.update(os.environ)
    return values


def service_config_from_env(env: Mapping[str, str]) -> ServiceConfig:
    return ServiceConfig(
        base_url=env.get("BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
        token=env.get("TEST_USER_TOKEN", ""),
        library_id=env.get("TEST_LIBRARY_ID", ""),
        song_id=env.get("TEST_SONG_ID", ""),
    )


def env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"invalid {key} value {raw!r}") from exc


def env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"invalid {key} value {raw!r}") from exc


__all__ = [
    "BEHAVIOR_WEIGHTS",
    "CAPACITY_STAGES",
    "ConfigurationError",
    "LoadProfile",
    "ServiceConfig",
    "Stage",
    "TelemetryConfig",
    "UPLOAD_STAGES",
    "build_profile",
    "default_capacity_profile",
    "default_upload_profile",
    "load_environment",
    "load_profile_file",
    "parse_duration_ms",
    "service_config_from_env",
]
