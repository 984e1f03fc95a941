"""Container resource sampling and capacity estimation."""

from .capacity import (
    AggregateSummary,
    CapacityProjection,
    ContainerSummary,
    percentile,
    project_capacity,
    summarize,
    summarize_samples,
    summarize_series,
)
from .parsers import ContainerStats, DockerApiStatsParser, StatsParser, TabularStatsParser
from .sampler import Sample, SamplerState, TelemetrySampler
from .sources import (
    CliStatsSource,
    DockerApiStatsSource,
    RuntimeNotFoundError,
    StatsSource,
    create_stats_source,
    detect_runtime,
)

__all__ = [
    "AggregateSummary",
    "CapacityProjection",
    "CliStatsSource",
    "ContainerStats",
    "ContainerSummary",
    "DockerApiStatsParser",
    "DockerApiStatsSource",
    "RuntimeNotFoundError",
    "Sample",
    "SamplerState",
    "StatsParser",
    "StatsSource",
    "TabularStatsParser",
    "TelemetrySampler",
    "create_stats_source",
    "detect_runtime",
    "percentile",
    "project_capacity",
    "summarize",
    "summarize_samples",
    "summarize_series",
]
