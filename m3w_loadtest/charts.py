from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .telemetry.capacity import samples_to_frame
from .telemetry.sampler import Sample

if TYPE_CHECKING:
    from .benchmarks.config import BenchmarkResult

LOGGER = logging.getLogger("m3w_loadtest.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 200
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

CONTAINER_COLORS = ["#2E86AB", "#A23B72", "#F18F01", "#C73E1D", "#6A994E", "#5C4D7D"]


def render_resource_chart(samples: Sequence[Sample], chart_path: Path, title: str) -> Path:
    """Plot CPU and memory over time, one line per container."""
    df = samples_to_frame(samples)
    if df.empty:
        LOGGER.warning("No samples available for resource chart")
        return chart_path
    df["elapsed_s"] = df["timestamp_ms"].astype(float) / 1000.0

    containers = sorted(df["container"].unique())
    palette = {name: CONTAINER_COLORS[i % len(CONTAINER_COLORS)] for i, name in enumerate(containers)}

    fig, (cpu_ax, mem_ax) = plt.subplots(2, 1, figsize=(12, 8), sharex=True)
    sns.lineplot(data=df, x="elapsed_s", y="cpu_percent", hue="container", hue_order=containers,
                 palette=palette, ax=cpu_ax, linewidth=1.8)
    sns.lineplot(data=df, x="elapsed_s", y="memory_mb", hue="container", hue_order=containers,
                 palette=palette, ax=mem_ax, linewidth=1.8, legend=False)

    cpu_ax.set_ylabel("CPU (%)", fontweight="semibold")
    cpu_ax.set_ylim(bottom=0)
    cpu_ax.set_title(f"Container Resource Usage ({title})", fontweight="bold", pad=15)
    cpu_ax.legend(title="Container", loc="upper left", frameon=True)
    mem_ax.set_ylabel("Memory (MB)", fontweight="semibold")
    mem_ax.set_xlabel("Elapsed (seconds)", fontweight="semibold")
    mem_ax.set_ylim(bottom=0)
    for ax in (cpu_ax, mem_ax):
        ax.grid(True, alpha=0.3, linestyle="--")
        ax.spines["top"].set_visible(False)
        ax.spines["right"].set_visible(False)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


def render_benchmark_chart(results: Sequence["BenchmarkResult"], chart_path: Path) -> Path:
    """Peak memory and CPU of the service container against concurrency, one line per file size."""
    if not results:
        LOGGER.warning("No benchmark results available for chart")
        return chart_path
    df = pd.DataFrame(
        [
            {
                "size_mb": result.case.size_mb,
                "workers": result.case.workers,
                "memory_max_mb": result.memory_max_mb,
                "cpu_max": result.cpu_max,
            }
            for result in results
        ]
    )

    fig, (mem_ax, cpu_ax) = plt.subplots(1, 2, figsize=(14, 6))
    for i, (size_mb, group) in enumerate(df.sort_values("workers").groupby("size_mb")):
        color = CONTAINER_COLORS[i % len(CONTAINER_COLORS)]
        label = f"{size_mb}MB files"
        mem_ax.plot(group["workers"], group["memory_max_mb"], marker="o", linewidth=2.5, markersize=8,
                    color=color, label=label)
        cpu_ax.plot(group["workers"], group["cpu_max"], marker="o", linewidth=2.5, markersize=8,
                    color=color, label=label)

    ticks = np.unique(df["workers"].to_numpy())
    for ax, ylabel in ((mem_ax, "Peak memory (MB)"), (cpu_ax, "Peak CPU (%)")):
        ax.set_xlabel("Concurrent uploads", fontweight="semibold")
        ax.set_ylabel(ylabel, fontweight="semibold")
        ax.set_xticks(ticks)
        ax.set_ylim(bottom=0)
        ax.grid(True, alpha=0.3, linestyle="--")
        ax.legend(loc="upper left", frameon=True, fancybox=True)
    fig.suptitle("Upload Scaling: Service Container", fontweight="bold")

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path
