from __future__ import annotations

import bisect
import itertools
from typing import Sequence

from .config import Stage


class StageScheduler:
    """Answers how many virtual workers should be active at a given instant.

    Stages are played back-to-back and each one covers the half-open interval
    ``[start, end)``. Concurrency steps at stage boundaries. Past the end of the
    profile the last stage's target is held; an empty profile always answers 0.
    """

    def __init__(self, stages: Sequence[Stage]) -> None:
        self._stages = tuple(stages)
        self._ends = list(itertools.accumulate(stage.duration_ms for stage in self._stages))

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self._stages

    @property
    def total_duration_ms(self) -> int:
        return self._ends[-1] if self._ends else 0

    @property
    def peak_concurrency(self) -> int:
        return max((stage.target for stage in self._stages), default=0)

    def concurrency_at(self, elapsed_ms: float) -> int:
        if elapsed_ms < 0:
            raise ValueError(f"elapsed time must be >= 0, got {elapsed_ms}")
        if not self._stages:
            return 0
        if elapsed_ms >= self.total_duration_ms:
            return self._stages[-1].target
        # zero-length stages share their end with the previous one and are never selected
        index = bisect.bisect_right(self._ends, elapsed_ms)
        return self._stages[index].target

    def stage_index_at(self, elapsed_ms: float) -> int | None:
        if not self._stages or elapsed_ms < 0:
            return None
        return min(bisect.bisect_right(self._ends, elapsed_ms), len(self._stages) - 1)
