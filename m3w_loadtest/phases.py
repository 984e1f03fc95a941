from __future__ import annotations

import bisect
import itertools
import math
import numbers
from typing import Mapping

from .config import ConfigurationError

WEIGHT_TOLERANCE = 1e-6


class InvalidWeights(ConfigurationError):
    """Raised when a phase weight table is empty, non-positive or does not sum to 1."""


class PhaseSelector:
    """Maps a uniform draw in [0, 1) onto a behavioral phase.

    The cumulative partition is built once; selection returns the first phase
    whose cumulative upper bound exceeds the draw.
    """

    def __init__(self, weights: Mapping[str, float]) -> None:
        if not weights:
            raise InvalidWeights("phase weight table is empty")
        for phase, weight in weights.items():
            if isinstance(weight, bool) or not isinstance(weight, numbers.Real):
                raise InvalidWeights(f"weight for phase {phase!r} is not a number: {weight!r}")
            if not weight > 0:
                raise InvalidWeights(f"weight for phase {phase!r} must be > 0, got {weight}")
        total = math.fsum(weights.values())
        if not math.isclose(total, 1.0, rel_tol=0.0, abs_tol=WEIGHT_TOLERANCE):
            raise InvalidWeights(f"phase weights must sum to 1.0, got {total}")

        self._phases = tuple(weights)
        self._weights = {phase: float(weight) for phase, weight in weights.items()}
        self._bounds = list(itertools.accumulate(self._weights[phase] for phase in self._phases))

    @property
    def phases(self) -> tuple[str, ...]:
        return self._phases

    @property
    def weights(self) -> dict[str, float]:
        return dict(self._weights)

    def select(self, draw: float) -> str:
        if not 0.0 <= draw < 1.0:
            raise ValueError(f"draw must be in [0, 1), got {draw}")
        index = bisect.bisect_right(self._bounds, draw)
        # float rounding can leave the last bound a hair below 1.0
        return self._phases[min(index, len(self._phases) - 1)]


def select(weights: Mapping[str, float], draw: float) -> str:
    return PhaseSelector(weights).select(draw)
