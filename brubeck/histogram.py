"""Bounded value histograms and their statistical summaries."""

from __future__ import annotations

import functools
import math
import operator
import struct
from dataclasses import dataclass, field
from typing import Dict, List

MAX_VALUES = 0xFFFF
PERCENTILES = (5, 10, 25, 75, 90, 95, 99)

_U32 = 0xFFFFFFFF


def _f32(x: float) -> float:
    return struct.unpack("f", struct.pack("f", x))[0]


def _zero_percentiles() -> Dict[int, float]:
    return dict.fromkeys(PERCENTILES, 0.0)


@dataclass(frozen=True)
class HistogramSample:
    """Summary of a histogram at one point in time."""

    sum: float = 0.0
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: float = 0.0
    count: float = 0.0
    percentiles: Dict[int, float] = field(default_factory=_zero_percentiles)


class Histogram:
    """Collects up to 65535 values and the (upsampled) number of events seen."""

    __slots__ = ("values", "count")

    def __init__(self) -> None:
        self.values: List[float] = []
        self.count = 0

    def push(self, value: float, sample_freq: float = 1.0) -> None:
        """Record ``value``, counting it ``sample_freq`` times."""
        self.count = int(self.count + sample_freq) & _U32
        if len(self.values) < MAX_VALUES:
            self.values.append(value)

    def _percentile(self, rank: float) -> float:
        scaled = _f32(_f32(rank) * len(self.values))
        irank = math.floor(_f32(scaled + 0.5))
        return self.values[max(irank, 1) - 1]

    def sample(self) -> HistogramSample:
        """Sort the stored values and summarise them; the values are kept."""
        if not self.values:
            return HistogramSample()

        self.values.sort()
        total = functools.reduce(operator.add, self.values, 0.0)
        return HistogramSample(
            sum=total,
            min=self.values[0],
            max=self.values[-1],
            mean=total / len(self.values),
            median=self._percentile(0.5),
            count=float(self.count),
            percentiles={p: self._percentile(p / 100.0) for p in PERCENTILES},
        )

    def empty(self) -> None:
        """Drop all values and reset the event count."""
        self.values.clear()
        self.count = 0

    def __len__(self) -> int:
        return len(self.values)