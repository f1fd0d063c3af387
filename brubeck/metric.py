"""Metrics: recording values, sampling them for backends, internal statistics."""

from __future__ import annotations

import threading
from enum import IntEnum, IntFlag
from typing import Any, Callable, Dict, Optional

from .histogram import PERCENTILES, Histogram
from .log import die

_U32 = 0xFFFFFFFF

SampleCallback = Callable[[str, float, Any, int], None]


class MetricType(IntEnum):
    """Kinds of metric, with their statsd type codes."""

    GAUGE = 0  # g
    METER = 1  # c
    COUNTER = 2  # C
    HISTO = 3  # h
    TIMER = 4  # ms
    TELEM = 5  # m
    INTERNAL_STATS = 6


HISTOGRAM_TYPES = frozenset({MetricType.HISTO, MetricType.TIMER, MetricType.TELEM})


class Modifier(IntFlag):
    """Flags that change how a value is recorded."""

    NONE = 0
    RELATIVE_VALUE = 1


class Expire(IntEnum):
    """Activity state of a metric."""

    DISABLED = 0
    INACTIVE = 1
    ACTIVE = 2
    NEVER = 100


_STAT_NAMES = (
    "metrics",
    "errors",
    "unique_keys",
    "secure.failed",
    "secure.from_future",
    "secure.delayed",
    "secure.replayed",
)


class InternalStats:
    """Counters the daemon keeps about itself."""

    def __init__(self) -> None:
        self.sample_freq = 0
        self.live: Dict[str, int] = dict.fromkeys(_STAT_NAMES, 0)
        self.sample: Dict[str, int] = dict.fromkeys(_STAT_NAMES, 0)
        self._lock = threading.Lock()

    def increment(self, name: str) -> int:
        """Add one to the live counter ``name`` and return its new value."""
        with self._lock:
            if name not in self.live:
                raise KeyError(f"unknown internal statistic: {name}")
            value = (self.live[name] + 1) & _U32
            self.live[name] = value
            return value

    def _swap(self, name: str, value: int) -> int:
        with self._lock:
            old = self.live[name]
            self.live[name] = value
            return old

    def _fetch(self, name: str) -> int:
        with self._lock:
            return self.live[name]


_INTERNAL_KEYS = (
    (".metrics", "metrics", True),
    (".errors", "errors", True),
    (".unique_keys", "unique_keys", False),
)


class Metric:
    """One named metric and the values recorded against it."""

    __slots__ = (
        "key",
        "type",
        "expire",
        "timestamp",
        "lock",
        "value",
        "previous",
        "histogram",
        "other",
    )

    def __init__(self, key: str, metric_type: MetricType) -> None:
        self.key = key
        self.type = MetricType(metric_type)
        self.expire = Expire.ACTIVE
        self.timestamp = 0
        self.lock = threading.Lock()
        self.value = 0.0
        self.previous = 0.0
        self.histogram: Optional[Histogram] = (
            Histogram() if self.type in HISTOGRAM_TYPES else None
        )
        self.other: Any = None

    def __repr__(self) -> str:
        return f"Metric({self.key!r}, {self.type.name})"

    def record(
        self, value: float, sample_freq: float = 1.0, modifiers: int = Modifier.NONE
    ) -> None:
        """Record ``value`` observed at ``sample_freq`` (1 / sample rate)."""
        kind = self.type
        if kind is MetricType.INTERNAL_STATS:
            raise TypeError("internal statistics are not recorded through metrics")

        with self.lock:
            if kind is MetricType.GAUGE:
                if modifiers & Modifier.RELATIVE_VALUE:
                    self.value += value
                else:
                    self.value = value
            elif kind is MetricType.METER:
                self.value += value * sample_freq
            elif kind is MetricType.COUNTER:
                value *= sample_freq
                if self.previous > 0.0:
                    diff = value - self.previous if value >= self.previous else value
                    self.value += diff
                self.previous = value
            else:
                self.histogram.push(value, sample_freq)
            self.expire = Expire.ACTIVE

    def sample(self, callback: SampleCallback, backend: Any) -> None:
        """Report the metric's current figures as ``callback(key, value, backend, timestamp)``."""
        kind = self.type
        if kind is MetricType.INTERNAL_STATS:
            self._sample_internal(callback, backend)
        elif kind in HISTOGRAM_TYPES:
            self._sample_histogram(callback, backend)
        else:
            with self.lock:
                value = self.value
            if self.expire > Expire.INACTIVE:
                callback(self.key, value, backend, self.timestamp)

    def _sample_histogram(self, callback: SampleCallback, backend: Any) -> None:
        if self.expire <= Expire.INACTIVE:
            return
        with self.lock:
            summary = self.histogram.sample()

        key, ts = self.key, self.timestamp
        callback(key + ".count", summary.count, backend, ts)
        if summary.count == 0.0:
            return

        callback(key + ".min", summary.min, backend, ts)
        callback(key + ".max", summary.max, backend, ts)
        callback(key + ".sum", summary.sum, backend, ts)
        callback(key + ".mean", summary.mean, backend, ts)
        callback(key + ".median", summary.median, backend, ts)
        for pc in PERCENTILES:
            callback(f"{key}.percentile.{pc}", summary.percentiles[pc], backend, ts)

    def _sample_internal(self, callback: SampleCallback, backend: Any) -> None:
        stats: InternalStats = self.other
        for suffix, name, reset in _INTERNAL_KEYS:
            value = stats._swap(name, 0) if reset else stats._fetch(name)
            stats.sample[name] = value
            callback(self.key + suffix, float(value), backend, self.timestamp)
        # keep the internal metric from being expired as inactive
        self.expire = Expire.NEVER


def new_metric(server: Any, key: str, metric_type: MetricType) -> Metric:
    """Create a metric, store it in the server and register it with every backend.

    If another thread stored the key first, that metric is returned instead.
    """
    metric = Metric(key, metric_type)
    if not server.metrics.insert(metric.key, metric):
        return server.metrics.find(key)

    for backend in server.backends:
        backend.register_metric(metric)

    server.internal_stats.increment("unique_keys")
    return metric


def find_metric(server: Any, key: str, metric_type: MetricType) -> Optional[Metric]:
    """Return the metric for ``key``, creating it unless the server is at capacity."""
    metric = server.metrics.find(key)
    if metric is None:
        if server.at_capacity:
            return None
        return new_metric(server, key, metric_type)

    metric.expire = Expire.ACTIVE
    return metric


def init_internal_stats(server: Any) -> Metric:
    """Create the metric that reports the server's own statistics."""
    if not server.backends:
        die("Failed to initialize internal stats sampler: no backends")

    internal = new_metric(server, server.name, MetricType.INTERNAL_STATS)
    if internal is None:
        die("Failed to initialize internal stats sampler")

    internal.other = server.internal_stats
    internal.expire = Expire.NEVER
    server.internal_stats.sample_freq = server.backends[0].sample_freq
    return internal