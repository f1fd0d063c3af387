"""Base class for backends that periodically flush metrics somewhere."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from enum import IntEnum
from typing import Any, Optional, Tuple

from .log import die
from .metric import HISTOGRAM_TYPES, Expire, Metric

_U32 = 0xFFFFFFFF


class BackendType(IntEnum):
    """Kinds of backend."""

    CARBON = 0
    RWI_CARBON = 1
    DATADOG = 2


def expire_metric(metric: Metric) -> None:
    """Turn an active metric inactive and clear its values; others are left alone."""
    if metric.expire != Expire.ACTIVE:
        return
    with metric.lock:
        metric.expire = Expire.INACTIVE
        if metric.type in HISTOGRAM_TYPES:
            metric.histogram.empty()
        else:
            metric.value = 0.0


def _forward(key: str, value: float, backend: "Backend", timestamp: int) -> None:
    backend.sample(key, value, timestamp)


class Backend(ABC):
    """Samples every registered metric every ``sample_freq`` seconds."""

    def __init__(
        self,
        server: Any,
        backend_type: BackendType,
        sample_freq: float,
        expire: int = 0,
    ) -> None:
        self.server = server
        self.type = BackendType(backend_type)
        self.sample_freq = sample_freq
        self.expire = expire
        self.tick_time = 0
        self.last_flush = 0
        self._queue: deque = deque()
        self._queue_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    def name(self) -> str:
        """Short name of the backend kind."""
        return self.type.name.lower()

    @property
    def queue(self) -> Tuple[Metric, ...]:
        """Registered metrics, most recently registered first."""
        with self._queue_lock:
            return tuple(self._queue)

    def register_metric(self, metric: Metric) -> None:
        """Add ``metric`` to the set this backend reports."""
        with self._queue_lock:
            self._queue.appendleft(metric)

    @abstractmethod
    def connect(self) -> bool:
        """Make sure the backend can send; return True when it can."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Tell whether the backend currently has a destination."""

    @abstractmethod
    def sample(self, key: str, value: float, timestamp: int) -> None:
        """Send one sampled value."""

    def flush(self) -> None:
        """Close a sampling round; unbuffered backends only record its tick time."""
        self.last_flush = self.tick_time

    def tick(self) -> bool:
        """Sample every registered metric once; return False if not connected."""
        if not self.connect():
            return False

        self.tick_time = int(time.time()) & _U32
        for metric in self.queue:
            if metric.expire > Expire.INACTIVE:
                metric.sample(_forward, self)
            if self.expire:
                expire_metric(metric)

        self.flush()
        return True

    def _run(self) -> None:
        deadline = time.monotonic()
        while not self._stopping.is_set():
            self.tick()
            deadline += self.sample_freq
            self._stopping.wait(max(0.0, deadline - time.monotonic()))

    def run_threaded(self) -> None:
        """Start sampling in a background thread."""
        self._stopping.clear()
        thread = threading.Thread(
            target=self._run, name=f"backend-{self.name()}", daemon=True
        )
        try:
            thread.start()
        except RuntimeError:
            die("failed to start backend thread")
        self._thread = thread

    def stop(self) -> None:
        """Stop the background thread and wait for it to finish."""
        self._stopping.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None