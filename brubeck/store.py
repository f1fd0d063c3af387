"""Thread-safe table of metrics keyed by name."""

from __future__ import annotations

import threading
from typing import Any, Dict, Iterator, List, Optional


class MetricTable:
    """Maps metric keys to metrics; lookups are lock-free, writes are serialised."""

    def __init__(self, size: int) -> None:
        if size < 0:
            raise ValueError(f"table size must not be negative: {size}")
        self.size = size
        self._entries: Dict[str, Any] = {}
        self._write_lock = threading.Lock()

    def find(self, key: str) -> Optional[Any]:
        """Return the metric stored under ``key``, or None."""
        return self._entries.get(key)

    def insert(self, key: str, metric: Any) -> bool:
        """Store ``metric`` under ``key``; return False if the key is already taken."""
        with self._write_lock:
            if key in self._entries:
                return False
            self._entries[key] = metric
            return True

    def __len__(self) -> int:
        with self._write_lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[Any]:
        with self._write_lock:
            snapshot = list(self._entries.values())
        return iter(snapshot)

    def to_list(self) -> List[Any]:
        """Return every stored metric as a list."""
        with self._write_lock:
            return list(self._entries.values())