"""Bounded in-process TTL cache for generation results."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

V = TypeVar("V")


@dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    inserted_at: float


class TtlCache(Generic[V]):
    """Exact-key cache whose entries expire a fixed time after insertion.

    Expired entries are never returned. Every insert sweeps expired entries,
    any access triggers a full sweep once ``sweep_interval_seconds`` has
    passed, and the entry count never exceeds ``max_entries`` (oldest
    insertions are evicted first).
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 3600.0,
        max_entries: int = 1024,
        sweep_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}.")
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}.")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: OrderedDict[str, _Entry[V]] = OrderedDict()
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def get(self, key: str) -> V | None:
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, now):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: V) -> None:
        with self._lock:
            now = self._clock()
            self._entries.pop(key, None)
            self._entries[key] = _Entry(value=value, inserted_at=now)
            self._sweep(now)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""

        with self._lock:
            return self._sweep(self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep >= self.sweep_interval_seconds:
            self._sweep(now)

    def _sweep(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        return len(expired)

    def _expired(self, entry: _Entry[V], now: float) -> bool:
        return now - entry.inserted_at >= self.ttl_seconds
