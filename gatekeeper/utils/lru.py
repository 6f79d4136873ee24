"""Bounded, thread-safe LRU map for per-process governance state.

Used for abuse-detection trails and gaming sessions: memory is capped by
entry count, and the least recently touched entry is evicted first.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Callable, Generic, Iterator, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


class BoundedLRU(Generic[K, V]):
    """LRU map with a hard entry cap.

    Attributes:
        max_entries: Maximum number of entries kept.
    """

    def __init__(self, max_entries: int) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._store: OrderedDict[K, V] = OrderedDict()
        self._lock = threading.RLock()
        self._evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._store

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"BoundedLRU(max_entries={self.max_entries}, size={len(self._store)}, "
            f"evictions={self._evictions})"
        )

    def get(self, key: K) -> V | None:
        """Return the value and mark it most recently used."""

        with self._lock:
            value = self._store.get(key)
            if value is not None:
                self._store.move_to_end(key)
            return value

    def get_or_create(self, key: K, factory: Callable[[], V]) -> V:
        with self._lock:
            value = self._store.get(key)
            if value is None:
                value = factory()
                self._store[key] = value
                self._evict_over_capacity_locked()
            self._store.move_to_end(key)
            return value

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._store[key] = value
            self._store.move_to_end(key)
            self._evict_over_capacity_locked()

    def values(self) -> list[V]:
        with self._lock:
            return list(self._store.values())

    def items(self) -> Iterator[tuple[K, V]]:
        with self._lock:
            return iter(list(self._store.items()))

    def prune(self, predicate: Callable[[V], bool]) -> int:
        """Drop every entry for which ``predicate`` is true; returns the count."""

        with self._lock:
            doomed = [k for k, v in self._store.items() if predicate(v)]
            for key in doomed:
                del self._store[key]
            return len(doomed)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "max_entries": self.max_entries,
                "entries": len(self._store),
                "evictions": self._evictions,
            }

    def _evict_over_capacity_locked(self) -> None:
        while len(self._store) > self.max_entries:
            # popitem(last=False) removes the least recently used entry
            self._store.popitem(last=False)
            self._evictions += 1
            logger.debug("lru.evicted", extra={"size": len(self._store)})
