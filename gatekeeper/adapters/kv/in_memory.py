"""In-process key-value store.

Notes:
- Per-process only: running multiple workers multiplies every limit.
- Thread-safe: uses a lock around shared state.
- Expiry is evaluated lazily against the injected clock, so a key whose TTL
  ends exactly at ``now`` is already gone.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Union

from gatekeeper.adapters.kv.base import AbstractKVStore, CounterState
from gatekeeper.core.clock import Clock

_Value = Union[str, float, int, list]


@dataclass
class _Entry:
    value: _Value
    expires_at_ms: int | None


class InMemoryKVStore(AbstractKVStore):
    """Dictionary-backed store with TTLs, counters and capped lists.

    ``set_available(False)`` simulates an outage: ``ready()`` turns false and
    every call returns the unavailable sentinel.
    """

    def __init__(self, *, clock: Clock, domain: str = "memory") -> None:
        super().__init__(domain=domain, clock=clock)
        self._lock = threading.RLock()
        self._data: dict[str, _Entry] = {}
        self._available = True
        self.increment_calls = 0

    def ready(self) -> bool:
        return self._available

    def set_available(self, available: bool) -> None:
        self._available = available

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self.increment_calls = 0

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at_ms is not None and entry.expires_at_ms <= self._clock.now_ms():
            del self._data[key]
            return None
        return entry

    async def _set_with_ttl(self, key: str, value: str, ttl_ms: int) -> None:
        with self._lock:
            self._data[key] = _Entry(value=value, expires_at_ms=self._clock.now_ms() + ttl_ms)

    async def _get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return str(entry.value)

    async def _increment_counter(self, key: str, window_ms: int) -> CounterState:
        with self._lock:
            self.increment_calls += 1
            now = self._clock.now_ms()
            entry = self._live(key)
            if entry is None:
                entry = _Entry(value=0, expires_at_ms=now + window_ms)
                self._data[key] = entry
            entry.value = int(entry.value) + 1
            return CounterState(count=entry.value, reset_at_ms=int(entry.expires_at_ms or now + window_ms))

    async def _increment_float(self, key: str, amount: float, ttl_ms: int) -> None:
        with self._lock:
            entry = self._live(key)
            current = float(entry.value) if entry is not None else 0.0
            self._data[key] = _Entry(value=current + amount, expires_at_ms=self._clock.now_ms() + ttl_ms)

    async def _push_bounded_list(self, key: str, item: str, cap: int, ttl_ms: int) -> None:
        with self._lock:
            entry = self._live(key)
            items = list(entry.value) if entry is not None and isinstance(entry.value, list) else []
            items.insert(0, item)
            self._data[key] = _Entry(value=items[:cap], expires_at_ms=self._clock.now_ms() + ttl_ms)

    async def _read_list(self, key: str) -> list[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, list):
                return []
            return list(entry.value)

    async def _multi_get(self, keys: list[str]) -> list[str | None]:
        with self._lock:
            values: list[str | None] = []
            for key in keys:
                entry = self._live(key)
                if entry is None or isinstance(entry.value, list):
                    values.append(None)
                else:
                    values.append(str(entry.value))
            return values

    async def _scan_prefix(self, prefix: str) -> list[str]:
        with self._lock:
            return [key for key in list(self._data) if key.startswith(prefix) and self._live(key)]

    async def _ttl_ms(self, key: str) -> int | None:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            if entry.expires_at_ms is None:
                return -1
            return entry.expires_at_ms - self._clock.now_ms()
