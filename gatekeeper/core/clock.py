"""Time source and request-id generation.

Every component that needs "now" takes a clock instead of calling ``time``
directly, so tests can drive the whole pipeline with a virtual clock.
"""

from __future__ import annotations

import itertools
import threading
import time
import uuid
from typing import Protocol


class Clock(Protocol):
    """Millisecond clock plus request-id source."""

    def now_ms(self) -> int: ...

    def new_request_id(self) -> str: ...


class SystemClock:
    """Wall-clock anchored, monotonic millisecond clock.

    The value is epoch milliseconds at construction plus monotonic elapsed
    time, so it never goes backwards within a process while still being
    usable for ``X-RateLimit-Reset`` style epoch headers.
    """

    def __init__(self) -> None:
        self._epoch_anchor_ms = time.time() * 1000
        self._mono_anchor = time.monotonic()

    def now_ms(self) -> int:
        return int(self._epoch_anchor_ms + (time.monotonic() - self._mono_anchor) * 1000)

    def new_request_id(self) -> str:
        return uuid.uuid4().hex


class VirtualClock:
    """Manually advanced clock with sequential request ids."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = start_ms
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        return self._now

    def set(self, now_ms: int) -> None:
        if now_ms < self._now:
            raise ValueError("virtual clock cannot move backwards")
        self._now = now_ms

    def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("ms must be >= 0")
        self._now += ms

    def new_request_id(self) -> str:
        with self._lock:
            return f"req-{next(self._ids):06d}"
