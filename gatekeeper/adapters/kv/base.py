"""Key-value store interface.

The governance services depend on this abstraction (not a concrete client)
so the backend can be Redis in production and an in-process store in tests
or single-worker deployments.

Contract:
- Every public method is safe to call when the backend is down: it returns
  ``UNAVAILABLE`` (reads) or ``False`` (writes) and never raises.
- ``increment_counter`` is atomic per key and sets the TTL only on the first
  increment of a window.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from gatekeeper.core.clock import Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_VALUE_BYTES = 16 * 1024


class Unavailable:
    """Sentinel returned when the backend could not serve a call."""

    _instance: "Unavailable | None" = None

    def __new__(cls) -> "Unavailable":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return "UNAVAILABLE"


UNAVAILABLE = Unavailable()


@dataclass(frozen=True)
class CounterState:
    """Post-increment state of a fixed-window counter.

    Attributes:
        count: Value after this increment (>= 1).
        reset_at_ms: Epoch milliseconds at which the counter expires.
    """

    count: int
    reset_at_ms: int


class AbstractKVStore(ABC):
    """Backend-neutral surface used by the governance core."""

    def __init__(
        self,
        *,
        domain: str,
        clock: Clock,
        operation_timeout_seconds: float | None = None,
    ) -> None:
        self.domain = domain
        self._clock = clock
        self._operation_timeout = operation_timeout_seconds

    @abstractmethod
    def ready(self) -> bool:
        """Return True when calls are expected to reach the backend."""
        raise NotImplementedError

    async def connect(self) -> bool:
        """Establish the backend connection eagerly; returns readiness."""
        return self.ready()

    async def close(self) -> None:
        return None

    # --- public surface -----------------------------------------------------------

    async def set_with_ttl(self, key: str, value: str, ttl_ms: int) -> bool:
        if len(value.encode()) > MAX_VALUE_BYTES:
            logger.warning(
                "kv.value_too_large",
                extra={"domain": self.domain, "size": len(value.encode()), "max_bytes": MAX_VALUE_BYTES},
            )
            return False
        result = await self._call("set_with_ttl", self._set_with_ttl, key, value, ttl_ms)
        return result is not UNAVAILABLE

    async def get(self, key: str) -> str | None | Unavailable:
        return await self._call("get", self._get, key)

    async def increment_counter(self, key: str, window_ms: int) -> CounterState | Unavailable:
        return await self._call("increment_counter", self._increment_counter, key, window_ms)

    async def increment_float(self, key: str, amount: float, ttl_ms: int) -> bool:
        result = await self._call("increment_float", self._increment_float, key, amount, ttl_ms)
        return result is not UNAVAILABLE

    async def push_bounded_list(self, key: str, item: str, cap: int, ttl_ms: int) -> bool:
        result = await self._call("push_bounded_list", self._push_bounded_list, key, item, cap, ttl_ms)
        return result is not UNAVAILABLE

    async def read_list(self, key: str) -> list[str] | Unavailable:
        return await self._call("read_list", self._read_list, key)

    async def multi_get(self, keys: list[str]) -> list[str | None] | Unavailable:
        if not keys:
            return []
        return await self._call("multi_get", self._multi_get, keys)

    async def scan_prefix(self, prefix: str) -> list[str] | Unavailable:
        return await self._call("scan_prefix", self._scan_prefix, prefix)

    async def ttl_ms(self, key: str) -> int | None | Unavailable:
        """Remaining TTL in milliseconds, or None when the key is absent."""
        return await self._call("ttl_ms", self._ttl_ms, key)

    # --- failure handling ---------------------------------------------------------

    async def _call(self, op: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T | Unavailable:
        if not self.ready():
            logger.debug("kv.not_ready", extra={"domain": self.domain, "op": op})
            return UNAVAILABLE
        try:
            if self._operation_timeout is None:
                result = await fn(*args)
            else:
                result = await asyncio.wait_for(fn(*args), timeout=self._operation_timeout)
        except Exception as exc:
            self._mark_failure(exc)
            logger.warning(
                "kv.unavailable",
                extra={
                    "domain": self.domain,
                    "op": op,
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                },
            )
            return UNAVAILABLE
        self._mark_success()
        return result

    def _mark_success(self) -> None:
        return None

    def _mark_failure(self, exc: Exception) -> None:
        return None

    # --- backend primitives -------------------------------------------------------

    @abstractmethod
    async def _set_with_ttl(self, key: str, value: str, ttl_ms: int) -> None: ...

    @abstractmethod
    async def _get(self, key: str) -> str | None: ...

    @abstractmethod
    async def _increment_counter(self, key: str, window_ms: int) -> CounterState: ...

    @abstractmethod
    async def _increment_float(self, key: str, amount: float, ttl_ms: int) -> None: ...

    @abstractmethod
    async def _push_bounded_list(self, key: str, item: str, cap: int, ttl_ms: int) -> None: ...

    @abstractmethod
    async def _read_list(self, key: str) -> list[str]: ...

    @abstractmethod
    async def _multi_get(self, keys: list[str]) -> list[str | None]: ...

    @abstractmethod
    async def _scan_prefix(self, prefix: str) -> list[str]: ...

    @abstractmethod
    async def _ttl_ms(self, key: str) -> int | None: ...
