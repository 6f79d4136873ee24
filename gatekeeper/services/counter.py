"""Fixed-window counter engine.

The first hit in a window creates the counter with a TTL of ``window_ms``;
later hits increment without refreshing it. Because the backend increment is
atomic per key, exactly one request moves a bucket from ``limit`` to
``limit + 1`` and that request is the first rejection.

When the backend cannot be reached the engine fails open (allow, remaining
equals the limit) unless the operation is listed as fail-closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from gatekeeper.adapters.kv.base import UNAVAILABLE, AbstractKVStore
from gatekeeper.core.clock import Clock
from gatekeeper.core.errors import ValidationAppError
from gatekeeper.core.logging import hash_identifier
from gatekeeper.schemas.governance import BucketKey, OperationClass, Policy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of one counter check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Effective limit the request was checked against.
        remaining: Requests left in the current window (never negative).
        reset_at_ms: Epoch milliseconds when the window ends.
        retry_after_ms: Time until a retry can succeed; 0 when allowed.
        count: Post-increment count; 0 when the counter was not touched.
        backend_available: False when the decision was taken without the backend.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_ms: int = 0
    count: int = 0
    backend_available: bool = True


def _operation_class(value: OperationClass | str) -> OperationClass:
    try:
        return OperationClass(value)
    except ValueError:
        raise ValidationAppError(
            code="unknown_operation_class",
            message=f"unknown operation class in fail_closed_operations: {value!r}",
            details={
                "operation_type": str(value),
                "allowed_values": [op.value for op in OperationClass],
                "hint": "Check GOVERNOR_FAIL_CLOSED_OPERATIONS",
            },
        ) from None


class FixedWindowCounter:
    def __init__(
        self,
        store: AbstractKVStore,
        clock: Clock,
        *,
        fail_closed_operations: Iterable[OperationClass | str] = (),
    ) -> None:
        self._store = store
        self._clock = clock
        self._fail_closed = frozenset(_operation_class(op) for op in fail_closed_operations)

    @property
    def fail_closed_operations(self) -> frozenset[OperationClass]:
        return self._fail_closed

    async def admit(self, key: BucketKey, policy: Policy) -> AdmissionDecision:
        """Count one hit against ``key`` and decide admission."""
        if not self._store.ready():
            return self._unavailable(key, policy)

        state = await self._store.increment_counter(key.storage_key, policy.window_ms)
        if state is UNAVAILABLE:
            return self._unavailable(key, policy)

        now = self._clock.now_ms()
        remaining = max(0, policy.limit - state.count)
        if state.count <= policy.limit:
            return AdmissionDecision(
                allowed=True,
                limit=policy.limit,
                remaining=remaining,
                reset_at_ms=state.reset_at_ms,
                count=state.count,
            )

        logger.warning(
            "rate_limit.denied",
            extra={
                "operation_type": key.operation.value,
                "network_type": key.network.value,
                "principal_scope": key.scope.value,
                "principal_hash": hash_identifier(key.principal),
                "limit": policy.limit,
                "window_ms": policy.window_ms,
                "count": state.count,
            },
        )
        return AdmissionDecision(
            allowed=False,
            limit=policy.limit,
            remaining=0,
            reset_at_ms=state.reset_at_ms,
            retry_after_ms=max(0, state.reset_at_ms - now),
            count=state.count,
        )

    def _unavailable(self, key: BucketKey, policy: Policy) -> AdmissionDecision:
        now = self._clock.now_ms()
        if key.operation in self._fail_closed:
            logger.error(
                "rate_limit.fail_closed",
                extra={"operation_type": key.operation.value, "domain": self._store.domain},
            )
            return AdmissionDecision(
                allowed=False,
                limit=policy.limit,
                remaining=0,
                reset_at_ms=now + policy.window_ms,
                retry_after_ms=policy.window_ms,
                backend_available=False,
            )

        logger.warning(
            "rate_limit.fail_open",
            extra={"operation_type": key.operation.value, "domain": self._store.domain},
        )
        return AdmissionDecision(
            allowed=True,
            limit=policy.limit,
            remaining=policy.limit,
            reset_at_ms=now + policy.window_ms,
            backend_available=False,
        )
