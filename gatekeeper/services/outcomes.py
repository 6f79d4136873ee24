"""Web3 transaction outcome tracking.

Failures are kept in a capped list per ``(wallet, operation)`` and successes
as individual TTL'd markers. Both live in the ``web3`` key-value domain and
feed the adaptive adjuster.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from gatekeeper.adapters.kv.base import UNAVAILABLE, AbstractKVStore
from gatekeeper.core.clock import Clock
from gatekeeper.core.logging import hash_identifier
from gatekeeper.schemas.governance import OperationClass

logger = logging.getLogger(__name__)

FAILURE_LIST_CAP = 100
FAILURE_TTL_MS = 3_600_000
FAILURE_LOOKBACK_MS = 3_600_000
SUCCESS_TTL_MS = 300_000
SUCCESS_LOOKBACK_MS = 300_000


def failure_key(wallet: str, operation: OperationClass) -> str:
    return f"web3_failures:{wallet}:{operation.value}"


def success_prefix(wallet: str, operation: OperationClass) -> str:
    return f"web3_success:{wallet}:{operation.value}:"


@dataclass(frozen=True)
class OutcomeHistory:
    """What the adjuster needs to know about a wallet's recent outcomes.

    ``available`` is False when the backend could not be read; the counts are
    then the empty defaults.
    """

    failure_count: int = 0
    recent_success: bool = False
    available: bool = True


class TransactionOutcomeTracker:
    """Records and reads Web3 transaction outcomes per wallet and operation."""

    def __init__(self, store: AbstractKVStore, clock: Clock) -> None:
        self._store = store
        self._clock = clock

    async def record_failure(
        self,
        wallet: str,
        operation: OperationClass,
        *,
        reason: str,
        status_code: int | None = None,
    ) -> bool:
        record = json.dumps(
            {
                "timestamp": self._clock.now_ms(),
                "reason": reason,
                "statusCode": status_code,
                "operationType": operation.value,
            },
            separators=(",", ":"),
        )
        stored = await self._store.push_bounded_list(
            failure_key(wallet, operation), record, FAILURE_LIST_CAP, FAILURE_TTL_MS
        )
        logger.info(
            "web3.failure_recorded",
            extra={
                "principal_hash": hash_identifier(wallet),
                "operation_type": operation.value,
                "reason": reason,
                "stored": stored,
            },
        )
        return stored

    async def record_success(self, wallet: str, operation: OperationClass, transaction_id: str) -> bool:
        now = self._clock.now_ms()
        record = json.dumps(
            {"timestamp": now, "transactionId": transaction_id, "operationType": operation.value},
            separators=(",", ":"),
        )
        stored = await self._store.set_with_ttl(
            success_prefix(wallet, operation) + transaction_id, record, SUCCESS_TTL_MS
        )
        logger.debug(
            "web3.success_recorded",
            extra={"principal_hash": hash_identifier(wallet), "operation_type": operation.value},
        )
        return stored

    async def failure_count(self, wallet: str, operation: OperationClass) -> int | None:
        """Failures in the last hour, or None when the backend is unavailable."""
        items = await self._store.read_list(failure_key(wallet, operation))
        if items is UNAVAILABLE:
            return None

        cutoff = self._clock.now_ms() - FAILURE_LOOKBACK_MS
        count = 0
        for raw in items[:FAILURE_LIST_CAP]:
            timestamp = _timestamp_of(raw)
            if timestamp is not None and timestamp > cutoff:
                count += 1
        return count

    async def has_recent_success(self, wallet: str, operation: OperationClass) -> bool | None:
        keys = await self._store.scan_prefix(success_prefix(wallet, operation))
        if keys is UNAVAILABLE:
            return None
        if not keys:
            return False

        values = await self._store.multi_get(keys)
        if values is UNAVAILABLE:
            return None

        cutoff = self._clock.now_ms() - SUCCESS_LOOKBACK_MS
        for raw in values:
            timestamp = _timestamp_of(raw)
            if timestamp is not None and timestamp > cutoff:
                return True
        return False

    async def history(self, wallet: str, operation: OperationClass) -> OutcomeHistory:
        failures = await self.failure_count(wallet, operation)
        recent = await self.has_recent_success(wallet, operation)
        return OutcomeHistory(
            failure_count=failures or 0,
            recent_success=bool(recent),
            available=failures is not None and recent is not None,
        )


def _timestamp_of(raw: str | None) -> int | None:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    timestamp = payload.get("timestamp") if isinstance(payload, dict) else None
    return timestamp if isinstance(timestamp, int) else None
