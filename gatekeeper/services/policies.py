"""Canonical policy table and resolver."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Mapping

from gatekeeper.core.errors import PolicyMissingError
from gatekeeper.schemas.governance import OperationClass, Policy

logger = logging.getLogger(__name__)

FALLBACK_OPERATION = OperationClass.DEFAULT_WEB3

CANONICAL_POLICIES: Mapping[OperationClass, Policy] = MappingProxyType(
    {
        OperationClass.WALLET_CONNECT: Policy(window_ms=300_000, limit=10, skip_successful=True),
        OperationClass.TRANSACTION_SUBMIT: Policy(window_ms=60_000, limit=5),
        OperationClass.SPL_OPERATION: Policy(window_ms=120_000, limit=8),
        OperationClass.BURN_TO_VOTE: Policy(window_ms=60_000, limit=3),
        OperationClass.NETWORK_VALIDATION: Policy(window_ms=30_000, limit=20, skip_successful=True),
        OperationClass.GAS_ESTIMATION: Policy(window_ms=15_000, limit=30, skip_successful=True),
        OperationClass.BALANCE_READ: Policy(window_ms=10_000, limit=50, skip_successful=True),
        OperationClass.TRANSACTION_STATUS: Policy(window_ms=5_000, limit=100, skip_successful=True),
        OperationClass.DEFAULT_WEB3: Policy(window_ms=60_000, limit=5),
        OperationClass.GAMING_ACTION: Policy(window_ms=60_000, limit=200),
        OperationClass.TOURNAMENT_ACTION: Policy(window_ms=60_000, limit=40),
        OperationClass.GENERIC: Policy(window_ms=900_000, limit=1_000),
    }
)

REJECTION_MESSAGES: Mapping[OperationClass, str] = MappingProxyType(
    {
        OperationClass.WALLET_CONNECT: "Wallet connection rate limit exceeded. Please wait before attempting to connect again.",
        OperationClass.TRANSACTION_SUBMIT: "Transaction submission rate limit exceeded. Please wait before submitting another transaction.",
        OperationClass.SPL_OPERATION: "SPL token operation rate limit exceeded. Please wait before performing another token operation.",
        OperationClass.BURN_TO_VOTE: "Burn-to-vote rate limit exceeded. Please wait before burning tokens for votes again.",
        OperationClass.NETWORK_VALIDATION: "Network validation rate limit exceeded. Please reduce validation frequency.",
        OperationClass.GAS_ESTIMATION: "Gas estimation rate limit exceeded. Please reduce estimation requests.",
        OperationClass.BALANCE_READ: "Balance check rate limit exceeded. Please reduce balance query frequency.",
        OperationClass.TRANSACTION_STATUS: "Transaction status check rate limit exceeded. Please reduce status query frequency.",
        OperationClass.GAMING_ACTION: "Gaming rate limit exceeded. Please wait before trying again.",
        OperationClass.TOURNAMENT_ACTION: "Tournament operation rate limit exceeded. Please wait before interacting with tournaments again.",
    }
)


def rejection_code(operation: OperationClass) -> str:
    """Stable client-facing code for a rejected request of ``operation``."""
    if operation.is_web3:
        return f"WEB3_RATE_LIMITED_{operation.value.upper()}"
    if operation.is_gaming:
        return f"GAMING_RATE_LIMITED_{operation.value.upper()}"
    return "RATE_LIMITED_GENERIC"


def rejection_title(operation: OperationClass) -> str:
    if operation.is_web3:
        return "Web3 operation rate limit exceeded"
    if operation.is_gaming:
        return "Gaming operation rate limit exceeded"
    return "Rate limit exceeded"


def rejection_message(operation: OperationClass, network: str) -> str:
    return REJECTION_MESSAGES.get(
        operation,
        f"Rate limit exceeded for {operation.value} operations on {network}. "
        "Please wait before trying again.",
    )


class PolicyResolver:
    """Looks up the canonical policy of an operation class.

    Stateless: it never reads the key-value store. A class missing from the
    table falls back to the ``default_web3`` policy with a warning.
    """

    def __init__(self, table: Mapping[OperationClass, Policy] = CANONICAL_POLICIES) -> None:
        if FALLBACK_OPERATION not in table:
            raise PolicyMissingError(
                code="policy_missing",
                message="policy table must define the default_web3 fallback",
                details={"operation_type": FALLBACK_OPERATION.value},
            )
        self._table = MappingProxyType(dict(table))

    def resolve(self, operation: OperationClass) -> Policy:
        policy = self._table.get(operation)
        if policy is not None:
            return policy

        logger.warning(
            "policy.missing",
            extra={"operation_type": operation.value, "fallback": FALLBACK_OPERATION.value},
        )
        return self._table[FALLBACK_OPERATION]
