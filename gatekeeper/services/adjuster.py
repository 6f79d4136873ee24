"""Adaptive policy adjustment.

Rules are applied independently and composed in a fixed order:

- more than 5 failures in the last hour: halve the limit (never below 1)
  and double the window;
- no failures and a recent success: raise the limit by half;
- devnet or testnet: double the limit; the window is unchanged.

Fewer failures never produce a lower limit.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace

from gatekeeper.core.logging import hash_identifier
from gatekeeper.schemas.governance import GovernanceContext, NetworkTag, Policy
from gatekeeper.services.outcomes import TransactionOutcomeTracker

logger = logging.getLogger(__name__)

FAILURE_PENALTY_THRESHOLD = 5


def adjust_policy(
    policy: Policy,
    *,
    failure_count: int,
    recent_success: bool,
    network: NetworkTag,
) -> Policy:
    limit = policy.limit
    window_ms = policy.window_ms

    if failure_count > FAILURE_PENALTY_THRESHOLD:
        limit = max(1, math.floor(limit * 0.5))
        window_ms = window_ms * 2
    elif failure_count == 0 and recent_success:
        limit = math.floor(limit * 1.5)

    if network.is_test_network:
        limit = limit * 2

    return replace(policy, limit=max(1, limit), window_ms=window_ms)


def skips_counting(policy: Policy, recent_success: bool) -> bool:
    """True when the request is allowed without touching the counter."""
    return policy.skip_successful and recent_success


class AdaptiveAdjuster:
    """Loads outcome history for wallet principals and adjusts the policy.

    Non-wallet principals have no transaction history; only the network rule
    applies to them.
    """

    def __init__(self, tracker: TransactionOutcomeTracker) -> None:
        self._tracker = tracker

    async def apply(self, ctx: GovernanceContext) -> GovernanceContext:
        if ctx.policy is None:
            raise ValueError("policy must be resolved before adjustment")

        failure_count = 0
        recent_success = False
        wallet = ctx.wallet_address
        if wallet and ctx.operation.is_web3:
            history = await self._tracker.history(wallet, ctx.operation)
            failure_count = history.failure_count
            recent_success = history.recent_success

        effective = adjust_policy(
            ctx.policy,
            failure_count=failure_count,
            recent_success=recent_success,
            network=ctx.network,
        )
        if effective != ctx.policy:
            logger.debug(
                "policy.adjusted",
                extra={
                    "operation_type": ctx.operation.value,
                    "principal_hash": hash_identifier(ctx.key.principal),
                    "limit": effective.limit,
                    "window_ms": effective.window_ms,
                    "failure_count": failure_count,
                },
            )
        return replace(
            ctx,
            policy=effective,
            failure_count=failure_count,
            recent_success=recent_success,
        )
