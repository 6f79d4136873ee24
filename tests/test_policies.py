"""Unit tests for the policy table, resolver and adaptive adjuster."""

import asyncio
import logging

import pytest

from conftest import snapshot
from gatekeeper.core.errors import PolicyMissingError
from gatekeeper.schemas.governance import (
    GovernanceContext,
    NetworkTag,
    OperationClass,
    Policy,
)
from gatekeeper.services.adjuster import AdaptiveAdjuster, adjust_policy, skips_counting
from gatekeeper.services.keys import derive_key
from gatekeeper.services.outcomes import TransactionOutcomeTracker
from gatekeeper.services.policies import (
    CANONICAL_POLICIES,
    PolicyResolver,
    rejection_code,
    rejection_message,
    rejection_title,
)


def test_every_operation_class_has_a_policy() -> None:
    assert set(CANONICAL_POLICIES) == set(OperationClass)


def test_canonical_values() -> None:
    assert CANONICAL_POLICIES[OperationClass.BURN_TO_VOTE] == Policy(window_ms=60_000, limit=3)
    assert CANONICAL_POLICIES[OperationClass.WALLET_CONNECT] == Policy(
        window_ms=300_000, limit=10, skip_successful=True
    )
    assert CANONICAL_POLICIES[OperationClass.GENERIC] == Policy(window_ms=900_000, limit=1_000)


def test_table_is_read_only() -> None:
    with pytest.raises(TypeError):
        CANONICAL_POLICIES[OperationClass.GENERIC] = Policy(window_ms=1, limit=1)  # type: ignore[index]


def test_missing_policy_falls_back_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    resolver = PolicyResolver({OperationClass.DEFAULT_WEB3: Policy(window_ms=60_000, limit=5)})

    with caplog.at_level(logging.WARNING, logger="gatekeeper.services.policies"):
        policy = resolver.resolve(OperationClass.GAS_ESTIMATION)

    assert policy == Policy(window_ms=60_000, limit=5)
    assert "policy.missing" in caplog.text


def test_table_without_fallback_is_rejected() -> None:
    with pytest.raises(PolicyMissingError):
        PolicyResolver({OperationClass.GENERIC: Policy(window_ms=1_000, limit=1)})


@pytest.mark.parametrize(
    ("operation", "code"),
    [
        (OperationClass.BURN_TO_VOTE, "WEB3_RATE_LIMITED_BURN_TO_VOTE"),
        (OperationClass.TOURNAMENT_ACTION, "GAMING_RATE_LIMITED_TOURNAMENT_ACTION"),
        (OperationClass.GENERIC, "RATE_LIMITED_GENERIC"),
    ],
)
def test_rejection_codes(operation: OperationClass, code: str) -> None:
    assert rejection_code(operation) == code


@pytest.mark.parametrize(
    ("operation", "title"),
    [
        (OperationClass.WALLET_CONNECT, "Web3 operation rate limit exceeded"),
        (OperationClass.GAMING_ACTION, "Gaming operation rate limit exceeded"),
        (OperationClass.GENERIC, "Rate limit exceeded"),
    ],
)
def test_rejection_titles(operation: OperationClass, title: str) -> None:
    assert rejection_title(operation) == title


def test_rejection_message_falls_back_to_a_generic_text() -> None:
    assert rejection_message(OperationClass.GENERIC, "mainnet") == (
        "Rate limit exceeded for generic operations on mainnet. Please wait before trying again."
    )
    assert rejection_message(OperationClass.BURN_TO_VOTE, "mainnet").startswith("Burn-to-vote")


class TestAdjustPolicy:
    base = Policy(window_ms=60_000, limit=5)

    def test_many_failures_halve_limit_and_double_window(self) -> None:
        adjusted = adjust_policy(self.base, failure_count=11, recent_success=False, network=NetworkTag.MAINNET)

        assert adjusted.limit == 2
        assert adjusted.window_ms == 120_000

    def test_limit_never_drops_below_one(self) -> None:
        adjusted = adjust_policy(
            Policy(window_ms=1_000, limit=1), failure_count=50, recent_success=False, network=NetworkTag.MAINNET
        )

        assert adjusted.limit == 1

    def test_recent_success_without_failures_raises_limit(self) -> None:
        adjusted = adjust_policy(self.base, failure_count=0, recent_success=True, network=NetworkTag.MAINNET)

        assert adjusted.limit == 7
        assert adjusted.window_ms == 60_000

    def test_test_networks_double_limit_only(self) -> None:
        for network in (NetworkTag.DEVNET, NetworkTag.TESTNET):
            adjusted = adjust_policy(self.base, failure_count=0, recent_success=False, network=network)
            assert adjusted.limit == 10
            assert adjusted.window_ms == 60_000

    def test_rules_compose(self) -> None:
        adjusted = adjust_policy(self.base, failure_count=6, recent_success=True, network=NetworkTag.DEVNET)

        assert adjusted.limit == 4
        assert adjusted.window_ms == 120_000

    @pytest.mark.parametrize("operation", list(OperationClass))
    @pytest.mark.parametrize("recent_success", [True, False])
    @pytest.mark.parametrize("network", list(NetworkTag))
    def test_fewer_failures_never_lower_the_limit(
        self, operation: OperationClass, recent_success: bool, network: NetworkTag
    ) -> None:
        policy = CANONICAL_POLICIES[operation]
        limits = [
            adjust_policy(policy, failure_count=n, recent_success=recent_success, network=network).limit
            for n in range(0, 15)
        ]

        assert limits == sorted(limits, reverse=True)
        assert min(limits) >= 1


def test_skip_successful_short_circuit() -> None:
    skip_policy = Policy(window_ms=1_000, limit=1, skip_successful=True)

    assert skips_counting(skip_policy, recent_success=True) is True
    assert skips_counting(skip_policy, recent_success=False) is False
    assert skips_counting(Policy(window_ms=1_000, limit=1), recent_success=True) is False


def _context(request, operation: OperationClass, network: NetworkTag = NetworkTag.MAINNET) -> GovernanceContext:
    return GovernanceContext(
        request_id="req-1",
        started_at_ms=0,
        request=request,
        operation=operation,
        network=network,
        key=derive_key(request, operation, network),
        policy=CANONICAL_POLICIES[operation],
    )


def test_adjuster_reads_wallet_history(clock, stores) -> None:
    tracker = TransactionOutcomeTracker(stores.web3, clock)
    for _ in range(7):
        asyncio.run(tracker.record_failure("W2", OperationClass.TRANSACTION_SUBMIT, reason="http_500"))
    adjuster = AdaptiveAdjuster(tracker)
    request = snapshot("/api/transaction", "POST", body={"walletAddress": "W2"})

    ctx = asyncio.run(adjuster.apply(_context(request, OperationClass.TRANSACTION_SUBMIT)))

    assert ctx.failure_count == 7
    assert ctx.policy == Policy(window_ms=120_000, limit=2)


def test_adjuster_ignores_history_for_ip_principals(clock, stores) -> None:
    adjuster = AdaptiveAdjuster(TransactionOutcomeTracker(stores.web3, clock))
    request = snapshot("/api/transaction", "POST", headers={"X-Network-Type": "devnet"})

    ctx = asyncio.run(adjuster.apply(_context(request, OperationClass.TRANSACTION_SUBMIT, NetworkTag.DEVNET)))

    assert ctx.failure_count == 0
    assert ctx.recent_success is False
    assert ctx.policy.limit == 10


def test_adjuster_treats_unavailable_history_as_empty(clock, stores) -> None:
    stores.web3.set_available(False)
    adjuster = AdaptiveAdjuster(TransactionOutcomeTracker(stores.web3, clock))
    request = snapshot("/api/burn", "POST", body={"walletAddress": "W1"})

    ctx = asyncio.run(adjuster.apply(_context(request, OperationClass.BURN_TO_VOTE)))

    assert ctx.policy == CANONICAL_POLICIES[OperationClass.BURN_TO_VOTE]
