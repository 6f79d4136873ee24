"""Unit tests for request classification and key derivation."""

import pytest

from conftest import snapshot
from gatekeeper.schemas.governance import NetworkTag, OperationClass, PrincipalScope
from gatekeeper.services.classifier import classify, classify_operation, detect_network
from gatekeeper.services.keys import derive_key


@pytest.mark.parametrize(
    ("path", "method", "body", "expected"),
    [
        ("/api/wallet/connect", "POST", {"walletAddress": "W1"}, OperationClass.WALLET_CONNECT),
        ("/api/transaction/submit", "POST", {}, OperationClass.TRANSACTION_SUBMIT),
        ("/api/anything", "POST", {"transactionHash": "0xabc"}, OperationClass.TRANSACTION_SUBMIT),
        ("/api/spl/mint", "POST", {}, OperationClass.SPL_OPERATION),
        ("/api/things", "POST", {"tokenAddress": "T"}, OperationClass.SPL_OPERATION),
        ("/api/burn", "POST", {}, OperationClass.BURN_TO_VOTE),
        ("/api/vote", "POST", {"burnAmount": 5}, OperationClass.BURN_TO_VOTE),
        ("/api/network/check", "GET", {}, OperationClass.NETWORK_VALIDATION),
        ("/api/gas/price", "GET", {}, OperationClass.GAS_ESTIMATION),
        ("/api/fees", "POST", {"gasEstimate": True}, OperationClass.GAS_ESTIMATION),
        ("/api/balance", "GET", {}, OperationClass.BALANCE_READ),
        ("/api/account/info", "GET", {}, OperationClass.BALANCE_READ),
        ("/api/job/status", "GET", {}, OperationClass.TRANSACTION_STATUS),
        ("/api/transaction/123", "GET", {}, OperationClass.TRANSACTION_STATUS),
        ("/api/solana/rpc", "POST", {}, OperationClass.DEFAULT_WEB3),
        ("/api/tournaments/42/join", "POST", {}, OperationClass.TOURNAMENT_ACTION),
        ("/api/clans/7", "GET", {}, OperationClass.GAMING_ACTION),
        ("/api/users/me", "GET", {}, OperationClass.GENERIC),
    ],
)
def test_classification_rules(path: str, method: str, body: dict, expected: OperationClass) -> None:
    assert classify_operation(snapshot(path, method, body=body)) is expected


def test_first_matching_rule_wins() -> None:
    # Matches the transaction rule and the burn rule; transaction is declared first
    request = snapshot("/api/burn", "POST", body={"transactionId": "tx1"})

    assert classify_operation(request) is OperationClass.TRANSACTION_SUBMIT


def test_wallet_in_body_without_wallet_path_is_default_web3() -> None:
    request = snapshot("/api/profile", "POST", body={"walletAddress": "W1"})

    assert classify_operation(request) is OperationClass.DEFAULT_WEB3


def test_path_matching_is_case_insensitive() -> None:
    assert classify_operation(snapshot("/API/BURN", "POST")) is OperationClass.BURN_TO_VOTE


def test_gaming_headers_classify_generic_paths() -> None:
    assert (
        classify_operation(snapshot("/api/play", headers={"X-Tournament-Id": "t1"}))
        is OperationClass.TOURNAMENT_ACTION
    )
    assert (
        classify_operation(snapshot("/api/play", headers={"X-Gaming-Session": "s1"}))
        is OperationClass.GAMING_ACTION
    )


def test_network_detection_precedence() -> None:
    assert detect_network(snapshot(headers={"X-Network-Type": "Devnet"})) is NetworkTag.DEVNET
    assert detect_network(snapshot("/x", "POST", body={"network": "testnet"})) is NetworkTag.TESTNET
    assert (
        detect_network(snapshot("/x", "POST", body={"network": "testnet"}, headers={"X-Network-Type": "devnet"}))
        is NetworkTag.DEVNET
    )
    assert detect_network(snapshot(headers={"X-Network-Type": "moonnet"})) is NetworkTag.MAINNET
    assert detect_network(snapshot()) is NetworkTag.MAINNET


def test_classifier_is_pure() -> None:
    request = snapshot("/api/burn", "POST", body={"burnAmount": 1}, headers={"X-Network-Type": "devnet"})

    assert classify(request) == classify(request)


class TestDeriveKey:
    def test_wallet_precedence_over_user_and_ip(self) -> None:
        request = snapshot("/api/burn", "POST", body={"walletAddress": "W1"}, user_id="u1")
        key = derive_key(request, OperationClass.BURN_TO_VOTE, NetworkTag.MAINNET)

        assert key.scope is PrincipalScope.WALLET
        assert key.canonical == "w:W1|o:burn_to_vote|n:mainnet"
        assert key.storage_key == "rl:wallet:W1:burn_to_vote:mainnet"

    def test_wallet_from_query_then_header(self) -> None:
        from_query = snapshot(query={"walletAddress": "WQ"}, headers={"X-Wallet-Address": "WH"})
        from_header = snapshot(headers={"X-Wallet-Address": "WH"})

        assert derive_key(from_query, OperationClass.GENERIC, NetworkTag.MAINNET).principal == "WQ"
        assert derive_key(from_header, OperationClass.GENERIC, NetworkTag.MAINNET).principal == "WH"

    def test_user_then_ip(self) -> None:
        by_user = derive_key(snapshot(user_id="u1"), OperationClass.GENERIC, NetworkTag.MAINNET)
        by_ip = derive_key(snapshot(remote_addr="1.2.3.4"), OperationClass.GENERIC, NetworkTag.MAINNET)
        unknown = derive_key(snapshot(remote_addr=None), OperationClass.GENERIC, NetworkTag.MAINNET)

        assert by_user.canonical == "u:u1|o:generic|n:mainnet"
        assert by_ip.canonical == "ip:1.2.3.4|o:generic|n:mainnet"
        assert unknown.principal == "unknown"

    def test_header_order_does_not_change_key(self) -> None:
        a = snapshot(headers={"X-Wallet-Address": "W", "User-Agent": "ua", "X-Other": "1"})
        b = snapshot(headers={"X-Other": "1", "User-Agent": "ua", "x-wallet-address": "W"})

        assert derive_key(a, OperationClass.GENERIC, NetworkTag.MAINNET) == derive_key(
            b, OperationClass.GENERIC, NetworkTag.MAINNET
        )
