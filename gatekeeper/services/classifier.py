"""Request classification.

Maps an inbound request to an ``OperationClass`` and a ``NetworkTag``. The
rules are evaluated in declaration order and the first match wins, so a
request matching several rules is resolved deterministically.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from gatekeeper.schemas.governance import NetworkTag, OperationClass, RequestSnapshot

WEB3_PATH_MARKERS = (
    "/web3/",
    "/wallet/",
    "/transaction/",
    "/spl/",
    "/token/",
    "/burn/",
    "/solana/",
    "/blockchain/",
    "/crypto/",
)

WEB3_BODY_INDICATORS = (
    "walletAddress",
    "transactionId",
    "transactionHash",
    "tokenAddress",
    "splOperation",
    "burnAmount",
    "networkValidation",
    "gasEstimate",
)

GAMING_PATH_MARKERS = (
    "/gaming/",
    "/voting/",
    "/clans/",
    "/chat/",
    "/leaderboards/",
    "/competitive/",
)


def _has(body: Mapping[str, Any], field: str) -> bool:
    """Truthy presence, matching how clients omit or null unused fields."""
    return bool(body.get(field))


Rule = tuple[OperationClass, Callable[[str, str, Mapping[str, Any], RequestSnapshot], bool]]

RULES: tuple[Rule, ...] = (
    (
        OperationClass.WALLET_CONNECT,
        lambda path, method, body, req: _has(body, "walletAddress") and "/wallet/" in path,
    ),
    (
        OperationClass.TRANSACTION_SUBMIT,
        lambda path, method, body, req: (method == "POST" and "/transaction" in path)
        or _has(body, "transactionId")
        or _has(body, "transactionHash"),
    ),
    (
        OperationClass.SPL_OPERATION,
        lambda path, method, body, req: "/spl/" in path
        or "/token/" in path
        or _has(body, "tokenAddress")
        or _has(body, "splOperation"),
    ),
    (
        OperationClass.BURN_TO_VOTE,
        lambda path, method, body, req: "/burn" in path
        or ("/vote" in path and _has(body, "burnAmount")),
    ),
    (
        OperationClass.NETWORK_VALIDATION,
        lambda path, method, body, req: "/validate" in path
        or "/network" in path
        or _has(body, "networkValidation"),
    ),
    (
        OperationClass.GAS_ESTIMATION,
        lambda path, method, body, req: "/gas" in path or "/estimate" in path or _has(body, "gasEstimate"),
    ),
    (
        OperationClass.BALANCE_READ,
        lambda path, method, body, req: "/balance" in path or (method == "GET" and "/account" in path),
    ),
    (
        OperationClass.TRANSACTION_STATUS,
        lambda path, method, body, req: "/status" in path or (method == "GET" and "/transaction" in path),
    ),
    (
        OperationClass.DEFAULT_WEB3,
        lambda path, method, body, req: any(marker in path for marker in WEB3_PATH_MARKERS)
        or any(_has(body, field) for field in WEB3_BODY_INDICATORS),
    ),
    (
        OperationClass.TOURNAMENT_ACTION,
        lambda path, method, body, req: "/tournaments/" in path or req.header("X-Tournament-Id") is not None,
    ),
    (
        OperationClass.GAMING_ACTION,
        lambda path, method, body, req: any(marker in path for marker in GAMING_PATH_MARKERS)
        or req.header("X-Gaming-Session") is not None,
    ),
)


def classify_operation(request: RequestSnapshot) -> OperationClass:
    """Return the operation class of ``request``.

    Pure: the same snapshot always yields the same class.
    """
    path = request.path.lower()
    method = request.method
    body = request.body
    for operation, matches in RULES:
        if matches(path, method, body, request):
            return operation
    return OperationClass.GENERIC


def detect_network(request: RequestSnapshot) -> NetworkTag:
    """Header ``X-Network-Type``, then body ``network``, else mainnet."""
    for candidate in (request.header("X-Network-Type"), request.body.get("network")):
        tag = NetworkTag.parse(candidate)
        if tag is not None:
            return tag
    return NetworkTag.MAINNET


def classify(request: RequestSnapshot) -> tuple[OperationClass, NetworkTag]:
    return classify_operation(request), detect_network(request)
