"""Bucket key derivation.

A request is governed under exactly one principal, chosen by fixed
precedence: wallet address, then authenticated user id, then remote IP.
"""

from __future__ import annotations

from gatekeeper.schemas.governance import (
    BucketKey,
    NetworkTag,
    OperationClass,
    PrincipalScope,
    RequestSnapshot,
)

UNKNOWN_IP = "unknown"


def _clean(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def wallet_address_of(request: RequestSnapshot) -> str | None:
    """Wallet from body, query string or ``X-Wallet-Address``, in that order."""
    return (
        _clean(request.body.get("walletAddress"))
        or _clean(request.query.get("walletAddress"))
        or request.header("X-Wallet-Address")
    )


def derive_key(request: RequestSnapshot, operation: OperationClass, network: NetworkTag) -> BucketKey:
    """Build the bucket key for a classified request.

    Total over its inputs: header order and unrelated fields do not matter.
    """
    wallet = wallet_address_of(request)
    if wallet:
        return BucketKey(PrincipalScope.WALLET, wallet, operation, network)

    user_id = _clean(request.user_id)
    if user_id:
        return BucketKey(PrincipalScope.USER, user_id, operation, network)

    return BucketKey(PrincipalScope.IP, _clean(request.remote_addr) or UNKNOWN_IP, operation, network)
