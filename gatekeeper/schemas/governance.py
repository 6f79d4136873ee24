"""Domain types shared by the governance pipeline stages.

These are plain frozen dataclasses and enums: they travel between stages
inside a single request and are never serialized as API payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class OperationClass(str, Enum):
    """Coarse request category used to select a policy."""

    WALLET_CONNECT = "wallet_connect"
    TRANSACTION_SUBMIT = "transaction_submit"
    SPL_OPERATION = "spl_operation"
    BURN_TO_VOTE = "burn_to_vote"
    NETWORK_VALIDATION = "network_validation"
    GAS_ESTIMATION = "gas_estimation"
    BALANCE_READ = "balance_read"
    TRANSACTION_STATUS = "transaction_status"
    DEFAULT_WEB3 = "default_web3"
    GAMING_ACTION = "gaming_action"
    TOURNAMENT_ACTION = "tournament_action"
    GENERIC = "generic"

    @property
    def is_web3(self) -> bool:
        return self not in _NON_WEB3

    @property
    def is_gaming(self) -> bool:
        return self in (OperationClass.GAMING_ACTION, OperationClass.TOURNAMENT_ACTION)


_NON_WEB3 = frozenset(
    {OperationClass.GENERIC, OperationClass.GAMING_ACTION, OperationClass.TOURNAMENT_ACTION}
)


class NetworkTag(str, Enum):
    MAINNET = "mainnet"
    DEVNET = "devnet"
    TESTNET = "testnet"

    @property
    def is_test_network(self) -> bool:
        return self is not NetworkTag.MAINNET

    @classmethod
    def parse(cls, value: Any) -> "NetworkTag | None":
        """Map a raw header/body value to a tag; None when unrecognised."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class PrincipalScope(str, Enum):
    WALLET = "wallet"
    USER = "user"
    IP = "ip"


_SCOPE_SHORT = {
    PrincipalScope.WALLET: "w",
    PrincipalScope.USER: "u",
    PrincipalScope.IP: "ip",
}


@dataclass(frozen=True)
class Policy:
    """Fixed-window limit for one operation class.

    Attributes:
        window_ms: Window length in milliseconds.
        limit: Maximum admitted requests per window.
        skip_successful: Principals with a recent successful transaction are
            not counted at all.
        skip_failed: Carried for parity with the policy table; no class sets it.
    """

    window_ms: int
    limit: int
    skip_successful: bool = False
    skip_failed: bool = False

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        if self.limit <= 0:
            raise ValueError("limit must be > 0")


@dataclass(frozen=True)
class BucketKey:
    """Identity of one rate-limit bucket.

    Two keys are equal iff scope, principal, operation and network all match.
    """

    scope: PrincipalScope
    principal: str
    operation: OperationClass
    network: NetworkTag

    @property
    def canonical(self) -> str:
        return (
            f"{_SCOPE_SHORT[self.scope]}:{self.principal}"
            f"|o:{self.operation.value}|n:{self.network.value}"
        )

    @property
    def storage_key(self) -> str:
        return f"rl:{self.scope.value}:{self.principal}:{self.operation.value}:{self.network.value}"

    @property
    def trail_key(self) -> str:
        """Principal+operation identity used by the abuse detector."""
        return f"{_SCOPE_SHORT[self.scope]}:{self.principal}|o:{self.operation.value}"


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class RequestSnapshot:
    """Everything the core reads from an inbound request.

    Header names are stored lower-cased; the body is the parsed JSON preview
    (empty when absent, too large or not JSON).
    """

    method: str
    path: str
    remote_addr: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    body: Mapping[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    user_roles: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(
            self, "headers", _freeze({k.lower(): v for k, v in self.headers.items()})
        )
        object.__setattr__(self, "query", _freeze(self.query))
        object.__setattr__(self, "body", _freeze(self.body if isinstance(self.body, Mapping) else {}))
        object.__setattr__(self, "user_roles", tuple(self.user_roles))

    def header(self, name: str) -> str | None:
        value = self.headers.get(name.lower())
        if value is None:
            return None
        value = value.strip()
        return value or None


@dataclass(frozen=True)
class GovernanceContext:
    """Request-scoped record handed from stage to stage.

    Stages never mutate it; they derive a new one with ``dataclasses.replace``.
    """

    request_id: str
    started_at_ms: int
    request: RequestSnapshot
    operation: OperationClass
    network: NetworkTag
    key: BucketKey
    policy: Policy | None = None
    failure_count: int = 0
    recent_success: bool = False

    @property
    def wallet_address(self) -> str | None:
        if self.key.scope is PrincipalScope.WALLET:
            return self.key.principal
        return None
