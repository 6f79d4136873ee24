"""Factory for the per-domain key-value stores."""

from __future__ import annotations

from dataclasses import dataclass

from gatekeeper.adapters.kv.base import AbstractKVStore
from gatekeeper.adapters.kv.in_memory import InMemoryKVStore
from gatekeeper.adapters.kv.redis_store import RedisKVStore
from gatekeeper.core.clock import Clock
from gatekeeper.core.config import RedisSettings


@dataclass(frozen=True)
class KVStores:
    """One store per analytics domain."""

    rate_limit: AbstractKVStore
    web3: AbstractKVStore
    analytics: AbstractKVStore

    def all(self) -> tuple[AbstractKVStore, ...]:
        return (self.rate_limit, self.web3, self.analytics)


def create_kv_store(domain: str, db: int, *, clock: Clock, redis_settings: RedisSettings) -> AbstractKVStore:
    """Instantiate the store for one domain.

    Args:
        domain: Name used in logs and health output.
        db: Logical Redis database for the domain.
        clock: Shared time source.
        redis_settings: Backend configuration.

    Returns:
        AbstractKVStore: Redis store, or an in-process store when Redis is disabled.
    """
    if not redis_settings.enabled:
        return InMemoryKVStore(clock=clock, domain=domain)

    return RedisKVStore(
        url=redis_settings.url,
        db=db,
        domain=domain,
        clock=clock,
        connect_timeout_seconds=redis_settings.connect_timeout_seconds,
        operation_timeout_seconds=redis_settings.operation_timeout_seconds,
        reconnect_backoff_seconds=redis_settings.reconnect_backoff_seconds,
    )


def build_kv_stores(*, clock: Clock, redis_settings: RedisSettings) -> KVStores:
    return KVStores(
        rate_limit=create_kv_store(
            "rate_limit", redis_settings.rate_limit_db, clock=clock, redis_settings=redis_settings
        ),
        web3=create_kv_store("web3", redis_settings.web3_db, clock=clock, redis_settings=redis_settings),
        analytics=create_kv_store(
            "analytics", redis_settings.analytics_db, clock=clock, redis_settings=redis_settings
        ),
    )
