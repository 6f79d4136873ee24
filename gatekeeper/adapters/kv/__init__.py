"""Key-value store adapters.

The governance core talks to a small explicit surface (counters with TTL,
capped lists, TTL'd values, prefix scans) so the backend can be Redis or an
in-process store without changing any service.
"""

from gatekeeper.adapters.kv.base import UNAVAILABLE, AbstractKVStore, CounterState, Unavailable
from gatekeeper.adapters.kv.factory import KVStores, build_kv_stores, create_kv_store
from gatekeeper.adapters.kv.in_memory import InMemoryKVStore
from gatekeeper.adapters.kv.redis_store import RedisKVStore

__all__ = [
    "UNAVAILABLE",
    "AbstractKVStore",
    "CounterState",
    "InMemoryKVStore",
    "KVStores",
    "RedisKVStore",
    "Unavailable",
    "build_kv_stores",
    "create_kv_store",
]
