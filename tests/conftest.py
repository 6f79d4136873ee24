"""Pytest configuration and fixtures shared across all test modules.

Environment variables are set before any import that might build settings,
so every test runs against the in-process key-value store and a known set
of dashboard API keys.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123,test-api-key-456")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from typing import Any

import pytest

from gatekeeper.adapters.kv import InMemoryKVStore, KVStores
from gatekeeper.core.clock import VirtualClock
from gatekeeper.core.config import AnalyticsSettings
from gatekeeper.schemas.governance import RequestSnapshot
from gatekeeper.services.abuse import AbuseDetector
from gatekeeper.services.adjuster import AdaptiveAdjuster
from gatekeeper.services.analytics import AnalyticsPipeline
from gatekeeper.services.counter import FixedWindowCounter
from gatekeeper.services.governor import RequestGovernor
from gatekeeper.services.outcomes import TransactionOutcomeTracker
from gatekeeper.services.policies import PolicyResolver
from gatekeeper.services.sessions import GamingSessionTracker

START_MS = 1_700_000_000_000


def snapshot(
    path: str = "/api/things",
    method: str = "GET",
    *,
    body: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    query: dict[str, str] | None = None,
    remote_addr: str | None = "10.0.0.1",
    user_id: str | None = None,
    user_roles: tuple[str, ...] = (),
) -> RequestSnapshot:
    return RequestSnapshot(
        method=method,
        path=path,
        remote_addr=remote_addr,
        headers=headers or {},
        query=query or {},
        body=body or {},
        user_id=user_id,
        user_roles=user_roles,
    )


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock(start_ms=START_MS)


@pytest.fixture
def stores(clock: VirtualClock) -> KVStores:
    return KVStores(
        rate_limit=InMemoryKVStore(clock=clock, domain="rate_limit"),
        web3=InMemoryKVStore(clock=clock, domain="web3"),
        analytics=InMemoryKVStore(clock=clock, domain="analytics"),
    )


@pytest.fixture
def analytics_settings() -> AnalyticsSettings:
    return AnalyticsSettings(queue_max=100_000)


def make_governor(
    clock: VirtualClock,
    stores: KVStores,
    analytics_settings: AnalyticsSettings,
    **overrides: Any,
) -> RequestGovernor:
    tracker = TransactionOutcomeTracker(stores.web3, clock)
    options: dict[str, Any] = {
        "clock": clock,
        "resolver": PolicyResolver(),
        "adjuster": AdaptiveAdjuster(tracker),
        "counter": FixedWindowCounter(stores.rate_limit, clock),
        "tracker": tracker,
        "detector": AbuseDetector(clock, threshold=analytics_settings.alert_gaming_abuse_score),
        "sessions": GamingSessionTracker(clock),
        "pipeline": AnalyticsPipeline(stores.analytics, clock, analytics_settings),
        "exempt_paths": ("/health",),
    }
    options.update(overrides)
    return RequestGovernor(**options)


@pytest.fixture
def governor(clock: VirtualClock, stores: KVStores, analytics_settings: AnalyticsSettings) -> RequestGovernor:
    return make_governor(clock, stores, analytics_settings)
