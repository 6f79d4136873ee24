"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers and the
governance pipeline) so tests can build isolated apps with their own clock
and stores.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gatekeeper.adapters.kv import KVStores, build_kv_stores
from gatekeeper.api.routes import analytics_router, health_router
from gatekeeper.core.clock import Clock, SystemClock
from gatekeeper.core.config import settings
from gatekeeper.core.exception_handlers import setup_exception_handlers
from gatekeeper.core.logging import configure_logging
from gatekeeper.core.middleware import governance_middleware, request_id_middleware
from gatekeeper.core.openapi import apply_openapi_customizations
from gatekeeper.services.governor import build_governor

logger = logging.getLogger(__name__)


def create_app(*, clock: Clock | None = None, stores: KVStores | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        clock: Time source; the system clock by default.
        stores: Per-domain key-value stores; built from settings by default.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    clock = clock or SystemClock()
    stores = stores or build_kv_stores(clock=clock, redis_settings=settings.redis)
    governor, dashboard = build_governor(settings, clock, stores)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for store in stores.all():
            await store.connect()
        await governor.pipeline.start()
        logger.info(
            "app.started",
            extra={"app_env": settings.app_env, "redis_enabled": settings.redis.enabled},
        )
        try:
            yield
        finally:
            await governor.pipeline.stop()
            for store in stores.all():
                await store.close()
            logger.info("app.stopped")

    app = FastAPI(
        title="Gatekeeper",
        description=(
            "Request governance layer: classifies inbound requests, applies "
            "adaptive fixed-window rate limits per wallet, user or IP, tracks "
            "Web3 transaction outcomes, detects abusive request patterns and "
            "records gaming analytics."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )
    app.state.clock = clock
    app.state.stores = stores
    app.state.governor = governor
    app.state.dashboard = dashboard

    # Middleware: the last one added runs first
    app.middleware("http")(governance_middleware)
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(analytics_router, prefix="/v1")
    app.include_router(health_router)

    # OpenAPI customizations (security scheme, tags)
    apply_openapi_customizations(app)

    return app
