from __future__ import annotations

from gatekeeper.api.routes.analytics import router as analytics_router
from gatekeeper.api.routes.health import router as health_router

__all__ = ["analytics_router", "health_router"]
