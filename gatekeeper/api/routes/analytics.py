from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from gatekeeper.core.auth import verify_api_key
from gatekeeper.schemas.analytics import DashboardResponse

router = APIRouter(tags=["Analytics"])


@router.get(
    "/analytics/dashboard",
    response_model=DashboardResponse,
    dependencies=[Depends(verify_api_key)],
)
async def analytics_dashboard(
    request: Request,
    time_range: int | None = Query(
        None,
        alias="timeRange",
        gt=0,
        description="Look-back window in milliseconds (default one hour, capped at hourly retention)",
    ),
) -> DashboardResponse:
    """Per-minute rate-limit, request, latency, session and abuse series.

    Series read from a key-value backend that is down come back empty with
    ``backend_available`` set to false; the in-process summary is always
    present.
    """
    return await request.app.state.dashboard.build(time_range)
