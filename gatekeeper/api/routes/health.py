from __future__ import annotations

from fastapi import APIRouter, Request

from gatekeeper.schemas.responses import DomainHealth, HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request) -> HealthResponse:
    """Health check endpoint.

    Used by load balancers and monitoring systems. The service is always
    reachable while the process runs (governance fails open), so a domain
    that is not ready reports ``degraded`` rather than an error status.

    Returns:
        HealthResponse: Overall status plus readiness per key-value domain.
    """

    domains = [
        DomainHealth(domain=store.domain, ready=store.ready())
        for store in request.app.state.stores.all()
    ]
    status = "ok" if all(d.ready for d in domains) else "degraded"
    return HealthResponse(status=status, domains=domains)
