"""HTTP middleware: request id correlation and request governance.

Registration order matters: ``request_id_middleware`` must be added last so
it is the outermost layer and the request id is set before governance runs.

Usage:
    app.middleware("http")(governance_middleware)
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import time
from typing import Mapping

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from gatekeeper.core.auth import resolve_identity
from gatekeeper.core.body_preview import read_json_preview
from gatekeeper.core.config import settings
from gatekeeper.core.logging import clear_request_id, get_request_id, set_request_id
from gatekeeper.schemas.governance import RequestSnapshot
from gatekeeper.services.governor import RequestGovernor


async def request_id_middleware(request: Request, call_next) -> Response:
    """Attach a correlation id to the request, the logs and the response.

    An incoming ``X-Request-ID`` (configurable via ``LOG_REQUEST_ID_HEADER``)
    is reused; otherwise the application clock issues a new id. The id is
    stored in contextvars for log correlation and echoed in the response
    together with ``X-Request-Duration-ms``.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or request.app.state.clock.new_request_id()
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response


async def build_snapshot(request: Request) -> RequestSnapshot:
    """Capture what the governance pipeline reads from the request."""
    governor_settings = settings.governor
    user_id, roles = resolve_identity(request, governor_settings)
    return RequestSnapshot(
        method=request.method,
        path=request.url.path,
        remote_addr=request.client.host if request.client else None,
        headers=dict(request.headers),
        query=dict(request.query_params),
        body=await read_json_preview(request, governor_settings.body_preview_max_bytes),
        user_id=user_id,
        user_roles=roles,
    )


async def governance_middleware(request: Request, call_next) -> Response:
    """Admit or reject the request, then run post-response hooks once.

    Rejections are answered here with the structured 429 body. Admitted
    responses are decorated with rate-limit headers. ``complete`` runs on
    every path, including when the downstream handler raises.
    """

    governor: RequestGovernor = request.app.state.governor
    if not governor.enabled or request.url.path in governor.exempt_paths:
        return await call_next(request)

    try:
        snapshot = await build_snapshot(request)
    except Exception as exc:
        governor.record_core_exception(exc, None, get_request_id(), stage="snapshot")
        return await call_next(request)

    verdict = await governor.admit(snapshot, request_id=get_request_id())

    status_code = 500
    response_headers: Mapping[str, str] = {}
    try:
        if verdict.rejection is not None:
            response: Response = JSONResponse(
                status_code=verdict.status_code,
                content=verdict.rejection.model_dump(),
                headers=dict(verdict.headers),
            )
        else:
            response = await call_next(request)
            for name, value in verdict.headers.items():
                response.headers[name] = value
        status_code = response.status_code
        response_headers = response.headers
        return response
    finally:
        await governor.complete(verdict, status_code=status_code, response_headers=response_headers)
