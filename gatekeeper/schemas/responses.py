"""Pydantic schemas for responses produced by the governance layer."""

from pydantic import BaseModel, Field


class Web3Context(BaseModel):
    operation_type: str
    network_type: str
    wallet_connected: bool


class RateLimitRejection(BaseModel):
    """Body of a 429 response.

    ``code`` is stable per operation class so clients can branch on it.
    """

    error: str = Field(..., description="Short error title.")
    code: str = Field(..., description="Stable machine-readable code, e.g. WEB3_RATE_LIMITED_BURN_TO_VOTE.")
    operationType: str
    networkType: str
    retryAfter: int = Field(..., ge=0, description="Seconds until the client may retry.")
    message: str
    web3_context: Web3Context


class DomainHealth(BaseModel):
    domain: str
    ready: bool


class HealthResponse(BaseModel):
    status: str = Field(..., description="'ok' or 'degraded' when any domain is not ready.")
    domains: list[DomainHealth]
