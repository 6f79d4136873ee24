"""Pydantic schemas for analytics events and dashboard responses."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    RATE_LIMIT_HIT = "rate_limit_hit"
    PERFORMANCE_SAMPLE = "performance_sample"
    GAMING_SESSION = "gaming_session"
    TOURNAMENT_METRIC = "tournament_metric"
    COMPETITIVE_EVENT = "competitive_event"
    WEB3_TRANSACTION = "web3_transaction"
    ABUSE_ALERT = "abuse_alert"
    PERFORMANCE_ALERT = "performance_alert"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    SKIP_ADMIN = "skip_admin"
    CORE_EXCEPTION = "core_exception"


class RetentionTier(str, Enum):
    REALTIME = "realtime"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


Severity = Literal["medium", "high"]


class AnalyticsEvent(BaseModel):
    """A single analytics point.

    ``timestamp`` is left at 0 by producers; the pipeline stamps it on emit so
    timestamps are non-decreasing per emitter.
    """

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    endpoint_class: str = Field(..., description="Operation class name or 'unknown'")
    principal: str | None = Field(None, description="Hashed principal identifier")
    status_code: int | None = None
    response_time_ms: float | None = None
    network_tag: str | None = None
    severity: Severity | None = None
    request_id: str | None = None
    timestamp: int = 0
    tags: dict[str, Any] = Field(default_factory=dict)


class SeriesPoint(BaseModel):
    timestamp: int = Field(..., description="Minute start, epoch milliseconds")
    value: float


class TimeRange(BaseModel):
    start: int
    end: int


class AnalyticsSummary(BaseModel):
    """In-process counters that are not persisted."""

    total_requests: int
    total_rate_limits: int
    total_errors: int
    average_response_time_ms: float
    events_by_kind: dict[str, int]
    dropped_events: int
    active_gaming_sessions: int
    tracked_abuse_trails: int
    high_risk_principals: int
    endpoint_breakdown: dict[str, dict[str, float]]


class DashboardResponse(BaseModel):
    """Dashboard read path payload."""

    time_range: TimeRange
    rate_limit_hits: list[SeriesPoint]
    request_count: list[SeriesPoint]
    response_time_sum_ms: list[SeriesPoint]
    gaming_sessions: list[SeriesPoint]
    abuse_alerts: list[SeriesPoint]
    summary: AnalyticsSummary
    backend_available: bool
    generated_at: int
