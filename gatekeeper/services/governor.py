"""Request governance pipeline.

``admit`` runs before the downstream handler:
classify, derive key, resolve policy, adjust, count, decorate.

``complete`` runs exactly once after the response is known, whichever path
the request took: performance sample, outcome tracking, abuse detection and
header-driven gaming/tournament/Web3 events.

Neither method raises. An unexpected error inside the pipeline is logged,
recorded as a ``core_exception`` event, and the request is let through.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from gatekeeper.adapters.kv.factory import KVStores
from gatekeeper.core.clock import Clock
from gatekeeper.core.config import Settings
from gatekeeper.core.logging import hash_identifier
from gatekeeper.schemas.analytics import AnalyticsEvent, EventKind
from gatekeeper.schemas.governance import GovernanceContext, RequestSnapshot
from gatekeeper.schemas.responses import RateLimitRejection, Web3Context
from gatekeeper.services.abuse import AbuseDetector
from gatekeeper.services.adjuster import AdaptiveAdjuster, skips_counting
from gatekeeper.services.analytics import AnalyticsDashboard, AnalyticsPipeline
from gatekeeper.services.classifier import classify
from gatekeeper.services.counter import AdmissionDecision, FixedWindowCounter
from gatekeeper.services.keys import derive_key
from gatekeeper.services.outcomes import TransactionOutcomeTracker
from gatekeeper.services.policies import (
    PolicyResolver,
    rejection_code,
    rejection_message,
    rejection_title,
)
from gatekeeper.services.sessions import GamingSessionTracker

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Verdict:
    """What ``admit`` decided.

    Attributes:
        context: Request-scoped record; None when governance did not run.
        decision: Counter decision, when the counter was consulted.
        headers: Headers to add to the final response.
        rejection: Body of the final response when the request is rejected.
        status_code: Status of the rejection response.
        skipped: Why the counter was bypassed (``exempt``, ``admin``,
            ``recent_success``, ``error``), if it was.
    """

    context: GovernanceContext | None
    decision: AdmissionDecision | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    rejection: RateLimitRejection | None = None
    status_code: int = 200
    skipped: str | None = None

    @property
    def rejected(self) -> bool:
        return self.rejection is not None


class RequestGovernor:
    def __init__(
        self,
        *,
        clock: Clock,
        resolver: PolicyResolver,
        adjuster: AdaptiveAdjuster,
        counter: FixedWindowCounter,
        tracker: TransactionOutcomeTracker,
        detector: AbuseDetector,
        sessions: GamingSessionTracker,
        pipeline: AnalyticsPipeline,
        development: bool = False,
        exempt_paths: tuple[str, ...] = (),
        extended_failure_threshold: int = 10,
        enabled: bool = True,
    ) -> None:
        self.clock = clock
        self.resolver = resolver
        self.adjuster = adjuster
        self.counter = counter
        self.tracker = tracker
        self.detector = detector
        self.sessions = sessions
        self.pipeline = pipeline
        self.development = development
        self.exempt_paths = frozenset(exempt_paths)
        self.extended_failure_threshold = extended_failure_threshold
        self.enabled = enabled

    # --- pre-handler --------------------------------------------------------------

    async def admit(self, request: RequestSnapshot, request_id: str | None = None) -> Verdict:
        if not self.enabled or request.path in self.exempt_paths:
            return Verdict(context=None, skipped="exempt")

        request_id = request_id or self.clock.new_request_id()
        ctx: GovernanceContext | None = None
        try:
            operation, network = classify(request)
            ctx = GovernanceContext(
                request_id=request_id,
                started_at_ms=self.clock.now_ms(),
                request=request,
                operation=operation,
                network=network,
                key=derive_key(request, operation, network),
            )
            ctx = replace(ctx, policy=self.resolver.resolve(operation))

            if self.development and ADMIN_ROLE in request.user_roles:
                self._emit(EventKind.SKIP_ADMIN, ctx)
                logger.debug("rate_limit.skip_admin", extra={"operation_type": operation.value})
                return Verdict(context=ctx, skipped="admin")

            ctx = await self.adjuster.apply(ctx)
            if skips_counting(ctx.policy, ctx.recent_success):
                return Verdict(context=ctx, headers=self._type_headers(ctx), skipped="recent_success")

            decision = await self.counter.admit(ctx.key, ctx.policy)
            if not decision.backend_available:
                self._emit(
                    EventKind.BACKEND_UNAVAILABLE,
                    ctx,
                    tags={"domain": "rate_limit", "fail_closed": not decision.allowed},
                )

            if decision.allowed:
                return Verdict(context=ctx, decision=decision, headers=self._admission_headers(ctx, decision))

            return self._reject(ctx, decision)
        except Exception as exc:
            self.record_core_exception(exc, ctx, request_id, stage="admit")
            return Verdict(context=ctx, skipped="error")

    def _type_headers(self, ctx: GovernanceContext) -> dict[str, str]:
        headers = {"X-RateLimit-Type": ctx.operation.value}
        if ctx.operation.is_web3:
            headers["X-Web3-Rate-Limit"] = "true"
            headers["X-Web3-Network"] = ctx.network.value
        return headers

    def _admission_headers(self, ctx: GovernanceContext, decision: AdmissionDecision) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(math.ceil(decision.reset_at_ms / 1000)),
            **self._type_headers(ctx),
        }

    def _reject(self, ctx: GovernanceContext, decision: AdmissionDecision) -> Verdict:
        retry_after = math.ceil(decision.retry_after_ms / 1000)
        headers = self._admission_headers(ctx, decision)

        extended = ctx.failure_count > self.extended_failure_threshold
        if extended:
            retry_after *= 2
            headers["X-Extended-Rate-Limit"] = "true"
        headers["Retry-After"] = str(retry_after)

        if decision.backend_available:
            status_code = 429
            code = rejection_code(ctx.operation)
            title = rejection_title(ctx.operation)
            message = rejection_message(ctx.operation, ctx.network.value)
            self._emit(
                EventKind.RATE_LIMIT_HIT,
                ctx,
                status_code=status_code,
                tags={"limit": decision.limit, "count": decision.count, "extended": extended},
            )
        else:
            status_code = 503
            code = "RATE_LIMIT_BACKEND_UNAVAILABLE"
            title = "Rate limit backend unavailable"
            message = "Rate limiting is temporarily unavailable for this operation. Please retry later."

        rejection = RateLimitRejection(
            error=title,
            code=code,
            operationType=ctx.operation.value,
            networkType=ctx.network.value,
            retryAfter=retry_after,
            message=message,
            web3_context=Web3Context(
                operation_type=ctx.operation.value,
                network_type=ctx.network.value,
                wallet_connected=ctx.wallet_address is not None,
            ),
        )
        return Verdict(
            context=ctx,
            decision=decision,
            headers=headers,
            rejection=rejection,
            status_code=status_code,
        )

    # --- post-response ------------------------------------------------------------

    async def complete(
        self,
        verdict: Verdict,
        *,
        status_code: int,
        response_headers: Mapping[str, str] | None = None,
    ) -> None:
        ctx = verdict.context
        if ctx is None:
            return

        try:
            response_time_ms = float(self.clock.now_ms() - ctx.started_at_ms)
            rate_limited = verdict.rejected and status_code == 429
            self._emit(
                EventKind.PERFORMANCE_SAMPLE,
                ctx,
                status_code=status_code,
                response_time_ms=response_time_ms,
            )
            self.pipeline.record_request(
                endpoint_class=ctx.operation.value,
                status_code=status_code,
                response_time_ms=response_time_ms,
                rate_limited=rate_limited,
                request_id=ctx.request_id,
            )

            await self._track_outcome(ctx, status_code, response_headers or {})
            await self._detect_abuse(ctx)
            self._emit_header_events(ctx, status_code, rate_limited)
        except Exception as exc:
            self.record_core_exception(exc, ctx, ctx.request_id, stage="complete")

    async def _track_outcome(
        self, ctx: GovernanceContext, status_code: int, response_headers: Mapping[str, str]
    ) -> None:
        wallet = ctx.wallet_address
        if not wallet or not ctx.operation.is_web3:
            return

        if status_code >= 400:
            await self.tracker.record_failure(
                wallet, ctx.operation, reason=f"http_{status_code}", status_code=status_code
            )
        elif 200 <= status_code < 300:
            await self.tracker.record_success(wallet, ctx.operation, self._transaction_id(ctx, response_headers))

    def _transaction_id(self, ctx: GovernanceContext, response_headers: Mapping[str, str]) -> str:
        body = ctx.request.body
        for candidate in (body.get("transactionId"), body.get("transactionHash")):
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        for name, value in response_headers.items():
            if name.lower() == "x-transaction-id" and value:
                return value
        return f"success_{self.clock.now_ms()}"

    async def _detect_abuse(self, ctx: GovernanceContext) -> None:
        assessment = self.detector.record(ctx.key.trail_key)
        if not assessment.alert:
            return

        self._emit(
            EventKind.ABUSE_ALERT,
            ctx,
            severity=assessment.severity,
            tags={"score": assessment.score, "trail_length": assessment.trail_length},
        )
        wallet = ctx.wallet_address
        if wallet and ctx.operation.is_web3:
            await self.tracker.record_failure(wallet, ctx.operation, reason=f"abuse_{assessment.severity}")

    def _emit_header_events(self, ctx: GovernanceContext, status_code: int, rate_limited: bool) -> None:
        request = ctx.request
        tournament_id = request.header("X-Tournament-Id")
        competitive_mode = request.header("X-Competitive-Mode")

        session_id = request.header("X-Gaming-Session")
        if session_id:
            touch = self.sessions.touch(
                request.user_id,
                session_id,
                rate_limited=rate_limited,
                tournament_id=tournament_id,
                competitive=competitive_mode is not None,
            )
            if touch is not None and touch.created:
                self._emit(
                    EventKind.GAMING_SESSION,
                    ctx,
                    tags={
                        "user_id": touch.session.user_id,
                        "session_id": session_id,
                        "record": touch.session.to_record(),
                    },
                )

        if tournament_id:
            self._emit(
                EventKind.TOURNAMENT_METRIC,
                ctx,
                status_code=status_code,
                tags={"tournament_id": tournament_id, "metric": "requests", "value": 1},
            )
            if rate_limited:
                self._emit(
                    EventKind.TOURNAMENT_METRIC,
                    ctx,
                    status_code=status_code,
                    tags={"tournament_id": tournament_id, "metric": "rate_limit_hits", "value": 1},
                )

        if competitive_mode:
            self._emit(
                EventKind.COMPETITIVE_EVENT,
                ctx,
                status_code=status_code,
                tags={"mode": competitive_mode, "rate_limited": rate_limited},
            )

        if ctx.operation.is_web3 and ctx.wallet_address:
            self._emit(
                EventKind.WEB3_TRANSACTION,
                ctx,
                status_code=status_code,
                tags={"success": status_code < 400},
            )

    # --- helpers ------------------------------------------------------------------

    def _emit(
        self,
        kind: EventKind,
        ctx: GovernanceContext,
        *,
        status_code: int | None = None,
        response_time_ms: float | None = None,
        severity: str | None = None,
        tags: dict[str, Any] | None = None,
    ) -> None:
        self.pipeline.emit(
            AnalyticsEvent(
                kind=kind,
                endpoint_class=ctx.operation.value,
                principal=hash_identifier(ctx.key.principal),
                status_code=status_code,
                response_time_ms=response_time_ms,
                network_tag=ctx.network.value,
                severity=severity,
                request_id=ctx.request_id,
                tags=tags or {},
            )
        )

    def record_core_exception(
        self,
        exc: Exception,
        ctx: GovernanceContext | None,
        request_id: str | None,
        *,
        stage: str,
    ) -> None:
        logger.exception(
            "governor.core_exception",
            extra={"stage": stage, "governed_request_id": request_id, "error_type": type(exc).__name__},
        )
        try:
            self.pipeline.emit(
                AnalyticsEvent(
                    kind=EventKind.CORE_EXCEPTION,
                    endpoint_class=ctx.operation.value if ctx else "unknown",
                    severity="high",
                    request_id=request_id,
                    tags={"stage": stage, "error_type": type(exc).__name__},
                )
            )
        except Exception:
            logger.exception("governor.core_exception_unrecorded", extra={"stage": stage})


def build_governor(settings: Settings, clock: Clock, stores: KVStores) -> tuple[RequestGovernor, AnalyticsDashboard]:
    """Wire the pipeline stages from settings and per-domain stores."""
    governor_settings = settings.governor
    analytics_settings = settings.analytics

    tracker = TransactionOutcomeTracker(stores.web3, clock)
    detector = AbuseDetector(
        clock,
        threshold=analytics_settings.alert_gaming_abuse_score,
        capacity=governor_settings.abuse_trail_capacity,
        max_trail_length=governor_settings.abuse_trail_max_length,
    )
    sessions = GamingSessionTracker(
        clock,
        idle_ttl_ms=governor_settings.session_idle_ttl_seconds * 1000,
        capacity=governor_settings.session_capacity,
    )
    pipeline = AnalyticsPipeline(stores.analytics, clock, analytics_settings)
    pipeline.add_cleanup_hook(sessions.expire_idle)
    pipeline.add_cleanup_hook(detector.prune)

    governor = RequestGovernor(
        clock=clock,
        resolver=PolicyResolver(),
        adjuster=AdaptiveAdjuster(tracker),
        counter=FixedWindowCounter(
            stores.rate_limit,
            clock,
            fail_closed_operations=governor_settings.fail_closed_operations,
        ),
        tracker=tracker,
        detector=detector,
        sessions=sessions,
        pipeline=pipeline,
        development=settings.is_development,
        exempt_paths=tuple(governor_settings.exempt_paths),
        extended_failure_threshold=governor_settings.extended_failure_threshold,
        enabled=governor_settings.enabled,
    )
    dashboard = AnalyticsDashboard(
        pipeline,
        stores.analytics,
        clock,
        analytics_settings,
        active_sessions=sessions.active_count,
        tracked_trails=lambda: detector.tracked_trails,
        high_risk_principals=detector.high_risk_count,
    )
    return governor, dashboard
