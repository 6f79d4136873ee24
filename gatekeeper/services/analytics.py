"""Analytics pipeline.

Producers call ``emit`` from the request path. It never blocks and never
raises: events are stamped, counted, fanned out to in-process subscribers and
put on a bounded queue. A single writer task drains the queue in batches
(by size or time) into the analytics key-value domain, storing each event as
a point-in-time entry and folding it into per-minute time-series buckets.

Three interval loops run beside the writer:

- realtime: compares the last interval's counters with alert thresholds and
  emits ``performance_alert`` events;
- aggregation: logs an in-process summary;
- cleanup: resets per-endpoint statistics and runs registered cleanup hooks
  (idle gaming sessions, stale abuse trails).
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Iterable

from gatekeeper.adapters.kv.base import UNAVAILABLE, AbstractKVStore
from gatekeeper.core.clock import Clock
from gatekeeper.core.config import AnalyticsSettings
from gatekeeper.schemas.analytics import (
    AnalyticsEvent,
    AnalyticsSummary,
    DashboardResponse,
    EventKind,
    RetentionTier,
    SeriesPoint,
    TimeRange,
)

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000
DEFAULT_DASHBOARD_RANGE_MS = 3_600_000

RETENTION_BY_KIND: dict[EventKind, RetentionTier] = {
    EventKind.RATE_LIMIT_HIT: RetentionTier.REALTIME,
    EventKind.SKIP_ADMIN: RetentionTier.REALTIME,
    EventKind.PERFORMANCE_SAMPLE: RetentionTier.HOURLY,
    EventKind.COMPETITIVE_EVENT: RetentionTier.HOURLY,
    EventKind.BACKEND_UNAVAILABLE: RetentionTier.HOURLY,
    EventKind.GAMING_SESSION: RetentionTier.DAILY,
    EventKind.WEB3_TRANSACTION: RetentionTier.DAILY,
    EventKind.ABUSE_ALERT: RetentionTier.DAILY,
    EventKind.PERFORMANCE_ALERT: RetentionTier.DAILY,
    EventKind.CORE_EXCEPTION: RetentionTier.DAILY,
    EventKind.TOURNAMENT_METRIC: RetentionTier.WEEKLY,
}

# Time-series buckets live for the daily tier regardless of the event's tier.
TIMESERIES_TIER = RetentionTier.DAILY

Subscriber = Callable[[AnalyticsEvent], None]
CleanupHook = Callable[[], object]


def retention_seconds(tier: RetentionTier, config: AnalyticsSettings) -> int:
    return {
        RetentionTier.REALTIME: config.retention_realtime_seconds,
        RetentionTier.HOURLY: config.retention_hourly_seconds,
        RetentionTier.DAILY: config.retention_daily_seconds,
        RetentionTier.WEEKLY: config.retention_weekly_seconds,
    }[tier]


def minute_start(timestamp_ms: int) -> int:
    return timestamp_ms - timestamp_ms % MINUTE_MS


def series_updates(event: AnalyticsEvent) -> list[tuple[str, str, float]]:
    """Time-series ``(series, sub_series, amount)`` increments for one event."""
    kind = event.kind
    if kind is EventKind.PERFORMANCE_SAMPLE:
        return [
            ("performance", "response_time", float(event.response_time_ms or 0.0)),
            ("requests", "count", 1.0),
        ]
    if kind is EventKind.RATE_LIMIT_HIT:
        return [("rate_limit_hits", event.endpoint_class, 1.0), ("rate_limit_hits", "all", 1.0)]
    if kind is EventKind.GAMING_SESSION:
        return [("gaming_sessions", "count", 1.0)]
    if kind is EventKind.TOURNAMENT_METRIC:
        tournament_id = event.tags.get("tournament_id", "unknown")
        metric = event.tags.get("metric", "requests")
        return [("tournament", f"{tournament_id}:{metric}", float(event.tags.get("value", 1)))]
    if kind is EventKind.WEB3_TRANSACTION:
        return [("web3_transactions", event.endpoint_class, 1.0)]
    if kind is EventKind.ABUSE_ALERT:
        return [("abuse_alerts", event.severity or "medium", 1.0), ("abuse_alerts", "all", 1.0)]
    return [(kind.value, "count", 1.0)]


@dataclass
class _EndpointStats:
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def add(self, response_time_ms: float) -> None:
        self.count += 1
        self.total_ms += response_time_ms
        self.min_ms = min(self.min_ms, response_time_ms)
        self.max_ms = max(self.max_ms, response_time_ms)

    def as_dict(self) -> dict[str, float]:
        return {
            "count": self.count,
            "avg_ms": round(self.total_ms / self.count, 2) if self.count else 0.0,
            "min_ms": self.min_ms if self.count else 0.0,
            "max_ms": self.max_ms,
        }


class AnalyticsCollector:
    """In-process request counters.

    Lifetime totals feed the dashboard summary; interval counters are reset
    by each realtime check.
    """

    def __init__(self) -> None:
        self.total_requests = 0
        self.total_rate_limits = 0
        self.total_errors = 0
        self.total_response_ms = 0.0
        self.endpoints: dict[str, _EndpointStats] = {}
        self._interval = Counter()

    def record(self, endpoint_class: str, status_code: int, response_time_ms: float, rate_limited: bool) -> None:
        self.total_requests += 1
        self.total_response_ms += response_time_ms
        self._interval["requests"] += 1
        if rate_limited:
            self.total_rate_limits += 1
            self._interval["rate_limited"] += 1
        elif status_code >= 400:
            self.total_errors += 1
            self._interval["errors"] += 1
        self.endpoints.setdefault(endpoint_class, _EndpointStats()).add(response_time_ms)

    def take_interval(self) -> Counter:
        interval, self._interval = self._interval, Counter()
        return interval

    def reset_endpoints(self) -> None:
        self.endpoints.clear()

    @property
    def average_response_time_ms(self) -> float:
        if not self.total_requests:
            return 0.0
        return round(self.total_response_ms / self.total_requests, 2)


class AnalyticsPipeline:
    """Bounded, batching event sink for one analytics domain."""

    def __init__(self, store: AbstractKVStore, clock: Clock, config: AnalyticsSettings) -> None:
        self._store = store
        self._clock = clock
        self._config = config
        self._queue: asyncio.Queue[AnalyticsEvent] = asyncio.Queue(maxsize=config.queue_max)
        self._subscribers: list[Subscriber] = []
        self._cleanup_hooks: list[CleanupHook] = []
        self._tasks: list[asyncio.Task] = []
        self._seq = itertools.count(1)
        self._last_timestamp = 0

        self.collector = AnalyticsCollector()
        self.events_by_kind: Counter = Counter()
        self.dropped_events = 0
        self.written_events = 0
        self.write_failures = 0

    # --- producer side ------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def add_cleanup_hook(self, hook: CleanupHook) -> None:
        self._cleanup_hooks.append(hook)

    def emit(self, event: AnalyticsEvent) -> AnalyticsEvent:
        """Stamp and enqueue ``event``; drops it when the queue is full."""
        now = max(self._clock.now_ms(), self._last_timestamp)
        self._last_timestamp = now
        event = event.model_copy(update={"timestamp": now})
        self.events_by_kind[event.kind] += 1

        for callback in self._subscribers:
            try:
                callback(event)
            except Exception as exc:
                logger.warning(
                    "analytics.subscriber_failed",
                    extra={"kind": event.kind.value, "error_type": type(exc).__name__, "error_msg": str(exc)},
                )

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped_events += 1
            if self.dropped_events == 1 or self.dropped_events % 1000 == 0:
                logger.warning("analytics.dropped", extra={"dropped_events": self.dropped_events})
        return event

    def count(self, kind: EventKind) -> int:
        return self.events_by_kind[kind]

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def record_request(
        self,
        *,
        endpoint_class: str,
        status_code: int,
        response_time_ms: float,
        rate_limited: bool,
        request_id: str | None = None,
    ) -> None:
        self.collector.record(endpoint_class, status_code, response_time_ms, rate_limited)
        if response_time_ms > self._config.alert_response_time_ms:
            self.emit(
                AnalyticsEvent(
                    kind=EventKind.PERFORMANCE_ALERT,
                    endpoint_class=endpoint_class,
                    status_code=status_code,
                    response_time_ms=response_time_ms,
                    severity="medium",
                    request_id=request_id,
                    tags={"alert": "slow_response", "threshold_ms": self._config.alert_response_time_ms},
                )
            )

    # --- writer side --------------------------------------------------------------

    async def flush(self) -> int:
        """Write every queued event now; returns how many were written."""
        batch: list[AnalyticsEvent] = []
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        await self._write_batch(batch)
        return len(batch)

    async def _write_batch(self, batch: list[AnalyticsEvent]) -> None:
        for event in batch:
            await self._write_event(event)

    async def _write_event(self, event: AnalyticsEvent) -> None:
        ttl_ms = retention_seconds(RETENTION_BY_KIND.get(event.kind, RetentionTier.HOURLY), self._config) * 1000
        stored = await self._store.set_with_ttl(self.point_key(event), event.model_dump_json(), ttl_ms)

        series_ttl_ms = retention_seconds(TIMESERIES_TIER, self._config) * 1000
        minute = minute_start(event.timestamp)
        for series, sub, amount in series_updates(event):
            stored = (
                await self._store.increment_float(self.series_key(series, sub, minute), amount, series_ttl_ms)
                and stored
            )

        if stored:
            self.written_events += 1
        else:
            self.write_failures += 1
            logger.debug("analytics.write_failed", extra={"kind": event.kind.value, "domain": self._store.domain})

    def point_key(self, event: AnalyticsEvent) -> str:
        prefix = self._config.key_prefix
        if event.kind is EventKind.RATE_LIMIT_HIT:
            return f"{prefix}rate_limit_events:{event.endpoint_class}:{event.timestamp}:{next(self._seq)}"
        if event.kind is EventKind.TOURNAMENT_METRIC:
            tournament_id = event.tags.get("tournament_id", "unknown")
            metric = event.tags.get("metric", "requests")
            return f"{prefix}tournament:{tournament_id}:{metric}:{event.timestamp}"
        if event.kind is EventKind.GAMING_SESSION:
            user_id = event.tags.get("user_id", "anonymous")
            session_id = event.tags.get("session_id", "unknown")
            return f"{prefix}gaming_session:{user_id}:{session_id}"
        return f"{prefix}events:{event.kind.value}:{event.timestamp}:{next(self._seq)}"

    def series_key(self, series: str, sub: str, minute: int) -> str:
        return f"{self._config.key_prefix}timeseries:{series}:{sub}:{minute}"

    async def _writer_loop(self) -> None:
        while True:
            batch: list[AnalyticsEvent] = [await self._queue.get()]
            deadline = time.monotonic() + self._config.flush_interval_seconds
            while len(batch) < self._config.batch_size:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    batch.append(await asyncio.wait_for(self._queue.get(), timeout=remaining))
                except asyncio.TimeoutError:
                    break
                except asyncio.CancelledError:
                    await self._write_batch(batch)
                    raise
            await self._write_batch(batch)

    # --- interval loops -----------------------------------------------------------

    def realtime_check(self) -> list[AnalyticsEvent]:
        """Compare the last interval with alert thresholds."""
        interval = self.collector.take_interval()
        requests = interval["requests"]
        rate_limited = interval["rate_limited"]
        errors = interval["errors"]
        alerts: list[AnalyticsEvent] = []
        if not requests:
            return alerts

        rate_limit_share = rate_limited / requests * 100
        if rate_limit_share > self._config.alert_rate_limit_percentage:
            alerts.append(self._interval_alert("rate_limit_share", rate_limit_share, "high"))
        if rate_limited >= self._config.alert_concurrent_violations:
            alerts.append(self._interval_alert("concurrent_violations", rate_limited, "high"))
        error_rate = errors / requests * 100
        if error_rate > self._config.alert_failure_rate:
            alerts.append(self._interval_alert("failure_rate", error_rate, "medium"))

        return [self.emit(alert) for alert in alerts]

    def _interval_alert(self, alert: str, value: float, severity: str) -> AnalyticsEvent:
        logger.warning("analytics.performance_alert", extra={"alert": alert, "value": round(value, 2)})
        return AnalyticsEvent(
            kind=EventKind.PERFORMANCE_ALERT,
            endpoint_class="all",
            severity=severity,
            tags={"alert": alert, "value": round(value, 2)},
        )

    def log_summary(self) -> None:
        collector = self.collector
        logger.info(
            "analytics.summary",
            extra={
                "total_requests": collector.total_requests,
                "total_rate_limits": collector.total_rate_limits,
                "total_errors": collector.total_errors,
                "average_response_time_ms": collector.average_response_time_ms,
                "dropped_events": self.dropped_events,
                "write_failures": self.write_failures,
            },
        )

    def run_cleanup(self) -> None:
        self.collector.reset_endpoints()
        for hook in self._cleanup_hooks:
            try:
                hook()
            except Exception as exc:
                logger.warning(
                    "analytics.cleanup_failed",
                    extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
                )

    async def _every(self, seconds: float, fn: Callable[[], object]) -> None:
        while True:
            await asyncio.sleep(seconds)
            try:
                fn()
            except Exception:
                logger.exception("analytics.loop_failed", extra={"loop": getattr(fn, "__name__", "?")})

    # --- lifecycle ----------------------------------------------------------------

    async def start(self) -> None:
        if self._tasks:
            return
        # Rebind the queue to the running loop, carrying over anything emitted
        # before startup.
        pending = self._queue
        self._queue = asyncio.Queue(maxsize=self._config.queue_max)
        while not pending.empty():
            self._queue.put_nowait(pending.get_nowait())

        self._tasks = [
            asyncio.create_task(self._writer_loop(), name="analytics-writer"),
            asyncio.create_task(
                self._every(self._config.realtime_interval_seconds, self.realtime_check),
                name="analytics-realtime",
            ),
            asyncio.create_task(
                self._every(self._config.aggregation_interval_seconds, self.log_summary),
                name="analytics-aggregation",
            ),
            asyncio.create_task(
                self._every(self._config.cleanup_interval_seconds, self.run_cleanup),
                name="analytics-cleanup",
            ),
        ]
        logger.info("analytics.started", extra={"domain": self._store.domain})

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        written = await self.flush()
        logger.info("analytics.stopped", extra={"flushed_on_stop": written})


class AnalyticsDashboard:
    """Read path over the persisted time series plus in-process state."""

    def __init__(
        self,
        pipeline: AnalyticsPipeline,
        store: AbstractKVStore,
        clock: Clock,
        config: AnalyticsSettings,
        *,
        active_sessions: Callable[[], int] = lambda: 0,
        tracked_trails: Callable[[], int] = lambda: 0,
        high_risk_principals: Callable[[], int] = lambda: 0,
    ) -> None:
        self._pipeline = pipeline
        self._store = store
        self._clock = clock
        self._config = config
        self._active_sessions = active_sessions
        self._tracked_trails = tracked_trails
        self._high_risk_principals = high_risk_principals

    def clamp_range(self, time_range_ms: int | None) -> int:
        """Requested range, capped at the hourly-tier retention."""
        if not time_range_ms or time_range_ms <= 0:
            return DEFAULT_DASHBOARD_RANGE_MS
        return min(time_range_ms, self._config.retention_hourly_seconds * 1000)

    async def build(self, time_range_ms: int | None = None) -> DashboardResponse:
        end = self._clock.now_ms()
        start = end - self.clamp_range(time_range_ms)
        minutes = list(range(minute_start(start), minute_start(end) + 1, MINUTE_MS))

        available = True
        series: dict[str, list[SeriesPoint]] = {}
        for name, (series_name, sub) in {
            "rate_limit_hits": ("rate_limit_hits", "all"),
            "request_count": ("requests", "count"),
            "response_time_sum_ms": ("performance", "response_time"),
            "gaming_sessions": ("gaming_sessions", "count"),
            "abuse_alerts": ("abuse_alerts", "all"),
        }.items():
            points = await self._read_series(series_name, sub, minutes)
            if points is None:
                available = False
                points = []
            series[name] = points

        return DashboardResponse(
            time_range=TimeRange(start=start, end=end),
            summary=self.summary(),
            backend_available=available,
            generated_at=end,
            **series,
        )

    async def _read_series(self, series: str, sub: str, minutes: Iterable[int]) -> list[SeriesPoint] | None:
        minutes = list(minutes)
        keys = [self._pipeline.series_key(series, sub, minute) for minute in minutes]
        values = await self._store.multi_get(keys)
        if values is UNAVAILABLE:
            return None
        points = []
        for minute, raw in zip(minutes, values):
            if raw is None:
                continue
            try:
                points.append(SeriesPoint(timestamp=minute, value=float(raw)))
            except ValueError:
                logger.debug("analytics.bad_series_value", extra={"series": series})
        return points

    def summary(self) -> AnalyticsSummary:
        pipeline = self._pipeline
        collector = pipeline.collector
        return AnalyticsSummary(
            total_requests=collector.total_requests,
            total_rate_limits=collector.total_rate_limits,
            total_errors=collector.total_errors,
            average_response_time_ms=collector.average_response_time_ms,
            events_by_kind={kind.value: count for kind, count in pipeline.events_by_kind.items()},
            dropped_events=pipeline.dropped_events,
            active_gaming_sessions=self._active_sessions(),
            tracked_abuse_trails=self._tracked_trails(),
            high_risk_principals=self._high_risk_principals(),
            endpoint_breakdown={name: stats.as_dict() for name, stats in collector.endpoints.items()},
        )
