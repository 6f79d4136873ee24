"""Abuse detection over per-principal request timestamp trails.

The detector only scores and alerts; it never rejects a request.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

from gatekeeper.core.clock import Clock
from gatekeeper.schemas.analytics import Severity
from gatekeeper.utils.lru import BoundedLRU

logger = logging.getLogger(__name__)

TRAIL_LOOKBACK_MS = 3_600_000
HIGH_SEVERITY_SCORE = 80
MAX_SCORE = 100

# Rates are measured over at least one minute so a short burst at the start
# of a trail is not extrapolated.
_MIN_RATE_SPAN_MS = 60_000

_SEVERITY_RANK: dict[Severity | None, int] = {None: 0, "medium": 1, "high": 2}


def calculate_abuse_score(timestamps: list[int] | deque[int]) -> int:
    """Score a trail of request timestamps (ascending epoch ms) in [0, 100]."""
    if len(timestamps) < 2:
        return 0

    first, last = timestamps[0], timestamps[-1]
    span_ms = max(last - first, _MIN_RATE_SPAN_MS)
    rate_per_minute = len(timestamps) / (span_ms / 60_000)

    score = 0
    if rate_per_minute > 100:
        score += 50
    elif rate_per_minute > 50:
        score += 25

    ts = list(timestamps)
    intervals = [b - a for a, b in zip(ts, ts[1:])]
    mean = sum(intervals) / len(intervals)
    variance = sum((i - mean) ** 2 for i in intervals) / len(intervals)
    if variance < 1_000:
        score += 30
    elif variance < 10_000:
        score += 15

    return min(score, MAX_SCORE)


def severity_for(score: int, threshold: int) -> Severity | None:
    """Map a score to an alert severity.

    ``high`` starts at 80 inclusive. The rate and variance penalties add up to
    at most 80, so a strict ``> 80`` cut-off could never be reached: a trail of
    evenly spaced requests above 100/min scores exactly 80 and is ``high``.
    Scores above ``threshold`` and below 80 are ``medium``.
    """
    if score >= HIGH_SEVERITY_SCORE:
        return "high"
    if score > threshold:
        return "medium"
    return None


@dataclass
class _Trail:
    timestamps: deque[int]
    last_score: int = 0
    alerted: Severity | None = None


@dataclass(frozen=True)
class AbuseAssessment:
    """Result of recording one request.

    ``alert`` is set only when the severity escalates past the level already
    alerted for this trail.
    """

    trail_key: str
    score: int
    severity: Severity | None
    alert: bool = False
    trail_length: int = 0


class AbuseDetector:
    def __init__(
        self,
        clock: Clock,
        *,
        threshold: int = 50,
        capacity: int = 10_000,
        max_trail_length: int = 5_000,
    ) -> None:
        self._clock = clock
        self._threshold = threshold
        self._max_trail_length = max_trail_length
        self._trails: BoundedLRU[str, _Trail] = BoundedLRU(capacity)

    def record(self, trail_key: str) -> AbuseAssessment:
        now = self._clock.now_ms()
        trail = self._trails.get_or_create(
            trail_key, lambda: _Trail(timestamps=deque(maxlen=self._max_trail_length))
        )
        trail.timestamps.append(now)
        cutoff = now - TRAIL_LOOKBACK_MS
        while trail.timestamps and trail.timestamps[0] < cutoff:
            trail.timestamps.popleft()

        score = calculate_abuse_score(trail.timestamps)
        severity = severity_for(score, self._threshold)
        trail.last_score = score

        alert = _SEVERITY_RANK[severity] > _SEVERITY_RANK[trail.alerted]
        if severity is None:
            trail.alerted = None
        elif alert:
            trail.alerted = severity
            logger.warning(
                "abuse.alert",
                extra={"score": score, "severity": severity, "trail_length": len(trail.timestamps)},
            )

        return AbuseAssessment(
            trail_key=trail_key,
            score=score,
            severity=severity,
            alert=alert,
            trail_length=len(trail.timestamps),
        )

    @property
    def tracked_trails(self) -> int:
        return len(self._trails)

    def high_risk_count(self) -> int:
        return sum(1 for trail in self._trails.values() if trail.last_score >= HIGH_SEVERITY_SCORE)

    def prune(self) -> int:
        """Drop trails with no request in the last hour."""
        cutoff = self._clock.now_ms() - TRAIL_LOOKBACK_MS
        removed = self._trails.prune(lambda trail: not trail.timestamps or trail.timestamps[-1] < cutoff)
        if removed:
            logger.debug("abuse.pruned", extra={"removed": removed})
        return removed
