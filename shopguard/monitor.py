"""In-process security monitor: per-type event counters with threshold alerts."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import structlog

logger = structlog.get_logger("shopguard.audit")

FAILED_LOGIN = "failed_login"
RATE_LIMIT_HIT = "rate_limit_hit"
BLOCKED_REQUEST = "blocked_request"

_SEVERITY = {
    FAILED_LOGIN: "medium",
    RATE_LIMIT_HIT: "low",
    BLOCKED_REQUEST: "high",
}

_MAX_ALERTS = 1000


@dataclass
class Alert:
    type: str
    message: str
    severity: str
    events: int
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    resolved: bool = False
    resolved_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SecurityMonitor:
    """Count security events in a sliding window and raise alerts past thresholds.

    An alert fires once when the count reaches the threshold; the window
    must drain below it before the same type can alert again.
    """

    def __init__(
        self,
        thresholds: dict[str, int],
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._thresholds = thresholds
        self._window = window_seconds
        self._clock = clock
        self._events: dict[str, deque[float]] = {}
        self._armed: dict[str, bool] = {}
        self._alerts: deque[Alert] = deque(maxlen=_MAX_ALERTS)

    def record(self, event_type: str, **data: Any) -> Alert | None:
        """Record one event; return the Alert if this event crossed the threshold."""
        now = self._clock()
        events = self._events.setdefault(event_type, deque())
        events.append(now)
        while events and now - events[0] >= self._window:
            events.popleft()

        threshold = self._thresholds.get(event_type)
        if not threshold:
            return None
        if len(events) < threshold:
            self._armed[event_type] = True
            return None
        if not self._armed.get(event_type, True):
            return None

        self._armed[event_type] = False
        alert = Alert(
            type=event_type,
            message=f"High number of {event_type.replace('_', ' ')} events: {len(events)}",
            severity=_SEVERITY.get(event_type, "low"),
            events=len(events),
        )
        self._alerts.append(alert)
        logger.warning(
            "security_alert",
            alert_id=alert.id,
            alert_type=event_type,
            severity=alert.severity,
            events=alert.events,
            window_seconds=self._window,
            **data,
        )
        return alert

    def recent_count(self, event_type: str) -> int:
        now = self._clock()
        events = self._events.get(event_type, ())
        return sum(1 for t in events if now - t < self._window)

    def get_alerts(self, unresolved_only: bool = False) -> list[Alert]:
        if unresolved_only:
            return [a for a in self._alerts if not a.resolved]
        return list(self._alerts)

    def resolve_alert(self, alert_id: str) -> Alert | None:
        for alert in self._alerts:
            if alert.id == alert_id:
                if not alert.resolved:
                    alert.resolved = True
                    alert.resolved_at = datetime.now(timezone.utc).isoformat()
                return alert
        return None


_monitor: SecurityMonitor | None = None


def get_monitor() -> SecurityMonitor:
    """Get or create the singleton monitor using current settings."""
    global _monitor
    if _monitor is None:
        from shopguard.config.loader import get_settings

        settings = get_settings()
        _monitor = SecurityMonitor(
            thresholds={
                FAILED_LOGIN: settings.alert_failed_logins,
                RATE_LIMIT_HIT: settings.alert_rate_limit_hits,
                BLOCKED_REQUEST: settings.alert_blocked_requests,
            },
            window_seconds=settings.alert_window_seconds,
        )
    return _monitor


def reset_monitor() -> None:
    """Drop the singleton (for testing and config reload)."""
    global _monitor
    _monitor = None
