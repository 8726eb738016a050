"""
Alert Manager - threshold state machine with hysteresis.

Each tracked metric is in one of NORMAL, WARNING or CRITICAL. Rising usage
may jump straight to the level it reaches; falling usage steps down one level
per evaluation, and only once the value drops below the threshold of the
level being left minus the hysteresis margin.

Every upward transition raises exactly one Alert. Stepping down from
CRITICAL into WARNING raises a warning alert only when none is active, which
happens after a jump that skipped WARNING. Staying at a level raises nothing,
and dismissing an alert never changes the underlying state: a dismissed
alert only comes back after its condition clears and re-triggers.

The AlertManager is the sole owner of alert state.
"""

import time
import threading
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from .constants import AlertDefaults, ThresholdDefaults

logger = logging.getLogger(__name__)

USAGE_METRIC = "memory_usage"


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertLevel(Enum):
    """Per-metric state"""
    NORMAL = 0
    WARNING = 1
    CRITICAL = 2


_LEVEL_SEVERITY = {
    AlertLevel.WARNING: AlertSeverity.WARNING,
    AlertLevel.CRITICAL: AlertSeverity.CRITICAL,
}

_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.CRITICAL: logging.ERROR,
}


@dataclass
class Alert:
    """An active or historical alert"""
    id: str
    severity: AlertSeverity
    title: str
    message: str
    raised_at: float
    sequence: int
    metric: Optional[str] = None
    value: Optional[float] = None
    threshold: Optional[float] = None
    dismissed: bool = False
    dismissed_at: Optional[float] = None
    cleared_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.cleared_at is None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'severity': self.severity.value,
            'title': self.title,
            'message': self.message,
            'raised_at': self.raised_at,
            'raised_at_iso': datetime.fromtimestamp(self.raised_at, tz=timezone.utc).isoformat(),
            'sequence': self.sequence,
            'metric': self.metric,
            'value': self.value,
            'threshold': self.threshold,
            'dismissed': self.dismissed,
            'dismissed_at': self.dismissed_at,
            'cleared_at': self.cleared_at,
            'active': self.active,
            'metadata': dict(self.metadata),
        }


class AlertManager:
    """Raises, clears and tracks alerts for threshold metrics and conditions."""

    def __init__(
        self,
        warning_threshold: float = ThresholdDefaults.WARNING_PCT,
        critical_threshold: float = ThresholdDefaults.CRITICAL_PCT,
        hysteresis: float = ThresholdDefaults.HYSTERESIS_PCT,
        history_size: int = AlertDefaults.HISTORY_SIZE,
        clock: Callable[[], float] = time.time,
        on_alert: Optional[Callable[[Alert], None]] = None,
    ):
        """
        Initialize AlertManager.

        Args:
            warning_threshold: Value at which WARNING is entered
            critical_threshold: Value at which CRITICAL is entered
            hysteresis: Margin below the entered threshold required to step down
            history_size: Raised alerts kept in history
            clock: Returns the current epoch time
            on_alert: Callback for every newly raised alert
        """
        self._validate_thresholds(warning_threshold, critical_threshold, hysteresis)
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.hysteresis = hysteresis
        self._clock = clock
        self._lock = threading.RLock()

        self._states: Dict[str, AlertLevel] = {}
        self._active: Dict[str, Alert] = {}
        self._history: Deque[Alert] = deque(maxlen=history_size)
        self._callbacks: List[Callable[[Alert], None]] = []
        if on_alert is not None:
            self._callbacks.append(on_alert)

        self._sequence = 0
        self._raised_total = 0
        self._cleared_total = 0

    @classmethod
    def from_config(cls, config, **kwargs) -> 'AlertManager':
        kwargs.setdefault('warning_threshold', config.warning_threshold_pct)
        kwargs.setdefault('critical_threshold', config.critical_threshold_pct)
        kwargs.setdefault('hysteresis', config.hysteresis_pct)
        kwargs.setdefault('history_size', config.alert_history_size)
        return cls(**kwargs)

    @staticmethod
    def _validate_thresholds(warning: float, critical: float, hysteresis: float) -> None:
        if critical <= warning:
            raise ValueError("critical threshold must be greater than warning threshold")
        if hysteresis < 0:
            raise ValueError("hysteresis must be >= 0")

    def update_thresholds(self, warning: float, critical: float, hysteresis: float) -> None:
        """Change thresholds; current states are kept and re-evaluated on the next value."""
        self._validate_thresholds(warning, critical, hysteresis)
        with self._lock:
            self.warning_threshold = warning
            self.critical_threshold = critical
            self.hysteresis = hysteresis

    def add_callback(self, callback: Callable[[Alert], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    # ------------------------------------------------------------------
    # Threshold state machine
    # ------------------------------------------------------------------

    def _threshold_for(self, level: AlertLevel) -> float:
        if level == AlertLevel.CRITICAL:
            return self.critical_threshold
        return self.warning_threshold

    def _target_level(self, value: float) -> AlertLevel:
        if value >= self.critical_threshold:
            return AlertLevel.CRITICAL
        if value >= self.warning_threshold:
            return AlertLevel.WARNING
        return AlertLevel.NORMAL

    def _raise_level(self, metric: str, level: AlertLevel, value: float,
                     message: Optional[str] = None) -> Alert:
        severity = _LEVEL_SEVERITY[level]
        threshold = self._threshold_for(level)
        return self._raise(
            alert_id=f"{metric}:{severity.value}",
            severity=severity,
            title=f"{metric} {severity.value}",
            message=message or (
                f"{metric} at {value:.1f}% crossed the "
                f"{severity.value} threshold of {threshold:.1f}%"
            ),
            metric=metric,
            value=value,
            threshold=threshold,
        )

    def evaluate(self, metric: str, value: Optional[float]) -> List[Alert]:
        """
        Feed one observation of a metric.

        Returns:
            Alerts newly raised by this observation (at most one)
        """
        if value is None:
            return []

        raised: List[Alert] = []
        with self._lock:
            current = self._states.get(metric, AlertLevel.NORMAL)
            target = self._target_level(value)

            if target.value > current.value:
                self._states[metric] = target
                raised.append(self._raise_level(metric, target, value))

            elif current != AlertLevel.NORMAL:
                entered = self._threshold_for(current)
                if value < entered - self.hysteresis:
                    lower = AlertLevel(current.value - 1)
                    self._states[metric] = lower
                    self._clear(f"{metric}:{_LEVEL_SEVERITY[current].value}")
                    logger.info(
                        f"{metric} dropped to {lower.name.lower()} at {value:.1f}% "
                        f"(below {entered - self.hysteresis:.1f}%)"
                    )
                    # A jump straight to critical skipped the warning alert
                    warning_id = f"{metric}:{AlertSeverity.WARNING.value}"
                    if lower == AlertLevel.WARNING and warning_id not in self._active:
                        raised.append(self._raise_level(
                            metric, lower, value,
                            message=f"{metric} at {value:.1f}% left critical and is now at warning level",
                        ))

        self._notify(raised)
        return raised

    def evaluate_sample(self, sample, metric: str = USAGE_METRIC) -> List[Alert]:
        """Evaluate a MemorySample's usage percentage (unbounded samples are ignored)."""
        return self.evaluate(metric, sample.usage_percentage)

    # ------------------------------------------------------------------
    # Boolean conditions
    # ------------------------------------------------------------------

    def set_condition(
        self,
        key: str,
        active: bool,
        severity: AlertSeverity = AlertSeverity.WARNING,
        title: str = "",
        message: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Alert]:
        """
        Raise or clear a named boolean condition.

        The alert is raised once when the condition becomes active and cleared
        when it becomes inactive; repeated activations while active do nothing.

        Returns:
            The newly raised Alert, if any
        """
        alert = None
        with self._lock:
            existing = self._active.get(key)
            if active and existing is None:
                alert = self._raise(
                    alert_id=key,
                    severity=severity,
                    title=title or key,
                    message=message or title or key,
                    metadata=metadata,
                )
            elif not active and existing is not None:
                self._clear(key)
                logger.info(f"Condition cleared: {key}")

        if alert is not None:
            self._notify([alert])
        return alert

    # ------------------------------------------------------------------
    # Internals (call with lock held)
    # ------------------------------------------------------------------

    def _raise(
        self,
        alert_id: str,
        severity: AlertSeverity,
        title: str,
        message: str,
        metric: Optional[str] = None,
        value: Optional[float] = None,
        threshold: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        self._sequence += 1
        self._raised_total += 1
        alert = Alert(
            id=alert_id,
            severity=severity,
            title=title,
            message=message,
            raised_at=self._clock(),
            sequence=self._sequence,
            metric=metric,
            value=value,
            threshold=threshold,
            metadata=dict(metadata or {}),
        )
        self._active[alert_id] = alert
        self._history.append(alert)
        logger.log(_LOG_LEVELS[severity], f"Memory alert [{severity.value}]: {message}")
        return alert

    def _clear(self, alert_id: str) -> None:
        alert = self._active.pop(alert_id, None)
        if alert is not None:
            alert.cleared_at = self._clock()
            self._cleared_total += 1

    def _notify(self, alerts: List[Alert]) -> None:
        if not alerts:
            return
        with self._lock:
            callbacks = list(self._callbacks)
        for alert in alerts:
            for callback in callbacks:
                try:
                    callback(alert)
                except Exception as e:
                    logger.error(f"Error in alert callback: {e}")

    # ------------------------------------------------------------------
    # Commands and queries
    # ------------------------------------------------------------------

    def dismiss(self, alert_id: str) -> bool:
        """Mark an active alert dismissed. Returns False if no such active alert."""
        with self._lock:
            alert = self._active.get(alert_id)
            if alert is None:
                return False
            if not alert.dismissed:
                alert.dismissed = True
                alert.dismissed_at = self._clock()
                logger.info(f"Alert dismissed: {alert_id}")
            return True

    def get_active_alerts(self, include_dismissed: bool = False) -> List[Alert]:
        with self._lock:
            alerts = sorted(self._active.values(), key=lambda a: a.sequence)
        if include_dismissed:
            return alerts
        return [a for a in alerts if not a.dismissed]

    def get_history(self, limit: Optional[int] = None) -> List[Alert]:
        with self._lock:
            history = list(self._history)
        if limit:
            return history[-limit:]
        return history

    def get_state(self, metric: str = USAGE_METRIC) -> AlertLevel:
        with self._lock:
            return self._states.get(metric, AlertLevel.NORMAL)

    def get_statistics(self) -> Dict:
        with self._lock:
            by_severity: Dict[str, int] = {}
            for alert in self._history:
                by_severity[alert.severity.value] = by_severity.get(alert.severity.value, 0) + 1
            return {
                'total_raised': self._raised_total,
                'total_cleared': self._cleared_total,
                'active_count': len(self._active),
                'dismissed_count': sum(1 for a in self._active.values() if a.dismissed),
                'history_by_severity': by_severity,
                'states': {metric: level.name.lower() for metric, level in self._states.items()},
                'thresholds': {
                    'warning': self.warning_threshold,
                    'critical': self.critical_threshold,
                    'hysteresis': self.hysteresis,
                },
            }

    def reset(self) -> None:
        """Return every metric to NORMAL and drop active alerts and history."""
        with self._lock:
            self._states.clear()
            self._active.clear()
            self._history.clear()
        logger.info("Alert state reset")


__all__ = ['USAGE_METRIC', 'AlertSeverity', 'AlertLevel', 'Alert', 'AlertManager']
