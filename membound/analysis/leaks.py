"""
Leak Detector - regression-based detection of sustained memory growth.

The history is partitioned into sub-windows of fixed duration anchored at the
first sample. For each sub-window a straight line is fitted to usage
percentage against time; a window whose slope clears the minimum growth rate
and whose fit quality (R^2) clears the minimum confidence becomes a
LeakCandidate.

A candidate is a statistically supported hypothesis, not a certainty.
"""

import bisect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence

from ..constants import LeakDefaults, SECONDS_PER_HOUR
from ..sampler import MemorySample
from .regression import linear_fit

logger = logging.getLogger(__name__)


class LeakType(Enum):
    """Shape of the growth inside a window"""
    SUSTAINED_GROWTH = "sustained_growth"     # Steady climb across the window
    SPIKE_NO_RECOVERY = "spike_no_recovery"   # One jump that never came back down


class SeverityLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = {
    SeverityLevel.LOW: 0,
    SeverityLevel.MEDIUM: 1,
    SeverityLevel.HIGH: 2,
    SeverityLevel.CRITICAL: 3,
}


@dataclass(frozen=True)
class LeakDetectorConfig:
    """Thresholds for leak detection."""
    window_seconds: float = LeakDefaults.WINDOW_HOURS * SECONDS_PER_HOUR
    step_seconds: Optional[float] = None      # None = sequential windows
    min_samples: int = LeakDefaults.MIN_SAMPLES
    min_growth_rate: float = LeakDefaults.MIN_GROWTH_PCT_PER_HOUR
    min_confidence: float = LeakDefaults.MIN_CONFIDENCE
    rate_interval_seconds: float = SECONDS_PER_HOUR
    severity_medium: float = LeakDefaults.SEVERITY_MEDIUM
    severity_high: float = LeakDefaults.SEVERITY_HIGH
    severity_critical: float = LeakDefaults.SEVERITY_CRITICAL
    spike_fraction: float = LeakDefaults.SPIKE_FRACTION

    def __post_init__(self):
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if self.step_seconds is not None and self.step_seconds <= 0:
            raise ValueError("step_seconds must be > 0")
        if self.min_samples < 3:
            raise ValueError("min_samples must be >= 3")
        if self.rate_interval_seconds <= 0:
            raise ValueError("rate_interval_seconds must be > 0")
        if not (self.severity_medium < self.severity_high < self.severity_critical):
            raise ValueError("severity thresholds must be strictly increasing")

    @classmethod
    def from_config(cls, config) -> 'LeakDetectorConfig':
        return cls(
            window_seconds=config.leak_window_hours * SECONDS_PER_HOUR,
            min_samples=config.leak_min_samples,
            min_growth_rate=config.leak_min_growth_pct_per_hour,
            min_confidence=config.leak_min_confidence,
            severity_medium=config.leak_severity_medium,
            severity_high=config.leak_severity_high,
            severity_critical=config.leak_severity_critical,
        )

    def to_dict(self) -> Dict:
        return {
            'window_seconds': self.window_seconds,
            'step_seconds': self.step_seconds,
            'min_samples': self.min_samples,
            'min_growth_rate': self.min_growth_rate,
            'min_confidence': self.min_confidence,
            'rate_interval_seconds': self.rate_interval_seconds,
            'severity_thresholds': {
                'medium': self.severity_medium,
                'high': self.severity_high,
                'critical': self.severity_critical,
            },
        }


@dataclass
class LeakCandidate:
    """A window of history showing sustained growth"""
    leak_type: LeakType
    window_start: float
    window_end: float
    growth_rate_per_interval: float   # Percentage points per rate interval
    confidence_score: float           # R^2 of the fit, 0..1
    severity_level: SeverityLevel
    severity_score: float
    sample_count: int
    start_usage: float
    end_usage: float
    affected_components: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return self.window_end - self.window_start

    def to_dict(self) -> Dict:
        return {
            'leak_type': self.leak_type.value,
            'window_start': self.window_start,
            'window_start_iso': datetime.fromtimestamp(self.window_start, tz=timezone.utc).isoformat(),
            'window_end': self.window_end,
            'window_end_iso': datetime.fromtimestamp(self.window_end, tz=timezone.utc).isoformat(),
            'duration_hours': round(self.duration_seconds / SECONDS_PER_HOUR, 2),
            'growth_rate_per_interval': round(self.growth_rate_per_interval, 4),
            'confidence_score': round(self.confidence_score, 4),
            'severity_level': self.severity_level.value,
            'severity_score': round(self.severity_score, 2),
            'sample_count': self.sample_count,
            'start_usage': round(self.start_usage, 2),
            'end_usage': round(self.end_usage, 2),
            'affected_components': list(self.affected_components),
        }


class LeakDetector:
    """
    Detects leak candidates in a sample history.

    Stateless between calls: every detect() recomputes from its input, so
    newer analysis simply supersedes older results.
    """

    def __init__(self, config: Optional[LeakDetectorConfig] = None):
        self.config = config or LeakDetectorConfig()

    def classify_severity(self, score: float) -> SeverityLevel:
        """Map a severity score onto the configured thresholds."""
        if score >= self.config.severity_critical:
            return SeverityLevel.CRITICAL
        if score >= self.config.severity_high:
            return SeverityLevel.HIGH
        if score >= self.config.severity_medium:
            return SeverityLevel.MEDIUM
        return SeverityLevel.LOW

    def detect(self, history: Sequence[MemorySample]) -> List[LeakCandidate]:
        """
        Find leak candidates in a history window.

        Args:
            history: Samples in any order (sorted here by timestamp)

        Returns:
            Candidates ordered by window start; empty when there is too
            little data or no window shows qualifying growth.
        """
        samples = sorted(history, key=lambda s: s.timestamp)
        if len(samples) < self.config.min_samples:
            return []

        timestamps = [s.timestamp for s in samples]
        window = self.config.window_seconds
        step = self.config.step_seconds or window
        last_ts = timestamps[-1]

        candidates: List[LeakCandidate] = []
        start = timestamps[0]
        while True:
            end = start + window
            lo = bisect.bisect_left(timestamps, start)
            hi = bisect.bisect_left(timestamps, end)
            candidate = self._analyze_window(samples[lo:hi])
            if candidate is not None:
                candidates.append(candidate)
            if end > last_ts:
                break
            start += step

        if candidates:
            logger.debug(f"Leak detection found {len(candidates)} candidate(s)")
        return candidates

    def _usage_series(self, samples: List[MemorySample]) -> List[float]:
        if all(s.usage_percentage is not None for s in samples):
            return [s.usage_percentage for s in samples]
        # Unbounded: percent of the window's first reading
        base = samples[0].total_usage_bytes or 1
        return [s.total_usage_bytes / base * 100 for s in samples]

    def _analyze_window(self, samples: List[MemorySample]) -> Optional[LeakCandidate]:
        cfg = self.config
        if len(samples) < cfg.min_samples:
            return None

        xs = [s.timestamp for s in samples]
        ys = self._usage_series(samples)
        fit = linear_fit(xs, ys)
        if fit is None:
            return None

        rate = fit.slope * cfg.rate_interval_seconds
        if rate < cfg.min_growth_rate or fit.r_squared < cfg.min_confidence:
            return None

        duration_intervals = (xs[-1] - xs[0]) / cfg.rate_interval_seconds
        score = rate * duration_intervals * fit.r_squared

        return LeakCandidate(
            leak_type=self._classify_shape(ys),
            window_start=xs[0],
            window_end=xs[-1],
            growth_rate_per_interval=rate,
            confidence_score=fit.r_squared,
            severity_level=self.classify_severity(score),
            severity_score=score,
            sample_count=len(samples),
            start_usage=ys[0],
            end_usage=ys[-1],
            affected_components=self._affected_components(samples),
        )

    def _classify_shape(self, values: List[float]) -> LeakType:
        net = values[-1] - values[0]
        if net <= 0:
            return LeakType.SUSTAINED_GROWTH

        steps = [b - a for a, b in zip(values, values[1:])]
        biggest = max(steps)
        index = steps.index(biggest)
        pre_spike = values[index]
        if biggest >= self.config.spike_fraction * net and min(values[index + 1:]) > pre_spike:
            return LeakType.SPIKE_NO_RECOVERY
        return LeakType.SUSTAINED_GROWTH

    def _affected_components(self, samples: List[MemorySample]) -> List[str]:
        """Components whose relative growth outpaces total relative growth."""
        total_rate = _relative_slope(
            [s.timestamp for s in samples],
            [float(s.total_usage_bytes) for s in samples],
        )
        if total_rate is None:
            return []

        names = sorted({name for s in samples for name in s.component_breakdown})
        affected = []
        for name in names:
            points = [
                (s.timestamp, float(s.component_breakdown[name]))
                for s in samples if name in s.component_breakdown
            ]
            rate = _relative_slope([p[0] for p in points], [p[1] for p in points])
            if rate is not None and rate > 0 and rate > total_rate:
                affected.append(name)
        return affected


def _relative_slope(xs: List[float], ys: List[float]) -> Optional[float]:
    """Slope divided by mean level; None when undefined."""
    if len(xs) < 2:
        return None
    mean = sum(ys) / len(ys)
    if mean <= 0:
        return None
    fit = linear_fit(xs, ys)
    if fit is None:
        return None
    return fit.slope / mean


def highest_severity(candidates: Sequence[LeakCandidate]) -> Optional[SeverityLevel]:
    """The most severe level among candidates, or None."""
    if not candidates:
        return None
    return max((c.severity_level for c in candidates), key=SEVERITY_ORDER.get)


__all__ = [
    'LeakType',
    'SeverityLevel',
    'SEVERITY_ORDER',
    'LeakDetectorConfig',
    'LeakCandidate',
    'LeakDetector',
    'highest_severity',
]
