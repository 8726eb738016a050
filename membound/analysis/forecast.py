"""
Forecaster - short-term usage extrapolation.

Fits a recency-weighted line to the most recent samples and projects it
forward, optionally nudged toward the historical average of the matching
usage pattern bucket. Refuses to extrapolate from too little history.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence

from ..constants import ForecastDefaults, SECONDS_PER_HOUR, ThresholdDefaults
from ..sampler import MemorySample
from .patterns import PatternMiner, UsagePattern
from .regression import exponential_weights, linear_fit

logger = logging.getLogger(__name__)


class RiskLevel(Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    INSUFFICIENT_DATA = "insufficient_data"


@dataclass(frozen=True)
class ForecastPoint:
    timestamp: float
    predicted_usage_percentage: float

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp,
            'timestamp_iso': datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            'predicted_usage_percentage': round(self.predicted_usage_percentage, 2),
        }


@dataclass
class Forecast:
    """Forecast result with a categorical risk summary"""
    status: str
    risk_assessment: RiskLevel
    predictions: List[ForecastPoint] = field(default_factory=list)
    horizon: int = 0
    step_seconds: float = 0.0
    sample_count: int = 0
    trend_per_hour: Optional[float] = None
    fit_confidence: Optional[float] = None
    time_to_critical_seconds: Optional[float] = None
    reason: Optional[str] = None

    @property
    def is_sufficient(self) -> bool:
        return self.status == 'ok'

    def to_dict(self) -> Dict:
        return {
            'status': self.status,
            'risk_assessment': self.risk_assessment.value,
            'predictions': [p.to_dict() for p in self.predictions],
            'horizon': self.horizon,
            'step_seconds': self.step_seconds,
            'sample_count': self.sample_count,
            'trend_per_hour': round(self.trend_per_hour, 4) if self.trend_per_hour is not None else None,
            'fit_confidence': round(self.fit_confidence, 4) if self.fit_confidence is not None else None,
            'time_to_critical_seconds': (
                round(self.time_to_critical_seconds, 1)
                if self.time_to_critical_seconds is not None else None
            ),
            'reason': self.reason,
        }


class Forecaster:
    """Extrapolates usage percentage from recent history."""

    def __init__(
        self,
        warning_threshold_pct: float = ThresholdDefaults.WARNING_PCT,
        critical_threshold_pct: float = ThresholdDefaults.CRITICAL_PCT,
        min_samples: int = ForecastDefaults.MIN_SAMPLES,
        step_seconds: float = ForecastDefaults.STEP_SECONDS,
        default_horizon: int = ForecastDefaults.HORIZON,
        lookback: int = ForecastDefaults.LOOKBACK,
        half_life: float = ForecastDefaults.HALF_LIFE_SAMPLES,
        pattern_weight: float = ForecastDefaults.PATTERN_WEIGHT,
        pattern_miner: Optional[PatternMiner] = None,
    ):
        self.warning_threshold_pct = warning_threshold_pct
        self.critical_threshold_pct = critical_threshold_pct
        self.min_samples = min_samples
        self.step_seconds = step_seconds
        self.default_horizon = default_horizon
        self.lookback = lookback
        self.half_life = half_life
        self.pattern_weight = pattern_weight
        self.pattern_miner = pattern_miner or PatternMiner()

    @classmethod
    def from_config(cls, config, **kwargs) -> 'Forecaster':
        kwargs.setdefault('warning_threshold_pct', config.warning_threshold_pct)
        kwargs.setdefault('critical_threshold_pct', config.critical_threshold_pct)
        kwargs.setdefault('min_samples', config.forecast_min_samples)
        kwargs.setdefault('step_seconds', config.forecast_step_seconds)
        kwargs.setdefault('default_horizon', config.forecast_horizon)
        return cls(**kwargs)

    def _insufficient(self, count: int, horizon: int, reason: str) -> Forecast:
        return Forecast(
            status='insufficient_data',
            risk_assessment=RiskLevel.INSUFFICIENT_DATA,
            horizon=horizon,
            step_seconds=self.step_seconds,
            sample_count=count,
            reason=reason,
        )

    def classify_risk(self, values: Sequence[float]) -> RiskLevel:
        if any(v >= self.critical_threshold_pct for v in values):
            return RiskLevel.HIGH
        if any(v >= self.warning_threshold_pct for v in values):
            return RiskLevel.MODERATE
        return RiskLevel.LOW

    def forecast(
        self,
        history: Sequence[MemorySample],
        horizon: Optional[int] = None,
        patterns: Optional[Sequence[UsagePattern]] = None,
    ) -> Forecast:
        """
        Predict usage percentage for `horizon` future steps.

        Args:
            history: Samples in any order
            horizon: Number of points to predict (default from config)
            patterns: Usage patterns to blend in (percentage metric only)

        Returns:
            Forecast; status 'insufficient_data' when history is too short
        """
        horizon = self.default_horizon if horizon is None else horizon
        if horizon < 1:
            raise ValueError("horizon must be >= 1")

        usable = sorted(
            (s for s in history if s.usage_percentage is not None),
            key=lambda s: s.timestamp,
        )
        if len(usable) < self.min_samples:
            reason = (
                f"need at least {self.min_samples} bounded samples, have {len(usable)}"
            )
            return self._insufficient(len(usable), horizon, reason)

        recent = usable[-self.lookback:]
        xs = [s.timestamp for s in recent]
        ys = [s.usage_percentage for s in recent]
        fit = linear_fit(xs, ys, exponential_weights(len(recent), self.half_life))
        if fit is None:
            return self._insufficient(len(usable), horizon, "samples share a single timestamp")

        blend_patterns = [
            p for p in (patterns or []) if p.metric == 'usage_percentage'
        ]

        last_ts = xs[-1]
        predictions = []
        for i in range(1, horizon + 1):
            ts = last_ts + i * self.step_seconds
            value = fit.predict(ts)
            if blend_patterns:
                match = self.pattern_miner.match(blend_patterns, ts)
                if match is not None and match.predictive_power > 0:
                    weight = self.pattern_weight * match.predictive_power
                    value = (1 - weight) * value + weight * match.average_usage
            predictions.append(ForecastPoint(ts, max(0.0, min(100.0, value))))

        current = fit.predict(last_ts)
        if current >= self.critical_threshold_pct:
            time_to_critical = 0.0
        elif fit.slope > 0:
            time_to_critical = (self.critical_threshold_pct - current) / fit.slope
        else:
            time_to_critical = None

        risk = self.classify_risk([p.predicted_usage_percentage for p in predictions])
        logger.debug(f"Forecast over {horizon} steps: risk={risk.value}")

        return Forecast(
            status='ok',
            risk_assessment=risk,
            predictions=predictions,
            horizon=horizon,
            step_seconds=self.step_seconds,
            sample_count=len(usable),
            trend_per_hour=fit.slope * SECONDS_PER_HOUR,
            fit_confidence=fit.r_squared,
            time_to_critical_seconds=time_to_critical,
        )


__all__ = ['RiskLevel', 'ForecastPoint', 'Forecast', 'Forecaster']
