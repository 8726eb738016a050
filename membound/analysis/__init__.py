"""
Analysis over memory sample history.

- leaks: regression-based leak candidates
- patterns: hourly/daily usage buckets
- forecast: short-term extrapolation with risk classification
- advisor: rule-based recommendations
"""

from .regression import TrendFit, linear_fit
from .leaks import (
    LeakCandidate,
    LeakDetector,
    LeakDetectorConfig,
    LeakType,
    SeverityLevel,
)
from .patterns import Granularity, PatternMiner, UsagePattern
from .forecast import Forecast, ForecastPoint, Forecaster, RiskLevel
from .advisor import Priority, Recommendation, RecommendationEngine, Rule

__all__ = [
    'TrendFit',
    'linear_fit',
    'LeakCandidate',
    'LeakDetector',
    'LeakDetectorConfig',
    'LeakType',
    'SeverityLevel',
    'Granularity',
    'PatternMiner',
    'UsagePattern',
    'Forecast',
    'ForecastPoint',
    'Forecaster',
    'RiskLevel',
    'Priority',
    'Recommendation',
    'RecommendationEngine',
    'Rule',
]
