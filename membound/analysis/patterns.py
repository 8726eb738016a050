"""
Pattern Miner - hourly and daily usage aggregation.

Buckets samples by hour of day or by weekday and accumulates total, count,
peak and sum of squares per bucket. Mining is a pure function of its input:
re-mining the same history yields identical output.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Dict, List, Optional, Sequence

from ..constants import PatternDefaults
from ..sampler import MemorySample

WEEKDAYS = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')


class Granularity(Enum):
    HOURLY = "hourly"
    DAILY = "daily"

    @classmethod
    def parse(cls, value) -> 'Granularity':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"unknown granularity {value!r}; expected one of "
                f"{', '.join(g.value for g in cls)}"
            )


@dataclass(frozen=True)
class UsagePattern:
    """Aggregate of usage observations in one time bucket"""
    pattern_name: str
    granularity: Granularity
    bucket_index: int
    metric: str                 # 'usage_percentage' or 'usage_mb'
    total_usage: float
    count: int
    peak_usage: float
    sum_squares: float
    confidence_score: float
    predictive_power: float

    @property
    def average_usage(self) -> float:
        return self.total_usage / self.count

    @property
    def stddev(self) -> float:
        mean = self.average_usage
        variance = max(0.0, self.sum_squares / self.count - mean * mean)
        return math.sqrt(variance)

    def to_dict(self) -> Dict:
        return {
            'pattern_name': self.pattern_name,
            'granularity': self.granularity.value,
            'metric': self.metric,
            'total_usage': round(self.total_usage, 4),
            'count': self.count,
            'average_usage': round(self.average_usage, 2),
            'peak_usage': round(self.peak_usage, 2),
            'stddev': round(self.stddev, 2),
            'confidence_score': round(self.confidence_score, 4),
            'predictive_power': round(self.predictive_power, 4),
        }


def bucket_for(timestamp: float, granularity: Granularity, tz: tzinfo = timezone.utc):
    """Return (bucket_index, pattern_name) for a timestamp."""
    moment = datetime.fromtimestamp(timestamp, tz=tz)
    if granularity == Granularity.HOURLY:
        return moment.hour, f"hour-{moment.hour:02d}"
    weekday = moment.weekday()
    return weekday, f"weekday-{WEEKDAYS[weekday]}"


class PatternMiner:
    """Aggregates history into hourly or daily UsagePattern buckets."""

    def __init__(
        self,
        tz: tzinfo = timezone.utc,
        hourly_saturation: int = PatternDefaults.HOURLY_SATURATION,
        daily_saturation: int = PatternDefaults.DAILY_SATURATION,
        min_predictive_count: int = PatternDefaults.MIN_PREDICTIVE_COUNT,
        variance_tolerance: float = PatternDefaults.VARIANCE_TOLERANCE_PCT,
    ):
        """
        Initialize PatternMiner.

        Args:
            tz: Timezone used to assign buckets
            hourly_saturation: Observations at which hourly confidence reaches 1
            daily_saturation: Observations at which daily confidence reaches 1
            min_predictive_count: Fewer observations give zero predictive power
            variance_tolerance: Standard deviation at which predictive power reaches 0
        """
        self.tz = tz
        self.hourly_saturation = hourly_saturation
        self.daily_saturation = daily_saturation
        self.min_predictive_count = min_predictive_count
        self.variance_tolerance = variance_tolerance

    def mine(
        self,
        history: Sequence[MemorySample],
        granularity=Granularity.HOURLY,
    ) -> List[UsagePattern]:
        """
        Aggregate samples into buckets.

        Uses usage percentage when every sample has one, otherwise usage in
        megabytes. Only buckets with at least one observation are returned,
        ordered by bucket index.
        """
        granularity = Granularity.parse(granularity)
        if not history:
            return []

        use_percentage = all(s.usage_percentage is not None for s in history)
        metric = 'usage_percentage' if use_percentage else 'usage_mb'

        # index -> [name, total, count, peak, sum_squares]
        buckets: Dict[int, list] = {}
        for sample in history:
            value = sample.usage_percentage if use_percentage else sample.total_usage_mb
            index, name = bucket_for(sample.timestamp, granularity, self.tz)
            acc = buckets.get(index)
            if acc is None:
                buckets[index] = [name, value, 1, value, value * value]
            else:
                acc[1] += value
                acc[2] += 1
                acc[3] = max(acc[3], value)
                acc[4] += value * value

        saturation = (
            self.hourly_saturation if granularity == Granularity.HOURLY else self.daily_saturation
        )

        patterns = []
        for index in sorted(buckets):
            name, total, count, peak, sum_squares = buckets[index]
            confidence = min(1.0, count / saturation)
            mean = total / count
            stddev = math.sqrt(max(0.0, sum_squares / count - mean * mean))
            if count < self.min_predictive_count:
                predictive = 0.0
            else:
                predictive = confidence * max(0.0, 1.0 - stddev / self.variance_tolerance)

            patterns.append(UsagePattern(
                pattern_name=name,
                granularity=granularity,
                bucket_index=index,
                metric=metric,
                total_usage=total,
                count=count,
                peak_usage=peak,
                sum_squares=sum_squares,
                confidence_score=confidence,
                predictive_power=predictive,
            ))
        return patterns

    def match(
        self,
        patterns: Sequence[UsagePattern],
        timestamp: float,
    ) -> Optional[UsagePattern]:
        """Find the pattern whose bucket contains the given time."""
        if not patterns:
            return None
        _, name = bucket_for(timestamp, patterns[0].granularity, self.tz)
        for pattern in patterns:
            if pattern.pattern_name == name:
                return pattern
        return None


__all__ = ['Granularity', 'UsagePattern', 'PatternMiner', 'bucket_for', 'WEEKDAYS']
