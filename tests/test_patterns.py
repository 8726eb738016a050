"""
Tests for usage pattern mining.
"""

import os
import sys
from datetime import timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from membound.analysis.patterns import Granularity, PatternMiner, bucket_for
from membound.constants import BYTES_PER_MB

from conftest import BASE_TS, HOUR, make_sample, make_series

DAY = 24 * HOUR


class TestBuckets:
    """Tests for bucket assignment."""

    def test_hourly_bucket(self):
        assert bucket_for(BASE_TS + 9 * HOUR + 59, Granularity.HOURLY) == (9, "hour-09")

    def test_daily_bucket(self):
        # BASE_TS is a Tuesday
        assert bucket_for(BASE_TS, Granularity.DAILY) == (1, "weekday-Tue")
        assert bucket_for(BASE_TS + 5 * DAY, Granularity.DAILY) == (6, "weekday-Sun")

    def test_timezone_shifts_bucket(self):
        tz = timezone(timedelta(hours=2))
        assert bucket_for(BASE_TS, Granularity.HOURLY, tz) == (2, "hour-02")

    def test_granularity_parse(self):
        assert Granularity.parse('HOURLY') == Granularity.HOURLY
        assert Granularity.parse(Granularity.DAILY) == Granularity.DAILY
        with pytest.raises(ValueError):
            Granularity.parse('weekly')


class TestPatternMiner:
    """Tests for PatternMiner.mine."""

    def test_empty_history(self):
        assert PatternMiner().mine([]) == []

    def test_hourly_aggregates(self):
        # Two days, same value per hour of day
        history = make_series([float(h % 24) for h in range(48)])
        patterns = PatternMiner().mine(history, Granularity.HOURLY)
        assert len(patterns) == 24
        nine = patterns[9]
        assert nine.pattern_name == "hour-09"
        assert nine.count == 2
        assert nine.average_usage == pytest.approx(9.0)
        assert nine.peak_usage == 9.0
        assert nine.stddev == pytest.approx(0.0)
        assert nine.metric == 'usage_percentage'

    def test_only_observed_buckets_returned(self):
        history = [make_sample(BASE_TS + 3 * HOUR, pct=10), make_sample(BASE_TS + 7 * HOUR, pct=20)]
        names = [p.pattern_name for p in PatternMiner().mine(history)]
        assert names == ["hour-03", "hour-07"]

    def test_peak_and_stddev(self):
        history = [
            make_sample(BASE_TS + d * DAY + 60, pct=v) for d, v in enumerate([10, 20, 30])
        ]
        pattern = PatternMiner().mine(history)[0]
        assert pattern.count == 3
        assert pattern.peak_usage == 30
        assert pattern.average_usage == pytest.approx(20.0)
        assert pattern.stddev == pytest.approx((200 / 3) ** 0.5)

    def test_daily_granularity(self):
        history = make_series([50.0] * 14, step=DAY)
        patterns = PatternMiner().mine(history, 'daily')
        assert len(patterns) == 7
        assert all(p.count == 2 for p in patterns)
        assert patterns[0].pattern_name == "weekday-Mon"

    def test_confidence_saturates(self):
        history = make_series([40.0] * 10, step=DAY)
        miner = PatternMiner(hourly_saturation=5)
        assert miner.mine(history)[0].confidence_score == 1.0
        assert PatternMiner().mine(history)[0].confidence_score == pytest.approx(0.1)

    def test_predictive_power_needs_observations(self):
        few = make_series([40.0] * 4, step=DAY)
        assert PatternMiner().mine(few)[0].predictive_power == 0.0

    def test_stable_bucket_more_predictive_than_noisy(self):
        stable = make_series([40.0] * 10, step=DAY)
        noisy = make_series([10.0, 70.0] * 5, step=DAY)
        miner = PatternMiner()
        assert miner.mine(stable)[0].predictive_power > miner.mine(noisy)[0].predictive_power
        assert miner.mine(noisy)[0].predictive_power == 0.0

    def test_unbounded_history_mined_in_megabytes(self):
        history = [
            make_sample(BASE_TS, usage_bytes=100 * BYTES_PER_MB, limit_bytes=None),
            make_sample(BASE_TS + 60, usage_bytes=300 * BYTES_PER_MB, limit_bytes=None),
        ]
        pattern = PatternMiner().mine(history)[0]
        assert pattern.metric == 'usage_mb'
        assert pattern.average_usage == pytest.approx(200.0)

    def test_mining_is_pure(self, hourly_growth_history):
        miner = PatternMiner()
        first = [p.to_dict() for p in miner.mine(hourly_growth_history)]
        second = [p.to_dict() for p in miner.mine(hourly_growth_history)]
        assert first == second

    def test_match(self):
        miner = PatternMiner()
        patterns = miner.mine(make_series([10.0, 20.0]))
        assert miner.match(patterns, BASE_TS + HOUR + DAY).pattern_name == "hour-01"
        assert miner.match(patterns, BASE_TS + 5 * HOUR) is None
        assert miner.match([], BASE_TS) is None
