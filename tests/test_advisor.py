"""
Tests for the Recommendation Engine.

Each rule is exercised on its own, plus ordering and determinism.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from membound.analysis.advisor import (
    DEFAULT_RULES,
    Priority,
    Recommendation,
    RecommendationEngine,
    Rule,
)
from membound.analysis.leaks import LeakCandidate, LeakType, SeverityLevel

MB = 1024 * 1024


def make_leak(level=SeverityLevel.HIGH, score=18.0, components=None):
    return LeakCandidate(
        leak_type=LeakType.SUSTAINED_GROWTH,
        window_start=0.0,
        window_end=9 * 3600.0,
        growth_rate_per_interval=2.0,
        confidence_score=0.95,
        severity_level=level,
        severity_score=score,
        sample_count=10,
        start_usage=50.0,
        end_usage=68.0,
        affected_components=list(components or []),
    )


def stats(pct=40.0, total=400 * MB, limit=1000 * MB, components=None, stale=False):
    return {
        'usage_percentage': pct,
        'total_usage_bytes': total,
        'limit_bytes': limit,
        'component_breakdown': dict(components or {}),
        'stale': stale,
        'data_as_of': '2023-11-14T00:00:00+00:00',
    }


def rules_fired(recommendations):
    return [r.rule for r in recommendations]


class TestRules:
    """Tests for individual rules."""

    def test_healthy_state_gives_nothing(self):
        assert RecommendationEngine().recommend(stats(), [], 100.0) == []

    def test_active_leak_is_high_priority(self):
        recs = RecommendationEngine().recommend(stats(), [make_leak(components=['cache'])], 90.0)
        assert rules_fired(recs) == ['active_leak']
        assert recs[0].priority == Priority.HIGH
        assert 'cache' in recs[0].description
        assert recs[0].expected_benefit_percentage == 18.0

    def test_emerging_leak_is_medium_priority(self):
        recs = RecommendationEngine().recommend(
            stats(), [make_leak(SeverityLevel.MEDIUM, score=6.0)], 90.0
        )
        assert rules_fired(recs) == ['emerging_leak']
        assert recs[0].priority == Priority.MEDIUM

    def test_dominant_component_with_low_efficiency(self):
        recs = RecommendationEngine().recommend(
            stats(components={'cache': 300 * MB, 'db': 50 * MB}), [], 45.0
        )
        assert rules_fired(recs) == ['dominant_component']
        assert "'cache'" in recs[0].title
        assert recs[0].priority == Priority.HIGH

    def test_dominant_component_needs_low_efficiency(self):
        recs = RecommendationEngine().recommend(
            stats(components={'cache': 300 * MB}), [], 95.0
        )
        assert recs == []

    def test_near_limit_without_leak(self):
        recs = RecommendationEngine().recommend(stats(pct=85.0, total=850 * MB), [], 80.0)
        assert rules_fired(recs) == ['near_limit_no_leak']
        assert recs[0].priority == Priority.MEDIUM

    def test_near_limit_suppressed_by_leak(self):
        recs = RecommendationEngine().recommend(stats(pct=85.0), [make_leak()], 80.0)
        assert 'near_limit_no_leak' not in rules_fired(recs)

    def test_low_efficiency_without_dominant_component(self):
        recs = RecommendationEngine().recommend(stats(), [], 50.0)
        assert rules_fired(recs) == ['low_efficiency']
        assert recs[0].priority == Priority.LOW

        recs = RecommendationEngine().recommend(stats(), [], 30.0)
        assert recs[0].priority == Priority.MEDIUM

    def test_unbounded_limit(self):
        recs = RecommendationEngine().recommend(stats(pct=None, limit=None), [], 100.0)
        assert rules_fired(recs) == ['unbounded_limit']

    def test_empty_stats_are_not_unbounded(self):
        assert RecommendationEngine().recommend({}, [], None) == []
        assert RecommendationEngine().recommend(None, [], None) == []

    def test_stale_data(self):
        recs = RecommendationEngine().recommend(stats(stale=True), [], 100.0)
        assert rules_fired(recs) == ['stale_data']
        assert '2023-11-14' in recs[0].description


class TestEngine:
    """Tests for ordering and extension."""

    def test_sorted_by_priority(self):
        recs = RecommendationEngine().recommend(
            stats(pct=None, limit=None, stale=True), [make_leak()], 50.0
        )
        priorities = [r.priority for r in recs]
        assert priorities == sorted(priorities, key=lambda p: ['high', 'medium', 'low'].index(p.value))
        assert recs[0].rule == 'active_leak'
        assert recs[-1].rule == 'unbounded_limit'

    def test_deterministic(self):
        engine = RecommendationEngine()
        args = (stats(pct=85.0, components={'cache': 500 * MB}), [make_leak()], 40.0)
        first = [r.to_dict() for r in engine.recommend(*args)]
        second = [r.to_dict() for r in engine.recommend(*args)]
        assert first == second

    def test_extra_rules(self):
        custom = Rule(
            'always',
            lambda ctx: True,
            lambda ctx: Recommendation(
                title="Custom", description="custom rule", priority=Priority.LOW,
                implementation_complexity="low", risk_level="low",
            ),
        )
        recs = RecommendationEngine(extra_rules=[custom]).recommend(stats(), [], 100.0)
        assert rules_fired(recs) == ['always']

    def test_custom_rule_table(self):
        engine = RecommendationEngine(rules=[r for r in DEFAULT_RULES if r.name != 'stale_data'])
        assert engine.recommend(stats(stale=True), [], 100.0) == []

    def test_to_dict(self):
        data = RecommendationEngine().recommend(stats(), [make_leak()], 90.0)[0].to_dict()
        assert data['priority'] == 'high'
        assert data['rule'] == 'active_leak'
        assert data['details']['leak']['severity_level'] == 'high'
