"""
Recommendation Engine - rule-based memory advice.

Recommendations come from a declarative table of rules. Each rule pairs a
predicate over a RecommendationContext with a builder, so every rule can be
tested on its own and the output for fixed inputs is deterministic.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .leaks import LeakCandidate, SeverityLevel, SEVERITY_ORDER


class Priority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


@dataclass
class Recommendation:
    """A prioritized, human-actionable suggestion"""
    title: str
    description: str
    priority: Priority
    implementation_complexity: str
    risk_level: str
    expected_benefit_percentage: Optional[float] = None
    rule: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'title': self.title,
            'description': self.description,
            'priority': self.priority.value,
            'implementation_complexity': self.implementation_complexity,
            'risk_level': self.risk_level,
            'expected_benefit_percentage': self.expected_benefit_percentage,
            'rule': self.rule,
            'details': dict(self.details),
        }


@dataclass
class RecommendationContext:
    """Inputs the rules are evaluated against"""
    current_stats: Mapping[str, Any]
    leak_candidates: Sequence[LeakCandidate]
    efficiency_score: Optional[float]
    warning_threshold_pct: float = 70.0
    low_efficiency_threshold: float = 60.0
    dominance_share: float = 0.5

    @property
    def usage_percentage(self) -> Optional[float]:
        return self.current_stats.get('usage_percentage')

    @property
    def is_unbounded(self) -> bool:
        return (
            'total_usage_bytes' in self.current_stats
            and self.current_stats.get('limit_bytes') is None
        )

    @property
    def is_stale(self) -> bool:
        return bool(self.current_stats.get('stale'))

    @property
    def is_low_efficiency(self) -> bool:
        return self.efficiency_score is not None and self.efficiency_score < self.low_efficiency_threshold

    def severe_leaks(self) -> List[LeakCandidate]:
        return [
            c for c in self.leak_candidates
            if SEVERITY_ORDER[c.severity_level] >= SEVERITY_ORDER[SeverityLevel.HIGH]
        ]

    def dominant_component(self):
        """(name, share) of the largest component if it dominates, else None."""
        breakdown = self.current_stats.get('component_breakdown') or {}
        total = self.current_stats.get('total_usage_bytes') or 0
        if not breakdown or total <= 0:
            return None
        name = max(sorted(breakdown), key=lambda n: breakdown[n])
        share = breakdown[name] / total
        if share >= self.dominance_share:
            return name, share
        return None


@dataclass(frozen=True)
class Rule:
    name: str
    predicate: Callable[[RecommendationContext], bool]
    build: Callable[[RecommendationContext], Recommendation]


def _worst(candidates: Sequence[LeakCandidate]) -> LeakCandidate:
    return max(
        candidates,
        key=lambda c: (SEVERITY_ORDER[c.severity_level], c.severity_score),
    )


def _build_active_leak(ctx: RecommendationContext) -> Recommendation:
    leak = _worst(ctx.severe_leaks())
    components = ', '.join(leak.affected_components) or 'no single component'
    return Recommendation(
        title="Investigate memory leak",
        description=(
            f"Usage grew {leak.growth_rate_per_interval:.2f} points per hour over "
            f"{leak.duration_seconds / 3600:.1f} hours ({leak.leak_type.value}, "
            f"confidence {leak.confidence_score:.2f}). Fastest growth: {components}."
        ),
        priority=Priority.HIGH,
        implementation_complexity="high",
        risk_level="high",
        expected_benefit_percentage=round(min(50.0, max(0.0, leak.end_usage - leak.start_usage)), 1),
        details={'leak': leak.to_dict()},
    )


def _build_emerging_leak(ctx: RecommendationContext) -> Recommendation:
    leak = _worst(ctx.leak_candidates)
    return Recommendation(
        title="Watch emerging memory growth",
        description=(
            f"A {leak.severity_level.value}-severity growth trend of "
            f"{leak.growth_rate_per_interval:.2f} points per hour was detected. "
            "Review recent changes and keep monitoring."
        ),
        priority=Priority.MEDIUM,
        implementation_complexity="medium",
        risk_level="medium",
        expected_benefit_percentage=round(min(20.0, max(0.0, leak.end_usage - leak.start_usage)), 1),
        details={'leak': leak.to_dict()},
    )


def _build_dominant_component(ctx: RecommendationContext) -> Recommendation:
    name, share = ctx.dominant_component()
    return Recommendation(
        title=f"Optimize component '{name}'",
        description=(
            f"'{name}' accounts for {share * 100:.0f}% of memory while the efficiency "
            f"score is {ctx.efficiency_score:.0f}. Reduce its caches or working set."
        ),
        priority=Priority.HIGH,
        implementation_complexity="medium",
        risk_level="low",
        expected_benefit_percentage=round(share * 30, 1),
        details={'component': name, 'share': round(share, 4)},
    )


def _build_near_limit(ctx: RecommendationContext) -> Recommendation:
    return Recommendation(
        title="Raise the memory limit or prune more aggressively",
        description=(
            f"Usage is at {ctx.usage_percentage:.1f}% of the limit with no leak detected. "
            "The workload likely needs more headroom, or history and caches can be "
            "pruned more aggressively."
        ),
        priority=Priority.MEDIUM,
        implementation_complexity="low",
        risk_level="low",
        expected_benefit_percentage=round(max(0.0, ctx.usage_percentage - ctx.warning_threshold_pct) + 10, 1),
    )


def _build_low_efficiency(ctx: RecommendationContext) -> Recommendation:
    score = ctx.efficiency_score
    return Recommendation(
        title="Improve memory efficiency",
        description=(
            f"Efficiency score is {score:.0f}/100. Smooth allocation bursts and free "
            "large temporary structures promptly."
        ),
        priority=Priority.MEDIUM if score < 40 else Priority.LOW,
        implementation_complexity="medium",
        risk_level="low",
        expected_benefit_percentage=round((ctx.low_efficiency_threshold - score) / 2, 1),
    )


def _build_unbounded(ctx: RecommendationContext) -> Recommendation:
    return Recommendation(
        title="Configure a memory limit",
        description=(
            "No memory limit could be determined, so usage percentages, alerts and "
            "forecasts are unavailable. Set memory_limit_mb explicitly."
        ),
        priority=Priority.LOW,
        implementation_complexity="low",
        risk_level="low",
    )


def _build_stale(ctx: RecommendationContext) -> Recommendation:
    return Recommendation(
        title="Sampling has lagged",
        description=(
            f"Monitoring data is stale as of {ctx.current_stats.get('data_as_of')}. "
            "Check that the monitor is running and sampling succeeds."
        ),
        priority=Priority.MEDIUM,
        implementation_complexity="low",
        risk_level="medium",
    )


DEFAULT_RULES = (
    Rule('active_leak', lambda ctx: bool(ctx.severe_leaks()), _build_active_leak),
    Rule(
        'emerging_leak',
        lambda ctx: bool(ctx.leak_candidates) and not ctx.severe_leaks(),
        _build_emerging_leak,
    ),
    Rule(
        'dominant_component',
        lambda ctx: ctx.is_low_efficiency and ctx.dominant_component() is not None,
        _build_dominant_component,
    ),
    Rule(
        'near_limit_no_leak',
        lambda ctx: (
            ctx.usage_percentage is not None
            and ctx.usage_percentage >= ctx.warning_threshold_pct
            and not ctx.leak_candidates
        ),
        _build_near_limit,
    ),
    Rule(
        'low_efficiency',
        lambda ctx: ctx.is_low_efficiency and ctx.dominant_component() is None,
        _build_low_efficiency,
    ),
    Rule('unbounded_limit', lambda ctx: ctx.is_unbounded, _build_unbounded),
    Rule('stale_data', lambda ctx: ctx.is_stale, _build_stale),
)


class RecommendationEngine:
    """Evaluates the rule table against current state."""

    def __init__(
        self,
        rules: Optional[Sequence[Rule]] = None,
        extra_rules: Sequence[Rule] = (),
        warning_threshold_pct: float = 70.0,
        low_efficiency_threshold: float = 60.0,
        dominance_share: float = 0.5,
    ):
        self.rules = tuple(rules if rules is not None else DEFAULT_RULES) + tuple(extra_rules)
        self.warning_threshold_pct = warning_threshold_pct
        self.low_efficiency_threshold = low_efficiency_threshold
        self.dominance_share = dominance_share

    def recommend(
        self,
        current_stats: Optional[Mapping[str, Any]],
        leak_candidates: Sequence[LeakCandidate],
        efficiency_score: Optional[float],
    ) -> List[Recommendation]:
        """
        Produce recommendations ordered by priority (rule order breaks ties).

        Args:
            current_stats: Current stats mapping (as from get_current_stats)
            leak_candidates: Latest leak detection output
            efficiency_score: Current efficiency score (None if unknown)
        """
        ctx = RecommendationContext(
            current_stats=current_stats or {},
            leak_candidates=list(leak_candidates),
            efficiency_score=efficiency_score,
            warning_threshold_pct=self.warning_threshold_pct,
            low_efficiency_threshold=self.low_efficiency_threshold,
            dominance_share=self.dominance_share,
        )

        results = []
        for rule in self.rules:
            if rule.predicate(ctx):
                recommendation = rule.build(ctx)
                if not recommendation.rule:
                    recommendation.rule = rule.name
                results.append(recommendation)

        results.sort(key=lambda r: PRIORITY_RANK[r.priority])
        return results


__all__ = [
    'Priority',
    'Recommendation',
    'RecommendationContext',
    'Rule',
    'DEFAULT_RULES',
    'RecommendationEngine',
]
