"""
Memory Monitor - sampling orchestration and query API.

Owns the sampling cadence and wires MetricSampler -> HistoryStore ->
AlertManager on every tick. Leak detection, pattern mining, forecasting and
recommendations run lazily when queried, over an immutable snapshot of the
history, so queries never block or tear a concurrent append.

Features:
- Background sampling thread that never overlaps itself (late ticks are skipped)
- Sampling failures widen the interval instead of stopping the monitor
- Stale data reporting when sampling has lagged
- Query API returning plain dicts for any transport
- Command API: force_sample, dismiss_alert, apply_preset, reset_configuration
- Optional telemetry gauge export

Several monitors may run in one process; there is no shared global state.
"""

import gc
import time
import threading
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .alerts import AlertManager, AlertSeverity, Alert
from .analysis.advisor import RecommendationEngine
from .analysis.forecast import Forecaster
from .analysis.leaks import LeakCandidate, LeakDetector, LeakDetectorConfig, highest_severity, SeverityLevel
from .analysis.patterns import Granularity, PatternMiner
from .analysis.regression import linear_fit
from .config import MonitorConfig, get_preset, load_config
from .constants import BYTES_PER_MB, SECONDS_PER_HOUR, SamplingDefaults
from .history import HistoryStore, RetentionPolicy
from .sampler import MemorySample, MetricSampler, coefficient_of_variation
from .utils.error_handling import ErrorAggregator, ErrorCategory, handle_error

logger = logging.getLogger(__name__)

LEAK_CONDITION = "memory_leak"
STALE_CONDITION = "sampling_stale"


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _efficiency_rating(score: float) -> str:
    if score >= 90:
        return "excellent"
    if score >= 75:
        return "good"
    if score >= 60:
        return "fair"
    return "poor"


class MemoryMonitor:
    """
    Monitors memory usage and answers queries about it.

    Provides:
    - Periodic sampling into a bounded history
    - Threshold alerts with hysteresis
    - On-demand leak detection, usage patterns, forecast and recommendations
    - Efficiency analysis and summary statistics
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        sampler: Optional[MetricSampler] = None,
        history: Optional[HistoryStore] = None,
        alert_manager: Optional[AlertManager] = None,
        component_provider: Optional[Callable[[], Dict[str, int]]] = None,
        clock: Callable[[], float] = time.time,
        on_alert: Optional[Callable[[Alert], None]] = None,
        telemetry_manager=None,
    ):
        """
        Initialize MemoryMonitor.

        Args:
            config: MonitorConfig instance (defaults if omitted)
            sampler: Sampler to use (built from config if omitted)
            history: History store (in-memory, bounded by config if omitted)
            alert_manager: Alert manager (built from config if omitted)
            component_provider: Callback mapping component names to bytes
            clock: Returns the current epoch time
            on_alert: Callback for newly raised alerts
            telemetry_manager: Object with set_gauge(name, value)
        """
        self.config = config or MonitorConfig()
        self._clock = clock

        self.sampler = sampler or MetricSampler.from_config(
            self.config, clock=clock, component_provider=component_provider
        )
        if sampler is not None and component_provider is not None:
            self.sampler.set_component_provider(component_provider)

        if history is None:
            history = HistoryStore(policy=RetentionPolicy.from_config(self.config))
        elif history.policy is None:
            history.policy = RetentionPolicy.from_config(self.config)
        self.history = history

        self.alerts = alert_manager or AlertManager.from_config(self.config, clock=clock)
        if on_alert is not None:
            self.alerts.add_callback(on_alert)

        self.leak_detector = LeakDetector(LeakDetectorConfig.from_config(self.config))
        self.pattern_miner = PatternMiner()
        self.forecaster = Forecaster.from_config(self.config, pattern_miner=self.pattern_miner)
        self.advisor = RecommendationEngine(warning_threshold_pct=self.config.warning_threshold_pct)

        # State
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()
        self._lock = threading.Lock()

        self._baseline_bytes: Optional[int] = None
        self._last_sample_at: Optional[float] = None
        self._samples_taken = 0
        self._skipped_ticks = 0
        self._failures_total = 0
        self._consecutive_failures = 0
        self._errors = ErrorAggregator(max_errors=100)

        self._telemetry_manager = telemetry_manager

    @classmethod
    def from_file(cls, path, **kwargs) -> 'MemoryMonitor':
        """Create a monitor from a YAML/JSON config file."""
        return cls(config=load_config(path), **kwargs)

    def set_telemetry_manager(self, telemetry_manager) -> None:
        """Set telemetry manager for gauge export"""
        self._telemetry_manager = telemetry_manager

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def current_interval(self) -> float:
        """Polling interval, widened after consecutive sampling failures."""
        factor = min(SamplingDefaults.MAX_BACKOFF_FACTOR, 2 ** self._consecutive_failures)
        return self.config.poll_interval_seconds * factor

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start background sampling. Returns False if monitoring is disabled."""
        if self._running:
            return True

        if not self.config.monitoring_enabled:
            logger.info("Memory monitoring disabled by configuration")
            return False

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._monitor_loop, name="membound-monitor", daemon=True
        )
        self._thread.start()
        logger.info(f"Memory monitor started (interval: {self.config.poll_interval_seconds}s)")
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Stop background sampling"""
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Memory monitor stopped")

    def __enter__(self) -> 'MemoryMonitor':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _monitor_loop(self) -> None:
        """Main sampling loop"""
        while self._running:
            self.sample()
            if self._stop_event.wait(self.current_interval):
                break

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def sample(self) -> Optional[MemorySample]:
        """
        Run one sampling tick.

        Non-blocking: if a tick is still in progress this one is skipped and
        counted rather than queued.

        Returns:
            The new sample, or None if skipped or failed
        """
        if not self._tick_lock.acquire(blocking=False):
            with self._lock:
                self._skipped_ticks += 1
            logger.debug("Sampling tick skipped: previous tick still running")
            return None
        try:
            return self._take_sample()
        finally:
            self._tick_lock.release()

    def force_sample(self) -> Optional[MemorySample]:
        """Sample now, waiting for any running tick to finish first."""
        with self._tick_lock:
            return self._take_sample()

    def _take_sample(self) -> Optional[MemorySample]:
        try:
            sample = self.sampler.sample()
        except Exception as e:
            with self._lock:
                self._failures_total += 1
                self._consecutive_failures += 1
                failures = self._consecutive_failures
            handle_error(
                e,
                "memory_monitor.sample",
                ErrorCategory.SYSTEM,
                additional_context={'consecutive_failures': failures},
                aggregator=self._errors,
            )
            return None

        with self._lock:
            if self._consecutive_failures:
                logger.info(f"Sampling recovered after {self._consecutive_failures} failures")
            self._consecutive_failures = 0
            self._samples_taken += 1
            self._last_sample_at = sample.timestamp
            if self._baseline_bytes is None:
                self._baseline_bytes = sample.total_usage_bytes

        self.history.append(sample)
        self.history.prune(now=sample.timestamp)
        self.alerts.evaluate_sample(sample)
        self.alerts.set_condition(STALE_CONDITION, False)
        self._export_metrics(sample)
        return sample

    def _export_metrics(self, sample: MemorySample) -> None:
        """Export gauges to the telemetry manager"""
        if not self._telemetry_manager:
            return

        try:
            self._telemetry_manager.set_gauge("memory.usage_mb", round(sample.total_usage_mb, 2))
            if sample.usage_percentage is not None:
                self._telemetry_manager.set_gauge(
                    "memory.usage_percent", round(sample.usage_percentage, 2)
                )
            self._telemetry_manager.set_gauge(
                "memory.efficiency_score", round(sample.efficiency_score, 1)
            )
            self._telemetry_manager.set_gauge(
                "memory.active_alerts", len(self.alerts.get_active_alerts())
            )
        except Exception as e:
            logger.debug(f"Failed to export memory metrics: {e}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _staleness(self, latest: Optional[MemorySample]):
        if latest is None:
            return True, None
        age = max(0.0, self._clock() - latest.timestamp)
        limit = self.config.poll_interval_seconds * self.config.stale_after_intervals
        return age > limit, age

    def get_current_stats(self) -> Dict[str, Any]:
        """Latest sample plus freshness information."""
        latest = self.history.last()
        stale, age = self._staleness(latest)

        stats: Dict[str, Any] = {
            'available': latest is not None,
            'running': self._running,
            'monitoring_enabled': self.config.monitoring_enabled,
            'stale': stale,
            'data_as_of': _iso(latest.timestamp) if latest else None,
            'last_sample_age_seconds': round(age, 3) if age is not None else None,
            'consecutive_failures': self._consecutive_failures,
            'alert_state': self.alerts.get_state().name.lower(),
        }
        if latest is not None:
            stats.update(latest.to_dict())
            if stale:
                self.alerts.set_condition(
                    STALE_CONDITION,
                    True,
                    AlertSeverity.WARNING,
                    title="Memory data is stale",
                    message=f"No memory sample since {stats['data_as_of']}",
                )
        return stats

    def get_history(self, start: Optional[float] = None, end: Optional[float] = None) -> List[Dict]:
        return [s.to_dict() for s in self.history.range(start, end)]

    def get_recent_samples(self, limit: int = 100) -> List[Dict]:
        return [s.to_dict() for s in self.history.latest(limit)]

    def get_active_alerts(self, include_dismissed: bool = False) -> List[Dict]:
        return [a.to_dict() for a in self.alerts.get_active_alerts(include_dismissed)]

    def detect_leaks(self) -> List[LeakCandidate]:
        """Run leak detection and raise or clear the leak condition alert."""
        if not self.config.leak_detection_enabled:
            return []

        candidates = self.leak_detector.detect(self.history.snapshot())
        worst = highest_severity(candidates)
        severe = worst in (SeverityLevel.HIGH, SeverityLevel.CRITICAL)
        self.alerts.set_condition(
            LEAK_CONDITION,
            severe,
            AlertSeverity.CRITICAL if worst == SeverityLevel.CRITICAL else AlertSeverity.WARNING,
            title="Possible memory leak",
            message=(
                f"{len(candidates)} leak candidate(s), worst severity "
                f"{worst.value if worst else 'none'}"
            ),
        )
        return candidates

    def get_leak_candidates(self) -> List[Dict]:
        return [c.to_dict() for c in self.detect_leaks()]

    def get_usage_patterns(self, granularity='hourly') -> List[Dict]:
        patterns = self.pattern_miner.mine(self.history.snapshot(), Granularity.parse(granularity))
        return [p.to_dict() for p in patterns]

    def get_forecast(self, horizon: Optional[int] = None) -> Dict:
        snapshot = self.history.snapshot()
        patterns = self.pattern_miner.mine(snapshot, Granularity.HOURLY)
        return self.forecaster.forecast(snapshot, horizon, patterns).to_dict()

    def get_recommendations(self) -> List[Dict]:
        stats = self.get_current_stats()
        candidates = self.detect_leaks()
        efficiency = stats.get('efficiency_score')
        return [r.to_dict() for r in self.advisor.recommend(stats, candidates, efficiency)]

    def get_efficiency_analysis(self, window: int = 60) -> Dict:
        """Efficiency score statistics over the most recent samples."""
        recent = self.history.latest(window)
        if not recent:
            return {'available': False, 'sample_count': 0}

        scores = [s.efficiency_score for s in recent]
        readings = [
            s.usage_percentage if s.usage_percentage is not None else s.total_usage_bytes
            for s in recent
        ]
        fit = linear_fit([s.timestamp for s in recent], scores)
        current = scores[-1]

        return {
            'available': True,
            'sample_count': len(recent),
            'current_score': round(current, 1),
            'average_score': round(sum(scores) / len(scores), 1),
            'min_score': round(min(scores), 1),
            'max_score': round(max(scores), 1),
            'trend_per_hour': round(fit.slope * SECONDS_PER_HOUR, 3) if fit else 0.0,
            'usage_volatility': round(coefficient_of_variation(readings), 4),
            'rating': _efficiency_rating(current),
        }

    def get_summary_stats(self) -> Dict:
        """Get summary statistics"""
        latest = self.history.last()
        with self._lock:
            baseline = self._baseline_bytes
            stats = {
                'running': self._running,
                'samples_collected': len(self.history),
                'samples_taken': self._samples_taken,
                'skipped_ticks': self._skipped_ticks,
                'sampling_failures': self._failures_total,
                'consecutive_failures': self._consecutive_failures,
                'current_interval_seconds': self.current_interval,
            }

        stats['alerts'] = self.alerts.get_statistics()
        stats['errors'] = self._errors.get_error_summary()
        stats['config'] = self.config.to_dict()

        if latest is not None:
            stats['current'] = latest.to_dict()
        if baseline:
            stats['baseline_mb'] = round(baseline / BYTES_PER_MB, 2)
        if latest is not None and baseline:
            growth = latest.total_usage_bytes - baseline
            stats['growth_since_baseline_mb'] = round(growth / BYTES_PER_MB, 2)
            stats['growth_since_baseline_percent'] = round(growth / baseline * 100, 2)

        return stats

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def dismiss_alert(self, alert_id: str) -> bool:
        return self.alerts.dismiss(alert_id)

    def apply_preset(self, name: str) -> MonitorConfig:
        """Switch to a named preset."""
        config = get_preset(name)
        self._apply_config(config)
        logger.info(f"Applied configuration preset '{name}'")
        return config

    def reset_configuration(self) -> MonitorConfig:
        """Return to the default configuration."""
        config = MonitorConfig()
        self._apply_config(config)
        logger.info("Configuration reset to defaults")
        return config

    def update_config(self, **changes) -> MonitorConfig:
        """Apply validated changes to the current configuration."""
        config = self.config.replace(**changes)
        self._apply_config(config)
        return config

    def _apply_config(self, config: MonitorConfig) -> None:
        previous = self.config
        self.config = config

        self.sampler.set_thresholds(config.warning_threshold_pct, config.critical_threshold_pct)
        if (config.memory_limit_mb != previous.memory_limit_mb
                or config.detect_limit != previous.detect_limit):
            self.sampler.set_limit(config.memory_limit_bytes, config.detect_limit)

        self.alerts.update_thresholds(
            config.warning_threshold_pct, config.critical_threshold_pct, config.hysteresis_pct
        )
        self.history.policy = RetentionPolicy.from_config(config)
        self.leak_detector = LeakDetector(LeakDetectorConfig.from_config(config))
        self.forecaster = Forecaster.from_config(config, pattern_miner=self.pattern_miner)
        self.advisor = RecommendationEngine(warning_threshold_pct=config.warning_threshold_pct)

        if not config.monitoring_enabled and self._running:
            self.stop()

    def prune_history(self, now: Optional[float] = None) -> int:
        """Apply the configured retention policy now."""
        removed = self.history.prune(RetentionPolicy.from_config(self.config), now=now)
        self.history.compact()
        return removed

    def force_gc(self) -> Dict:
        """Force garbage collection and return stats"""
        before_objects = len(gc.get_objects())
        before_mb = self.sampler.process_memory_mb()

        collected = [gc.collect(i) for i in range(3)]

        after_objects = len(gc.get_objects())
        after_mb = self.sampler.process_memory_mb()

        return {
            'before_objects': before_objects,
            'after_objects': after_objects,
            'freed_objects': before_objects - after_objects,
            'before_mb': round(before_mb, 2),
            'after_mb': round(after_mb, 2),
            'freed_mb': round(before_mb - after_mb, 2),
            'garbage': len(gc.garbage),
            'collected_per_generation': collected,
        }


def create_memory_monitor(
    config: Optional[MonitorConfig] = None,
    preset: Optional[str] = None,
    config_path: Optional[str] = None,
    **kwargs,
) -> MemoryMonitor:
    """
    Create a configured memory monitor.

    Args:
        config: Explicit configuration (takes precedence)
        preset: Named preset used when no config is given
        config_path: YAML/JSON file used when neither config nor preset is given
        **kwargs: Passed to MemoryMonitor

    Returns:
        Configured MemoryMonitor instance
    """
    if config is None:
        if preset is not None:
            config = get_preset(preset)
        else:
            config = load_config(config_path)
    return MemoryMonitor(config=config, **kwargs)


__all__ = ['MemoryMonitor', 'create_memory_monitor', 'LEAK_CONDITION', 'STALE_CONDITION']
