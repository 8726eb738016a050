"""
Tests for the Memory Monitor orchestration and query API.
"""

import os
import sys
import time
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from membound.alerts import AlertSeverity
from membound.config import MonitorConfig
from membound.constants import BYTES_PER_MB
from membound.exceptions import ConfigValidationError
from membound.history import HistoryStore
from membound.memory_monitor import (
    LEAK_CONDITION,
    STALE_CONDITION,
    MemoryMonitor,
    create_memory_monitor,
)
from membound.sampler import MetricSampler

from conftest import BASE_TS, HOUR, FakeClock, ListReader, read_jsonl

MB = BYTES_PER_MB


def make_monitor(values_mb, clock=None, config=None, history=None, **kwargs):
    clock = clock or FakeClock()
    config = config or MonitorConfig(memory_limit_mb=100.0, detect_limit=False)
    reader = ListReader([v if isinstance(v, Exception) else int(v * MB) for v in values_mb])
    sampler = MetricSampler.from_config(config, usage_reader=reader, clock=clock)
    return MemoryMonitor(config=config, sampler=sampler, history=history, clock=clock, **kwargs)


# ===========================================================================
# Sampling
# ===========================================================================

class TestSampling:
    """Tests for sampling ticks."""

    def test_force_sample_records_history(self):
        monitor = make_monitor([50])
        sample = monitor.force_sample()
        assert sample.usage_percentage == pytest.approx(50.0)
        assert len(monitor.history) == 1

    def test_injected_empty_history_is_used(self):
        history = HistoryStore()
        monitor = make_monitor([50], history=history)
        monitor.force_sample()
        assert monitor.history is history
        assert len(history) == 1
        assert history.policy.max_samples == MonitorConfig().max_history_entries

    def test_tick_skipped_while_previous_tick_runs(self):
        monitor = make_monitor([50])
        monitor._tick_lock.acquire()
        try:
            assert monitor.sample() is None
        finally:
            monitor._tick_lock.release()
        assert monitor.get_summary_stats()['skipped_ticks'] == 1
        assert monitor.sample() is not None

    def test_failures_widen_interval_and_recover(self):
        monitor = make_monitor([OSError("a"), OSError("b"), OSError("c"), 50])
        intervals = []
        for _ in range(3):
            assert monitor.force_sample() is None
            intervals.append(monitor.current_interval)
        assert intervals == [20, 40, 40]

        assert monitor.force_sample() is not None
        assert monitor.current_interval == 10
        summary = monitor.get_summary_stats()
        assert summary['sampling_failures'] == 3
        assert summary['consecutive_failures'] == 0
        assert summary['errors']['total_errors'] == 3

    def test_threshold_alert_raised_from_samples(self):
        callback = MagicMock()
        monitor = make_monitor([50, 75, 76], on_alert=callback)
        for _ in range(3):
            monitor.force_sample()
        alerts = monitor.get_active_alerts()
        assert len(alerts) == 1
        assert alerts[0]['severity'] == 'warning'
        callback.assert_called_once()

    def test_telemetry_gauges_exported(self):
        telemetry = MagicMock()
        monitor = make_monitor([50], telemetry_manager=telemetry)
        monitor.force_sample()
        names = [c[0][0] for c in telemetry.set_gauge.call_args_list]
        assert "memory.usage_mb" in names
        assert "memory.usage_percent" in names
        assert "memory.efficiency_score" in names

    def test_telemetry_failure_does_not_fail_sample(self):
        telemetry = MagicMock()
        telemetry.set_gauge.side_effect = RuntimeError("exporter down")
        monitor = make_monitor([50], telemetry_manager=telemetry)
        assert monitor.force_sample() is not None

    def test_ticks_apply_age_retention_and_compact_file(self, temp_dir):
        path = temp_dir / "history.jsonl"
        clock = FakeClock()
        config = MonitorConfig(memory_limit_mb=100.0, detect_limit=False, history_retention_seconds=30)
        history = HistoryStore(path=path, compact_min_stale=3)
        monitor = make_monitor([50] * 20, clock=clock, config=config, history=history)

        for _ in range(20):
            monitor.force_sample()
            clock.advance(10)
            assert len(read_jsonl(path)) <= 4 + 3

        timestamps = [s.timestamp for s in history.snapshot()]
        assert len(timestamps) == 4
        assert timestamps[-1] - timestamps[0] == 30


class TestLifecycle:
    """Tests for start/stop."""

    def test_start_and_stop(self):
        config = MonitorConfig(memory_limit_mb=100.0, detect_limit=False, poll_interval_seconds=1)
        monitor = make_monitor([50], config=config)
        assert monitor.start() is True
        try:
            deadline = time.time() + 5
            while len(monitor.history) == 0 and time.time() < deadline:
                time.sleep(0.01)
            assert monitor.is_running
            assert len(monitor.history) >= 1
        finally:
            monitor.stop()
        assert not monitor.is_running

    def test_disabled_monitor_does_not_start(self):
        config = MonitorConfig(memory_limit_mb=100.0, monitoring_enabled=False)
        monitor = make_monitor([50], config=config)
        assert monitor.start() is False
        assert not monitor.is_running

    def test_context_manager(self):
        config = MonitorConfig(memory_limit_mb=100.0, detect_limit=False, poll_interval_seconds=1)
        with make_monitor([50], config=config) as monitor:
            assert monitor.is_running
        assert not monitor.is_running

    def test_monitors_are_independent(self):
        first = make_monitor([90])
        second = make_monitor([10])
        first.force_sample()
        second.force_sample()
        assert len(first.get_active_alerts()) == 1
        assert second.get_active_alerts() == []


# ===========================================================================
# Queries
# ===========================================================================

class TestCurrentStats:
    """Tests for get_current_stats and staleness."""

    def test_no_data(self):
        stats = make_monitor([50]).get_current_stats()
        assert stats['available'] is False
        assert stats['stale'] is True
        assert stats['data_as_of'] is None

    def test_fresh_stats(self):
        monitor = make_monitor([50])
        monitor.force_sample()
        stats = monitor.get_current_stats()
        assert stats['available'] is True
        assert stats['stale'] is False
        assert stats['usage_percentage'] == 50.0
        assert stats['data_as_of'].startswith('2023-11-14T00:00:00')
        assert stats['alert_state'] == 'normal'

    def test_stale_data_flagged_and_alerted(self):
        clock = FakeClock()
        monitor = make_monitor([50], clock=clock)
        monitor.force_sample()
        clock.advance(31)
        stats = monitor.get_current_stats()
        assert stats['stale'] is True
        assert stats['last_sample_age_seconds'] == 31
        assert [a['id'] for a in monitor.get_active_alerts()] == [STALE_CONDITION]

        monitor.force_sample()
        assert monitor.get_current_stats()['stale'] is False
        assert monitor.get_active_alerts() == []

    def test_history_queries(self):
        clock = FakeClock()
        monitor = make_monitor([10, 20, 30], clock=clock)
        for _ in range(3):
            monitor.force_sample()
            clock.advance(10)
        assert len(monitor.get_history()) == 3
        assert len(monitor.get_history(start=BASE_TS + 10)) == 2
        assert [s['usage_percentage'] for s in monitor.get_recent_samples(2)] == [20.0, 30.0]


class TestAnalysisQueries:
    """Tests for leak, pattern, forecast and recommendation queries."""

    def make_growing(self, hourly_growth_history, **kwargs):
        history = HistoryStore()
        history.extend(hourly_growth_history)
        return make_monitor([50], history=history, clock=FakeClock(BASE_TS + 9 * HOUR), **kwargs)

    def test_leak_detection_raises_condition(self, hourly_growth_history):
        monitor = self.make_growing(hourly_growth_history)
        candidates = monitor.get_leak_candidates()
        assert len(candidates) == 1
        assert candidates[0]['severity_level'] == 'high'
        alerts = monitor.get_active_alerts()
        assert [a['id'] for a in alerts] == [LEAK_CONDITION]
        assert alerts[0]['severity'] == AlertSeverity.WARNING.value

    def test_leak_condition_cleared_when_growth_stops(self, hourly_growth_history, flat_history):
        monitor = self.make_growing(hourly_growth_history)
        monitor.detect_leaks()
        monitor.history.clear()
        monitor.history.extend(flat_history)
        assert monitor.detect_leaks() == []
        assert monitor.get_active_alerts() == []

    def test_leak_detection_disabled(self, hourly_growth_history):
        config = MonitorConfig(memory_limit_mb=100.0, leak_detection_enabled=False)
        monitor = self.make_growing(hourly_growth_history, config=config)
        assert monitor.detect_leaks() == []

    def test_usage_patterns(self, hourly_growth_history):
        monitor = self.make_growing(hourly_growth_history)
        assert len(monitor.get_usage_patterns('hourly')) == 10
        assert len(monitor.get_usage_patterns('daily')) == 1
        with pytest.raises(ValueError):
            monitor.get_usage_patterns('yearly')

    def test_forecast(self, hourly_growth_history):
        forecast = self.make_growing(hourly_growth_history).get_forecast(horizon=6)
        assert forecast['status'] == 'ok'
        assert forecast['risk_assessment'] == 'moderate'
        assert len(forecast['predictions']) == 6

    def test_forecast_insufficient(self):
        monitor = make_monitor([50])
        monitor.force_sample()
        assert monitor.get_forecast()['status'] == 'insufficient_data'

    def test_recommendations(self, hourly_growth_history):
        recs = self.make_growing(hourly_growth_history).get_recommendations()
        assert recs[0]['rule'] == 'active_leak'

    def test_efficiency_analysis(self):
        monitor = make_monitor([30, 30, 30])
        assert monitor.get_efficiency_analysis()['available'] is False
        for _ in range(3):
            monitor.force_sample()
        analysis = monitor.get_efficiency_analysis()
        assert analysis['available'] is True
        assert analysis['current_score'] == 100.0
        assert analysis['rating'] == 'excellent'
        assert analysis['sample_count'] == 3

    def test_summary_stats_growth_since_baseline(self):
        monitor = make_monitor([40, 50])
        monitor.force_sample()
        monitor.force_sample()
        summary = monitor.get_summary_stats()
        assert summary['baseline_mb'] == 40.0
        assert summary['growth_since_baseline_mb'] == 10.0
        assert summary['growth_since_baseline_percent'] == 25.0
        assert summary['samples_collected'] == 2


# ===========================================================================
# Commands
# ===========================================================================

class TestCommands:
    """Tests for the command API."""

    def test_dismiss_alert(self):
        monitor = make_monitor([80])
        monitor.force_sample()
        alert_id = monitor.get_active_alerts()[0]['id']
        assert monitor.dismiss_alert(alert_id) is True
        assert monitor.get_active_alerts() == []
        assert monitor.dismiss_alert("missing") is False

    def test_apply_preset(self):
        monitor = make_monitor([50])
        config = monitor.apply_preset('production')
        assert monitor.config is config
        assert monitor.alerts.warning_threshold == 75.0
        assert monitor.history.policy.max_samples == 2880
        assert monitor.forecaster.critical_threshold_pct == 90.0

    def test_unknown_preset_leaves_config(self):
        monitor = make_monitor([50])
        before = monitor.config
        with pytest.raises(ConfigValidationError):
            monitor.apply_preset('nonexistent')
        assert monitor.config is before

    def test_reset_configuration(self):
        monitor = make_monitor([50])
        monitor.apply_preset('minimal')
        assert monitor.reset_configuration() == MonitorConfig()

    def test_update_config_validates(self):
        monitor = make_monitor([50])
        with pytest.raises(ConfigValidationError):
            monitor.update_config(poll_interval_seconds=0)
        assert monitor.config.poll_interval_seconds == 10
        monitor.update_config(warning_threshold_pct=40.0)
        monitor.force_sample()
        assert len(monitor.get_active_alerts()) == 1

    def test_update_config_changes_limit(self):
        monitor = make_monitor([50, 50])
        monitor.force_sample()
        monitor.update_config(memory_limit_mb=200.0)
        assert monitor.force_sample().usage_percentage == pytest.approx(25.0)

    def test_prune_history(self, hourly_growth_history):
        history = HistoryStore()
        history.extend(hourly_growth_history)
        config = MonitorConfig(memory_limit_mb=100.0, history_retention_seconds=3 * HOUR)
        monitor = make_monitor([50], config=config, history=history)
        assert monitor.prune_history() == 6
        assert len(monitor.history) == 4

    def test_force_gc(self):
        result = make_monitor([50]).force_gc()
        assert set(result) >= {'before_objects', 'after_objects', 'freed_mb', 'collected_per_generation'}
        assert len(result['collected_per_generation']) == 3


class TestFactory:
    """Tests for create_memory_monitor."""

    def test_preset(self):
        sampler = MetricSampler(limit_bytes=100 * MB, usage_reader=lambda: MB, clock=FakeClock())
        monitor = create_memory_monitor(preset='minimal', sampler=sampler)
        assert monitor.config.poll_interval_seconds == 300

    def test_explicit_config_wins(self):
        sampler = MetricSampler(limit_bytes=100 * MB, usage_reader=lambda: MB, clock=FakeClock())
        config = MonitorConfig(batch_size=7)
        monitor = create_memory_monitor(config=config, preset='minimal', sampler=sampler)
        assert monitor.config.batch_size == 7

    def test_config_file(self, temp_dir):
        path = temp_dir / "membound.yaml"
        path.write_text("poll_interval_seconds: 42\n")
        sampler = MetricSampler(limit_bytes=100 * MB, usage_reader=lambda: MB, clock=FakeClock())
        monitor = create_memory_monitor(config_path=str(path), sampler=sampler)
        assert monitor.config.poll_interval_seconds == 42
