"""
Tests for configuration loading and validation.
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from membound.config import (
    PRESETS,
    MonitorConfig,
    apply_env_overrides,
    get_preset,
    list_presets,
    load_config,
)
from membound.exceptions import ConfigValidationError


# ===========================================================================
# Validation
# ===========================================================================

class TestMonitorConfigValidation:
    """Tests for MonitorConfig validation."""

    def test_defaults_are_valid(self):
        config = MonitorConfig()
        assert config.monitoring_enabled is True
        assert config.poll_interval_seconds == 10
        assert config.warning_threshold_pct == 70.0
        assert config.critical_threshold_pct == 90.0

    def test_poll_interval_zero_rejected(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            MonitorConfig(poll_interval_seconds=0)
        assert any('poll_interval_seconds' in e for e in exc_info.value.errors)

    def test_critical_must_exceed_warning(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            MonitorConfig(warning_threshold_pct=80.0, critical_threshold_pct=80.0)
        assert any('critical_threshold_pct' in e for e in exc_info.value.errors)

    def test_hysteresis_must_be_below_warning(self):
        with pytest.raises(ConfigValidationError):
            MonitorConfig(warning_threshold_pct=10.0, hysteresis_pct=10.0)

    def test_batch_size_zero_rejected(self):
        with pytest.raises(ConfigValidationError):
            MonitorConfig(batch_size=0)

    def test_memory_ceiling_must_be_positive(self):
        with pytest.raises(ConfigValidationError):
            MonitorConfig(memory_ceiling_mb=0)
        with pytest.raises(ConfigValidationError):
            MonitorConfig(memory_ceiling_mb=-5.0)

    def test_wrong_types_rejected(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            MonitorConfig(poll_interval_seconds="10", monitoring_enabled="yes")
        assert len(exc_info.value.errors) == 2

    def test_bool_is_not_an_integer(self):
        with pytest.raises(ConfigValidationError):
            MonitorConfig(batch_size=True)

    def test_integers_accepted_for_float_fields(self):
        config = MonitorConfig(warning_threshold_pct=60, memory_ceiling_mb=64)
        assert config.warning_threshold_pct == 60

    def test_all_errors_reported_together(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            MonitorConfig(poll_interval_seconds=0, batch_size=0, fetch_retries=50)
        assert len(exc_info.value.errors) >= 3

    def test_leak_severities_must_increase(self):
        with pytest.raises(ConfigValidationError):
            MonitorConfig(leak_severity_medium=20.0, leak_severity_high=15.0)

    def test_config_is_immutable(self):
        config = MonitorConfig()
        with pytest.raises(Exception):
            config.batch_size = 10

    def test_memory_limit_bytes(self):
        assert MonitorConfig().memory_limit_bytes is None
        assert MonitorConfig(memory_limit_mb=2).memory_limit_bytes == 2 * 1024 * 1024


class TestMonitorConfigConversion:
    """Tests for dict conversion and replace."""

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            MonitorConfig.from_dict({'poll_interval': 5})
        assert 'unknown option: poll_interval' in exc_info.value.errors

    def test_to_dict_round_trip(self):
        config = MonitorConfig(batch_size=42, memory_limit_mb=512.0)
        assert MonitorConfig.from_dict(config.to_dict()) == config

    def test_replace_returns_new_validated_config(self):
        config = MonitorConfig()
        updated = config.replace(poll_interval_seconds=30)
        assert updated.poll_interval_seconds == 30
        assert config.poll_interval_seconds == 10

        with pytest.raises(ConfigValidationError):
            config.replace(poll_interval_seconds=0)
        with pytest.raises(ConfigValidationError):
            config.replace(not_an_option=1)


# ===========================================================================
# Presets
# ===========================================================================

class TestPresets:
    """Tests for named presets."""

    def test_all_presets_are_valid(self):
        for name in PRESETS:
            assert isinstance(get_preset(name), MonitorConfig)

    def test_list_presets(self):
        names = [p['name'] for p in list_presets()]
        assert names == ['development', 'production', 'high_traffic', 'minimal']
        assert all(p['description'] for p in list_presets())

    def test_production_preset_values(self):
        config = get_preset('production')
        assert config.poll_interval_seconds == 30
        assert config.warning_threshold_pct == 75.0
        assert config.critical_threshold_pct == 90.0
        assert config.max_history_entries == 2880

    def test_high_traffic_disables_leak_detection(self):
        assert get_preset('high_traffic').leak_detection_enabled is False

    def test_unknown_preset_rejected(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            get_preset('turbo')
        assert 'production' in str(exc_info.value)


# ===========================================================================
# Environment and File Loading
# ===========================================================================

class TestEnvironmentOverrides:
    """Tests for MEMBOUND_* overrides."""

    def test_typed_overrides(self):
        environ = {
            'MEMBOUND_POLL_INTERVAL_SECONDS': '15',
            'MEMBOUND_LEAK_DETECTION_ENABLED': 'false',
            'MEMBOUND_MEMORY_CEILING_MB': '99.5',
        }
        data = apply_env_overrides({}, environ)
        assert data['poll_interval_seconds'] == 15
        assert data['leak_detection_enabled'] is False
        assert data['memory_ceiling_mb'] == 99.5

    def test_optional_field_accepts_none(self):
        data = apply_env_overrides({'memory_limit_mb': 512.0}, {'MEMBOUND_MEMORY_LIMIT_MB': 'none'})
        assert data['memory_limit_mb'] is None

    def test_untouched_fields_not_added(self):
        assert apply_env_overrides({}, {}) == {}

    def test_invalid_override_rejected(self):
        with pytest.raises(ConfigValidationError):
            load_config(environ={'MEMBOUND_BATCH_SIZE': 'many'})


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults_without_file(self):
        assert load_config(environ={}) == MonitorConfig()

    def test_yaml_file(self, temp_dir):
        path = temp_dir / "membound.yaml"
        path.write_text("poll_interval_seconds: 20\nbatch_size: 250\n")
        config = load_config(path, environ={})
        assert config.poll_interval_seconds == 20
        assert config.batch_size == 250

    def test_yaml_with_namespace_key(self, temp_dir):
        path = temp_dir / "app.yml"
        path.write_text("membound:\n  warning_threshold_pct: 65\n")
        assert load_config(path, environ={}).warning_threshold_pct == 65

    def test_json_file(self, temp_dir):
        path = temp_dir / "membound.json"
        path.write_text(json.dumps({'memory_ceiling_mb': 128.0}))
        assert load_config(path, environ={}).memory_ceiling_mb == 128.0

    def test_preset_key_with_overrides(self, temp_dir):
        path = temp_dir / "membound.yaml"
        path.write_text("preset: production\nbatch_size: 50\n")
        config = load_config(path, environ={})
        assert config.poll_interval_seconds == 30
        assert config.batch_size == 50

    def test_environment_beats_file(self, temp_dir):
        path = temp_dir / "membound.yaml"
        path.write_text("batch_size: 250\n")
        config = load_config(path, environ={'MEMBOUND_BATCH_SIZE': '75'})
        assert config.batch_size == 75

    def test_invalid_value_in_file_rejected(self, temp_dir):
        path = temp_dir / "membound.yaml"
        path.write_text("poll_interval_seconds: 0\n")
        with pytest.raises(ConfigValidationError):
            load_config(path, environ={})

    def test_unknown_key_in_file_rejected(self, temp_dir):
        path = temp_dir / "membound.yaml"
        path.write_text("pol_interval_seconds: 5\n")
        with pytest.raises(ConfigValidationError):
            load_config(path, environ={})

    def test_malformed_yaml_rejected(self, temp_dir):
        path = temp_dir / "membound.yaml"
        path.write_text("batch_size: [unclosed\n")
        with pytest.raises(ConfigValidationError):
            load_config(path, environ={})

    def test_unsupported_extension_rejected(self, temp_dir):
        path = temp_dir / "membound.toml"
        path.write_text("batch_size = 5\n")
        with pytest.raises(ConfigValidationError):
            load_config(path, environ={})

    def test_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            load_config(temp_dir / "absent.yaml", environ={})

    def test_empty_file_gives_defaults(self, temp_dir):
        path = temp_dir / "membound.yaml"
        path.write_text("")
        assert load_config(path, environ={}) == MonitorConfig()
