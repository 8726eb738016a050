"""
Configuration for membound.

A single typed configuration object enumerates every recognised option and
its valid range. Invalid values are rejected eagerly with
ConfigValidationError (all problems reported at once); nothing is clamped
behind the caller's back.

Configuration can come from code, a YAML/JSON file, named presets and
MEMBOUND_* environment variables.
"""

import json
import logging
from dataclasses import dataclass, asdict, fields, replace as dc_replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .constants import (
    AlertDefaults,
    ForecastDefaults,
    ImportDefaults,
    LeakDefaults,
    SamplingDefaults,
    ThresholdDefaults,
    env_override,
    parse_bool,
)
from .exceptions import ConfigValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for memory monitoring and streaming import."""
    # Monitoring
    monitoring_enabled: bool = True
    poll_interval_seconds: int = SamplingDefaults.POLL_INTERVAL_SECONDS
    warning_threshold_pct: float = ThresholdDefaults.WARNING_PCT
    critical_threshold_pct: float = ThresholdDefaults.CRITICAL_PCT
    hysteresis_pct: float = ThresholdDefaults.HYSTERESIS_PCT

    # Limit detection (None = auto-detect when detect_limit is set)
    memory_limit_mb: Optional[float] = None
    detect_limit: bool = True

    # History
    max_history_entries: int = SamplingDefaults.MAX_HISTORY_ENTRIES
    history_retention_seconds: Optional[float] = SamplingDefaults.HISTORY_RETENTION_SECONDS
    stale_after_intervals: int = SamplingDefaults.STALE_AFTER_INTERVALS

    # Leak detection
    leak_detection_enabled: bool = True
    leak_window_hours: float = LeakDefaults.WINDOW_HOURS
    leak_min_samples: int = LeakDefaults.MIN_SAMPLES
    leak_min_growth_pct_per_hour: float = LeakDefaults.MIN_GROWTH_PCT_PER_HOUR
    leak_min_confidence: float = LeakDefaults.MIN_CONFIDENCE
    leak_severity_medium: float = LeakDefaults.SEVERITY_MEDIUM
    leak_severity_high: float = LeakDefaults.SEVERITY_HIGH
    leak_severity_critical: float = LeakDefaults.SEVERITY_CRITICAL

    # Forecasting
    forecast_min_samples: int = ForecastDefaults.MIN_SAMPLES
    forecast_horizon: int = ForecastDefaults.HORIZON
    forecast_step_seconds: float = ForecastDefaults.STEP_SECONDS

    # Streaming import
    batch_size: int = ImportDefaults.BATCH_SIZE
    memory_ceiling_mb: float = ImportDefaults.MEMORY_CEILING_MB
    ceiling_breach_limit: int = ImportDefaults.CEILING_BREACH_LIMIT
    fetch_timeout_seconds: float = ImportDefaults.FETCH_TIMEOUT_SECONDS
    fetch_retries: int = ImportDefaults.FETCH_RETRIES
    fetch_retry_delay_seconds: float = ImportDefaults.FETCH_RETRY_DELAY_SECONDS

    # Alerts
    alert_history_size: int = AlertDefaults.HISTORY_SIZE

    def __post_init__(self):
        self.validate()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Raise ConfigValidationError listing every invalid option."""
        errors: List[str] = []

        for f in fields(self):
            value = getattr(self, f.name)
            kind = _FIELD_KINDS[f.name]
            if value is None and f.name in _OPTIONAL_FIELDS:
                continue
            if kind is bool and not isinstance(value, bool):
                errors.append(f"{f.name} must be a boolean, got {value!r}")
            elif kind is int and (isinstance(value, bool) or not isinstance(value, int)):
                errors.append(f"{f.name} must be an integer, got {value!r}")
            elif kind is float and (isinstance(value, bool) or not isinstance(value, (int, float))):
                errors.append(f"{f.name} must be a number, got {value!r}")

        if errors:
            raise ConfigValidationError(errors)

        def check_range(name: str, low=None, high=None, low_inclusive=True):
            value = getattr(self, name)
            if value is None:
                return
            if low is not None:
                if (value < low) if low_inclusive else (value <= low):
                    op = ">=" if low_inclusive else ">"
                    errors.append(f"{name} must be {op} {low}, got {value}")
                    return
            if high is not None and value > high:
                errors.append(f"{name} must be <= {high}, got {value}")

        check_range('poll_interval_seconds', 1, 3600)
        check_range('warning_threshold_pct', 0, 100, low_inclusive=False)
        check_range('critical_threshold_pct', 0, 100, low_inclusive=False)
        check_range('hysteresis_pct', 0)
        check_range('memory_limit_mb', 0, low_inclusive=False)
        check_range('max_history_entries', 10, 1_000_000)
        check_range('history_retention_seconds', 0, low_inclusive=False)
        check_range('stale_after_intervals', 1)
        check_range('leak_window_hours', 0, low_inclusive=False)
        check_range('leak_min_samples', 3)
        check_range('leak_min_growth_pct_per_hour', 0, low_inclusive=False)
        check_range('leak_min_confidence', 0, 1)
        check_range('leak_severity_medium', 0, low_inclusive=False)
        check_range('forecast_min_samples', 3)
        check_range('forecast_horizon', 1, 720)
        check_range('forecast_step_seconds', 0, low_inclusive=False)
        check_range('batch_size', 1, 100_000)
        check_range('memory_ceiling_mb', 0, low_inclusive=False)
        check_range('ceiling_breach_limit', 1)
        check_range('fetch_timeout_seconds', 0, low_inclusive=False)
        check_range('fetch_retries', 0, 10)
        check_range('fetch_retry_delay_seconds', 0)
        check_range('alert_history_size', 1)

        if self.critical_threshold_pct <= self.warning_threshold_pct:
            errors.append(
                f"critical_threshold_pct ({self.critical_threshold_pct}) must be greater "
                f"than warning_threshold_pct ({self.warning_threshold_pct})"
            )
        if self.hysteresis_pct >= self.warning_threshold_pct:
            errors.append(
                f"hysteresis_pct ({self.hysteresis_pct}) must be smaller than "
                f"warning_threshold_pct ({self.warning_threshold_pct})"
            )
        if not (self.leak_severity_medium < self.leak_severity_high < self.leak_severity_critical):
            errors.append(
                "leak severity thresholds must be strictly increasing "
                f"(medium={self.leak_severity_medium}, high={self.leak_severity_high}, "
                f"critical={self.leak_severity_critical})"
            )

        if errors:
            raise ConfigValidationError(errors)

    # ------------------------------------------------------------------
    # Conversion helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'MonitorConfig':
        """Build a validated config; unknown keys are rejected."""
        unknown = sorted(set(data) - set(_FIELD_KINDS))
        if unknown:
            raise ConfigValidationError([f"unknown option: {key}" for key in unknown])
        return cls(**dict(data))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **changes) -> 'MonitorConfig':
        """Return a new validated config with the given changes."""
        unknown = sorted(set(changes) - set(_FIELD_KINDS))
        if unknown:
            raise ConfigValidationError([f"unknown option: {key}" for key in unknown])
        return dc_replace(self, **changes)

    @property
    def memory_limit_bytes(self) -> Optional[int]:
        if self.memory_limit_mb is None:
            return None
        return int(self.memory_limit_mb * 1024 * 1024)


_FIELD_KINDS: Dict[str, type] = {}
_OPTIONAL_FIELDS = {'memory_limit_mb', 'history_retention_seconds'}


def _init_field_kinds() -> None:
    defaults = {f.name: f.default for f in fields(MonitorConfig)}
    for name, default in defaults.items():
        if isinstance(default, bool):
            _FIELD_KINDS[name] = bool
        elif isinstance(default, int) and name not in _FLOAT_FIELDS:
            _FIELD_KINDS[name] = int
        else:
            _FIELD_KINDS[name] = float


# Fields whose defaults happen to be whole numbers but accept fractions
_FLOAT_FIELDS = {
    'warning_threshold_pct', 'critical_threshold_pct', 'hysteresis_pct',
    'memory_limit_mb', 'history_retention_seconds', 'leak_window_hours',
    'leak_min_growth_pct_per_hour', 'leak_min_confidence', 'leak_severity_medium',
    'leak_severity_high', 'leak_severity_critical', 'forecast_step_seconds',
    'memory_ceiling_mb', 'fetch_timeout_seconds', 'fetch_retry_delay_seconds',
}

_init_field_kinds()


# =============================================================================
# PRESETS
# =============================================================================

PRESETS: Dict[str, Dict[str, Any]] = {
    'development': {
        'description': 'Frequent monitoring and low thresholds for development',
        'config': {
            'monitoring_enabled': True,
            'poll_interval_seconds': 5,
            'warning_threshold_pct': 60.0,
            'critical_threshold_pct': 80.0,
            'max_history_entries': 17280,
            'leak_detection_enabled': True,
            'batch_size': 100,
            'memory_ceiling_mb': 512.0,
        },
    },
    'production': {
        'description': 'Balanced monitoring and performance for production',
        'config': {
            'monitoring_enabled': True,
            'poll_interval_seconds': 30,
            'warning_threshold_pct': 75.0,
            'critical_threshold_pct': 90.0,
            'max_history_entries': 2880,
            'leak_detection_enabled': True,
            'batch_size': 500,
            'memory_ceiling_mb': 1024.0,
        },
    },
    'high_traffic': {
        'description': 'Reduced monitoring overhead for high-traffic hosts',
        'config': {
            'monitoring_enabled': True,
            'poll_interval_seconds': 60,
            'warning_threshold_pct': 80.0,
            'critical_threshold_pct': 95.0,
            'max_history_entries': 1440,
            'leak_detection_enabled': False,
            'batch_size': 1000,
            'memory_ceiling_mb': 2048.0,
        },
    },
    'minimal': {
        'description': 'Minimal monitoring for resource-constrained environments',
        'config': {
            'monitoring_enabled': True,
            'poll_interval_seconds': 300,
            'warning_threshold_pct': 85.0,
            'critical_threshold_pct': 95.0,
            'max_history_entries': 288,
            'leak_detection_enabled': False,
            'batch_size': 200,
            'memory_ceiling_mb': 256.0,
        },
    },
}


def list_presets() -> List[Dict[str, str]]:
    """Names and descriptions of the available presets."""
    return [
        {'name': name, 'description': preset['description']}
        for name, preset in PRESETS.items()
    ]


def get_preset(name: str) -> MonitorConfig:
    """Build a validated config from a named preset over the defaults."""
    preset = PRESETS.get(name)
    if preset is None:
        raise ConfigValidationError(
            [f"unknown preset {name!r}; available: {', '.join(sorted(PRESETS))}"]
        )
    return MonitorConfig.from_dict(preset['config'])


# =============================================================================
# ENVIRONMENT AND FILE LOADING
# =============================================================================

def _optional(converter):
    def convert(value: str):
        if value.strip().lower() in ('', 'none', 'null'):
            return None
        return converter(value)
    return convert


def apply_env_overrides(
    data: Mapping[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Overlay MEMBOUND_<OPTION> environment variables onto a config mapping."""
    result = dict(data)
    defaults = {f.name: f.default for f in fields(MonitorConfig)}

    for name, kind in _FIELD_KINDS.items():
        if kind is bool:
            converter = parse_bool
        else:
            converter = kind
        if name in _OPTIONAL_FIELDS:
            converter = _optional(converter)

        current = result.get(name, defaults[name])
        value = env_override(name.upper(), current, converter, environ=environ)
        if value is not current or name in result:
            result[name] = value

    return result


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MonitorConfig:
    """
    Load configuration from a YAML or JSON file plus environment overrides.

    Args:
        path: Config file (.yaml/.yml/.json); None uses defaults only
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated MonitorConfig
    """
    data: Dict[str, Any] = {}

    if path is not None:
        filepath = Path(path)
        if not filepath.exists():
            raise FileNotFoundError(f"Config file not found: {filepath}")

        content = filepath.read_text()
        ext = filepath.suffix.lower()
        try:
            if ext in {'.yaml', '.yml'}:
                loaded = yaml.safe_load(content)
            elif ext == '.json':
                loaded = json.loads(content)
            else:
                raise ConfigValidationError([f"unsupported config format: {ext or filepath.name}"])
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigValidationError([f"cannot parse {filepath}: {e}"])

        if loaded is None:
            loaded = {}
        if isinstance(loaded, dict) and isinstance(loaded.get('membound'), dict):
            loaded = loaded['membound']
        if not isinstance(loaded, dict):
            raise ConfigValidationError([f"{filepath} must contain a mapping of options"])

        preset_name = loaded.pop('preset', None)
        if preset_name is not None:
            data.update(PRESETS.get(preset_name, {}).get('config', {}))
            if preset_name not in PRESETS:
                get_preset(preset_name)  # raises with the list of presets
        data.update(loaded)
        logger.info(f"Loaded configuration from {filepath}")

    data = apply_env_overrides(data, environ)
    return MonitorConfig.from_dict(data)


__all__ = [
    'MonitorConfig',
    'PRESETS',
    'list_presets',
    'get_preset',
    'apply_env_overrides',
    'load_config',
]
