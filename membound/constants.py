"""
Centralized Constants Module for membound.

Consolidates unit conversions, default values and tuning knobs used across
the monitor and the streaming importer so that every magic number lives in
one auditable place.

Usage:
    from membound.constants import Units, SamplingDefaults, env_override

    interval = env_override('POLL_INTERVAL_SECONDS', 10, int, min_value=1)
"""

import os
import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, TypeVar

from .exceptions import ConfigValidationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "MEMBOUND_"

T = TypeVar('T')


# =============================================================================
# ENVIRONMENT VARIABLE OVERRIDE UTILITIES
# =============================================================================

def parse_bool(value: str) -> bool:
    """Parse a boolean from an environment string."""
    lowered = value.strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def env_override(
    env_var: str,
    default: T,
    converter: Callable[[str], T] = str,
    min_value: Optional[T] = None,
    max_value: Optional[T] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> T:
    """Get a configuration value with environment variable override.

    Invalid overrides are rejected with ConfigValidationError rather than
    being replaced by the default, so a misconfigured host finds out at load
    time.

    Args:
        env_var: Environment variable name (will be prefixed with MEMBOUND_)
        default: Default value if env var not set
        converter: Function to convert string to target type
        min_value: Optional minimum allowed value
        max_value: Optional maximum allowed value
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Configured value (from env var if set, otherwise default)
    """
    source = os.environ if environ is None else environ
    full_env_var = f"{ENV_PREFIX}{env_var}"
    env_value = source.get(full_env_var)

    if env_value is None:
        return default

    try:
        converted = converter(env_value)
    except (ValueError, TypeError) as e:
        raise ConfigValidationError([f"{full_env_var}={env_value!r}: {e}"])

    if min_value is not None and converted < min_value:
        raise ConfigValidationError(
            [f"{full_env_var}={env_value} below minimum {min_value}"]
        )
    if max_value is not None and converted > max_value:
        raise ConfigValidationError(
            [f"{full_env_var}={env_value} above maximum {max_value}"]
        )

    logger.info(f"Using {full_env_var}={converted} (override)")
    return converted


# =============================================================================
# UNITS
# =============================================================================

@dataclass(frozen=True)
class Units:
    """Unit conversion factors."""
    BYTES_PER_KB: int = 1024
    BYTES_PER_MB: int = 1024 * 1024
    SECONDS_PER_HOUR: int = 3600
    SECONDS_PER_DAY: int = 86400


BYTES_PER_MB = Units.BYTES_PER_MB
SECONDS_PER_HOUR = Units.SECONDS_PER_HOUR


def bytes_to_mb(value: Optional[float]) -> Optional[float]:
    """Convert bytes to megabytes rounded for display."""
    if value is None:
        return None
    return round(value / BYTES_PER_MB, 2)


# =============================================================================
# DEFAULTS
# =============================================================================

@dataclass(frozen=True)
class SamplingDefaults:
    """Sampling cadence and history sizing."""
    POLL_INTERVAL_SECONDS: int = 10
    MAX_HISTORY_ENTRIES: int = 8640          # 24h at 10s intervals
    HISTORY_RETENTION_SECONDS: int = 7 * 86400
    STALE_AFTER_INTERVALS: int = 3
    VOLATILITY_WINDOW: int = 10              # Samples used for volatility
    MAX_BACKOFF_FACTOR: int = 4              # Interval widening cap on failures
    COMPACT_MIN_STALE_LINES: int = 1000      # Dropped lines tolerated in the history file


@dataclass(frozen=True)
class ThresholdDefaults:
    """Alert thresholds in percent of the memory limit."""
    WARNING_PCT: float = 70.0
    CRITICAL_PCT: float = 90.0
    HYSTERESIS_PCT: float = 5.0


@dataclass(frozen=True)
class LeakDefaults:
    """Leak detection tuning."""
    WINDOW_HOURS: float = 24.0
    MIN_SAMPLES: int = 3
    MIN_GROWTH_PCT_PER_HOUR: float = 0.5
    MIN_CONFIDENCE: float = 0.7
    SEVERITY_MEDIUM: float = 5.0             # Percentage points accumulated
    SEVERITY_HIGH: float = 15.0
    SEVERITY_CRITICAL: float = 30.0
    SPIKE_FRACTION: float = 0.5


@dataclass(frozen=True)
class PatternDefaults:
    """Usage pattern mining."""
    HOURLY_SATURATION: int = 100
    DAILY_SATURATION: int = 30
    MIN_PREDICTIVE_COUNT: int = 5
    VARIANCE_TOLERANCE_PCT: float = 20.0


@dataclass(frozen=True)
class ForecastDefaults:
    """Forecasting."""
    MIN_SAMPLES: int = 10
    HORIZON: int = 24
    STEP_SECONDS: int = 3600
    LOOKBACK: int = 100
    HALF_LIFE_SAMPLES: float = 25.0
    PATTERN_WEIGHT: float = 0.3


@dataclass(frozen=True)
class ImportDefaults:
    """Streaming importer."""
    BATCH_SIZE: int = 500
    MEMORY_CEILING_MB: float = 512.0
    CEILING_BREACH_LIMIT: int = 3
    FETCH_TIMEOUT_SECONDS: float = 30.0
    FETCH_RETRIES: int = 3
    FETCH_RETRY_DELAY_SECONDS: float = 1.0
    FETCH_RETRY_BACKOFF: float = 2.0
    BACKPRESSURE_PAUSE_SECONDS: float = 0.05
    MAX_ERROR_SAMPLES: int = 50
    MAX_CURSOR_HISTORY: int = 1000


@dataclass(frozen=True)
class AlertDefaults:
    """Alert manager sizing."""
    HISTORY_SIZE: int = 200


__all__ = [
    'ENV_PREFIX',
    'parse_bool',
    'env_override',
    'Units',
    'BYTES_PER_MB',
    'SECONDS_PER_HOUR',
    'bytes_to_mb',
    'SamplingDefaults',
    'ThresholdDefaults',
    'LeakDefaults',
    'PatternDefaults',
    'ForecastDefaults',
    'ImportDefaults',
    'AlertDefaults',
]
