"""
Metric Sampler - Point-in-time memory measurement.

Reads current process memory usage and the configured or discovered memory
limit, then derives:
- usage percentage of the limit (omitted when the limit is unbounded)
- a 0-100 efficiency score from usage level, volatility and short-term growth
- a per-component breakdown supplied by host callbacks

Sampling has no side effects beyond reading system state.
"""

import math
import os
import time
import threading
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Mapping, Optional

import psutil

try:
    import resource
except ImportError:  # Windows has no resource module
    resource = None

from .constants import BYTES_PER_MB, SamplingDefaults, ThresholdDefaults

logger = logging.getLogger(__name__)

# Values at or above this are "no limit" in cgroup v1 and RLIMIT reporting
_UNLIMITED_SENTINEL = 1 << 60

ComponentReader = Callable[[], Any]
ComponentProvider = Callable[[], Mapping[str, Any]]


class MemoryStatus(Enum):
    """Usage classification against the alert thresholds"""
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    UNBOUNDED = "unbounded"


@dataclass(frozen=True)
class MemorySample:
    """One point-in-time memory measurement. Immutable once created."""
    timestamp: float
    total_usage_bytes: int
    limit_bytes: Optional[int]
    usage_percentage: Optional[float]
    efficiency_score: float
    component_breakdown: Dict[str, int] = field(default_factory=dict)
    status: str = MemoryStatus.NORMAL.value

    @property
    def is_unbounded(self) -> bool:
        return self.limit_bytes is None

    @property
    def total_usage_mb(self) -> float:
        return self.total_usage_bytes / BYTES_PER_MB

    @property
    def unattributed_bytes(self) -> int:
        return max(0, self.total_usage_bytes - sum(self.component_breakdown.values()))

    def component_percentages(self) -> Dict[str, float]:
        """Share of total usage per component, in percent."""
        if self.total_usage_bytes <= 0:
            return {name: 0.0 for name in self.component_breakdown}
        return {
            name: round(value / self.total_usage_bytes * 100, 2)
            for name, value in self.component_breakdown.items()
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'timestamp_iso': datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            'total_usage_bytes': self.total_usage_bytes,
            'total_usage_mb': round(self.total_usage_bytes / BYTES_PER_MB, 2),
            'limit_bytes': self.limit_bytes,
            'limit_mb': round(self.limit_bytes / BYTES_PER_MB, 2) if self.limit_bytes else None,
            'usage_percentage': (
                round(self.usage_percentage, 2) if self.usage_percentage is not None else None
            ),
            'efficiency_score': round(self.efficiency_score, 1),
            'status': self.status,
            'component_breakdown': dict(self.component_breakdown),
            'component_percentages': self.component_percentages(),
            'unattributed_bytes': self.unattributed_bytes,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'MemorySample':
        return cls(
            timestamp=float(data['timestamp']),
            total_usage_bytes=int(data['total_usage_bytes']),
            limit_bytes=data.get('limit_bytes'),
            usage_percentage=data.get('usage_percentage'),
            efficiency_score=float(data.get('efficiency_score', 100.0)),
            component_breakdown={
                str(k): int(v) for k, v in (data.get('component_breakdown') or {}).items()
            },
            status=data.get('status', MemoryStatus.NORMAL.value),
        )


@dataclass(frozen=True)
class EfficiencyWeights:
    """Tuning for the efficiency score. Penalties are subtracted from 100."""
    moderate_usage_pct: float = 60.0
    high_usage_pct: float = 80.0
    moderate_penalty_per_pct: float = 0.5
    high_penalty_per_pct: float = 2.5
    volatility_factor: float = 150.0
    max_volatility_penalty: float = 30.0
    growth_trigger: float = 0.05
    growth_factor: float = 500.0
    max_growth_penalty: float = 20.0


def coefficient_of_variation(values) -> float:
    """Population standard deviation divided by mean (0 for empty/zero mean)."""
    values = list(values)
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    if mean <= 0:
        return 0.0
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance) / mean


def compute_efficiency_score(
    usage_percentage: Optional[float],
    recent_values,
    weights: Optional[EfficiencyWeights] = None,
) -> float:
    """
    Score memory efficiency from 0 (poor) to 100 (ideal).

    Usage above the moderate band costs a little per point and above the high
    band a lot per point; volatility across recent values and a rising short
    term trend cost extra. Saturated and volatile usage therefore scores low,
    while stable usage well below the limit scores 100.

    Args:
        usage_percentage: Current usage in percent of the limit (None if unbounded)
        recent_values: Recent readings, oldest first, current reading last
        weights: Penalty tuning
    """
    w = weights or EfficiencyWeights()
    recent = list(recent_values)
    score = 100.0

    if usage_percentage is not None:
        moderate_span = max(0.0, min(usage_percentage, w.high_usage_pct) - w.moderate_usage_pct)
        high_span = max(0.0, usage_percentage - w.high_usage_pct)
        score -= moderate_span * w.moderate_penalty_per_pct
        score -= high_span * w.high_penalty_per_pct

    cv = coefficient_of_variation(recent)
    score -= min(w.max_volatility_penalty, cv * w.volatility_factor)

    if len(recent) >= 3:
        first, last = recent[-3], recent[-1]
        if first > 0:
            trend = (last - first) / first
            if trend > w.growth_trigger:
                score -= min(w.max_growth_penalty, trend * w.growth_factor)

    return max(0.0, min(100.0, score))


# =============================================================================
# LIMIT DETECTION
# =============================================================================

def _read_limit_file(path: Path) -> Optional[int]:
    try:
        raw = path.read_text().strip()
    except OSError:
        return None
    if not raw or raw == 'max':
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    if value <= 0 or value >= _UNLIMITED_SENTINEL:
        return None
    return value


def detect_memory_limit(cgroup_root: str = '/sys/fs/cgroup') -> Optional[int]:
    """
    Discover the effective memory limit for this process in bytes.

    Checked in order: cgroup v2 memory.max, cgroup v1 memory.limit_in_bytes,
    a finite RLIMIT_AS, then total physical memory. Returns None when none of
    them yields a finite value.
    """
    root = Path(cgroup_root)

    limit = _read_limit_file(root / 'memory.max')
    if limit is not None:
        logger.debug(f"Memory limit from cgroup v2: {limit} bytes")
        return limit

    limit = _read_limit_file(root / 'memory' / 'memory.limit_in_bytes')
    if limit is not None:
        logger.debug(f"Memory limit from cgroup v1: {limit} bytes")
        return limit

    if resource is not None:
        try:
            soft, _hard = resource.getrlimit(resource.RLIMIT_AS)
            if soft != resource.RLIM_INFINITY and 0 < soft < _UNLIMITED_SENTINEL:
                logger.debug(f"Memory limit from RLIMIT_AS: {soft} bytes")
                return int(soft)
        except (ValueError, OSError) as e:
            logger.debug(f"Could not read RLIMIT_AS: {e}")

    try:
        total = psutil.virtual_memory().total
        if total > 0:
            logger.debug(f"Memory limit from physical memory: {total} bytes")
            return int(total)
    except (psutil.Error, OSError) as e:
        logger.debug(f"Could not read physical memory total: {e}")

    return None


def _is_valid_component_value(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return False
    return value >= 0


# =============================================================================
# SAMPLER
# =============================================================================

class MetricSampler:
    """
    Reads memory usage and produces MemorySample instances.

    The usage source defaults to the RSS of the current process via psutil;
    hosts and tests may inject any zero-argument callable returning bytes.
    """

    def __init__(
        self,
        limit_bytes: Optional[int] = None,
        detect_limit: bool = True,
        warning_threshold_pct: float = ThresholdDefaults.WARNING_PCT,
        critical_threshold_pct: float = ThresholdDefaults.CRITICAL_PCT,
        usage_reader: Optional[Callable[[], int]] = None,
        component_provider: Optional[ComponentProvider] = None,
        clock: Callable[[], float] = time.time,
        volatility_window: int = SamplingDefaults.VOLATILITY_WINDOW,
        weights: Optional[EfficiencyWeights] = None,
        limit_detector: Callable[[], Optional[int]] = detect_memory_limit,
    ):
        """
        Initialize MetricSampler.

        Args:
            limit_bytes: Explicit memory limit; overrides detection
            detect_limit: Discover the limit when none is given
            warning_threshold_pct: Usage percent classified as warning
            critical_threshold_pct: Usage percent classified as critical
            usage_reader: Returns current usage in bytes (default: process RSS)
            component_provider: Returns {component_name: bytes}
            clock: Returns the current epoch time
            volatility_window: Number of recent readings used for volatility
            weights: Efficiency score tuning
            limit_detector: Limit discovery function
        """
        self.warning_threshold_pct = warning_threshold_pct
        self.critical_threshold_pct = critical_threshold_pct
        self.weights = weights or EfficiencyWeights()
        self._explicit_limit = limit_bytes
        self._detect_limit = detect_limit
        self._limit_detector = limit_detector
        self._limit_resolved = False
        self._limit_bytes: Optional[int] = None
        self._clock = clock
        self._component_provider = component_provider
        self._component_readers: Dict[str, ComponentReader] = {}
        self._recent: Deque[float] = deque(maxlen=max(2, volatility_window))
        self._lock = threading.Lock()

        self._process = None
        if usage_reader is None:
            self._process = psutil.Process(os.getpid())
            usage_reader = self._read_rss
        self._usage_reader = usage_reader

    @classmethod
    def from_config(cls, config, **kwargs) -> 'MetricSampler':
        """Create a sampler from a MonitorConfig."""
        kwargs.setdefault('limit_bytes', config.memory_limit_bytes)
        kwargs.setdefault('detect_limit', config.detect_limit)
        kwargs.setdefault('warning_threshold_pct', config.warning_threshold_pct)
        kwargs.setdefault('critical_threshold_pct', config.critical_threshold_pct)
        return cls(**kwargs)

    def _read_rss(self) -> int:
        return self._process.memory_info().rss

    # ------------------------------------------------------------------
    # Limit handling
    # ------------------------------------------------------------------

    @property
    def limit_bytes(self) -> Optional[int]:
        """Effective limit in bytes, or None when unbounded."""
        if not self._limit_resolved:
            self.refresh_limit()
        return self._limit_bytes

    def refresh_limit(self) -> Optional[int]:
        """Re-resolve the memory limit (explicit value first, then detection)."""
        if self._explicit_limit is not None:
            limit = int(self._explicit_limit)
        elif self._detect_limit:
            limit = self._limit_detector()
        else:
            limit = None

        with self._lock:
            self._limit_bytes = limit
            self._limit_resolved = True

        if limit is None:
            logger.info("No memory limit found; usage will be reported as unbounded")
        else:
            logger.debug(f"Memory limit resolved to {limit / BYTES_PER_MB:.1f} MB")
        return limit

    def set_limit(self, limit_bytes: Optional[int], detect_limit: Optional[bool] = None) -> None:
        """Replace the explicit limit; resolved again on the next sample."""
        with self._lock:
            self._explicit_limit = limit_bytes
            if detect_limit is not None:
                self._detect_limit = detect_limit
            self._limit_resolved = False

    def set_thresholds(self, warning_pct: float, critical_pct: float) -> None:
        self.warning_threshold_pct = warning_pct
        self.critical_threshold_pct = critical_pct

    def classify(self, usage_percentage: Optional[float]) -> MemoryStatus:
        """Classify a usage percentage against the thresholds."""
        if usage_percentage is None:
            return MemoryStatus.UNBOUNDED
        if usage_percentage >= self.critical_threshold_pct:
            return MemoryStatus.CRITICAL
        if usage_percentage >= self.warning_threshold_pct:
            return MemoryStatus.WARNING
        return MemoryStatus.NORMAL

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def register_component(self, name: str, reader: ComponentReader) -> None:
        """Register a callable returning the bytes attributed to a component."""
        with self._lock:
            self._component_readers[name] = reader

    def unregister_component(self, name: str) -> bool:
        with self._lock:
            return self._component_readers.pop(name, None) is not None

    def set_component_provider(self, provider: Optional[ComponentProvider]) -> None:
        self._component_provider = provider

    def _collect_components(self, total_bytes: int) -> Dict[str, int]:
        raw: Dict[str, Any] = {}

        if self._component_provider is not None:
            try:
                provided = self._component_provider() or {}
                raw.update(dict(provided))
            except Exception as e:
                logger.debug(f"Component provider failed: {e}")

        with self._lock:
            readers = list(self._component_readers.items())
        for name, reader in readers:
            try:
                raw[name] = reader()
            except Exception as e:
                logger.debug(f"Component reader '{name}' failed: {e}")

        breakdown: Dict[str, float] = {}
        for name, value in raw.items():
            if not _is_valid_component_value(value):
                logger.debug(f"Skipping component '{name}' with value {value!r}")
                continue
            breakdown[str(name)] = float(value)

        attributed = sum(breakdown.values())
        if attributed > total_bytes and attributed > 0:
            scale = total_bytes / attributed
            logger.debug(
                f"Component total {attributed:.0f} exceeds usage {total_bytes}; "
                f"scaling by {scale:.3f}"
            )
            return {name: int(value * scale) for name, value in breakdown.items()}

        return {name: int(value) for name, value in breakdown.items()}

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def process_memory_mb(self) -> float:
        """Cheap usage-only read in megabytes (no components or scoring)."""
        return self._usage_reader() / BYTES_PER_MB

    def sample(self) -> MemorySample:
        """Take a measurement."""
        usage = int(self._usage_reader())
        if usage < 0:
            raise ValueError(f"usage reader returned negative value: {usage}")
        timestamp = self._clock()
        limit = self.limit_bytes

        if limit:
            percentage = max(0.0, min(100.0, usage / limit * 100))
            reading = percentage
        else:
            percentage = None
            reading = float(usage)

        with self._lock:
            self._recent.append(reading)
            recent = list(self._recent)

        efficiency = compute_efficiency_score(percentage, recent, self.weights)
        components = self._collect_components(usage)

        return MemorySample(
            timestamp=timestamp,
            total_usage_bytes=usage,
            limit_bytes=limit,
            usage_percentage=percentage,
            efficiency_score=efficiency,
            component_breakdown=components,
            status=self.classify(percentage).value,
        )

    def reset(self) -> None:
        """Forget the volatility window."""
        with self._lock:
            self._recent.clear()


__all__ = [
    'MemoryStatus',
    'MemorySample',
    'EfficiencyWeights',
    'MetricSampler',
    'coefficient_of_variation',
    'compute_efficiency_score',
    'detect_memory_limit',
]
