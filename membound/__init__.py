"""
membound - Memory monitoring and bounded-memory streaming import.
"""

__version__ = "1.0.0"

from .constants import (
    Units,
    SamplingDefaults,
    ThresholdDefaults,
    LeakDefaults,
    PatternDefaults,
    ForecastDefaults,
    ImportDefaults,
    AlertDefaults,
)
from .exceptions import (
    MemboundError,
    ConfigValidationError,
    ResourceExhaustedError,
    SourceError,
    TransientSourceError,
    SourceTimeoutError,
    RateLimitedError,
    SourceFetchError,
    ImportCancelledError,
)
from .config import MonitorConfig, get_preset, list_presets, load_config
from .sampler import MemorySample, MemoryStatus, MetricSampler, EfficiencyWeights
from .history import HistoryStore, RetentionPolicy
from .alerts import Alert, AlertLevel, AlertManager, AlertSeverity
from .analysis import (
    Forecast,
    Forecaster,
    Granularity,
    LeakCandidate,
    LeakDetector,
    LeakDetectorConfig,
    LeakType,
    PatternMiner,
    Recommendation,
    RecommendationEngine,
    RiskLevel,
    SeverityLevel,
    UsagePattern,
)
from .memory_monitor import MemoryMonitor, create_memory_monitor
from .importer import (
    CancellationToken,
    ContentSource,
    DatabaseTableSource,
    HttpPageSource,
    ImportChunk,
    ImportResult,
    ItemResult,
    Page,
    SequenceSource,
    StreamingImporter,
    create_source,
)

__all__ = [
    '__version__',
    # Constants
    'Units', 'SamplingDefaults', 'ThresholdDefaults', 'LeakDefaults',
    'PatternDefaults', 'ForecastDefaults', 'ImportDefaults', 'AlertDefaults',
    # Errors
    'MemboundError', 'ConfigValidationError', 'ResourceExhaustedError',
    'SourceError', 'TransientSourceError', 'SourceTimeoutError',
    'RateLimitedError', 'SourceFetchError', 'ImportCancelledError',
    # Configuration
    'MonitorConfig', 'get_preset', 'list_presets', 'load_config',
    # Monitoring
    'MemorySample', 'MemoryStatus', 'MetricSampler', 'EfficiencyWeights',
    'HistoryStore', 'RetentionPolicy',
    'Alert', 'AlertLevel', 'AlertManager', 'AlertSeverity',
    'Forecast', 'Forecaster', 'Granularity', 'LeakCandidate', 'LeakDetector',
    'LeakDetectorConfig', 'LeakType', 'PatternMiner', 'Recommendation',
    'RecommendationEngine', 'RiskLevel', 'SeverityLevel', 'UsagePattern',
    'MemoryMonitor', 'create_memory_monitor',
    # Import
    'CancellationToken', 'ContentSource', 'DatabaseTableSource', 'HttpPageSource',
    'ImportChunk', 'ImportResult', 'ItemResult', 'Page', 'SequenceSource',
    'StreamingImporter', 'create_source',
]
