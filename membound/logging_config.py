"""
Logging Configuration for membound.

Provides centralized logging configuration with verbose mode toggle,
per-feature areas, and text or JSON-lines formatting.

Usage:
    from membound.logging_config import setup_logging, get_logger

    # Setup at host startup
    setup_logging(verbose=True)

    # Get feature-specific logger
    logger = get_logger('membound.importer')
    logger.pipeline_start('import', source='rss')
"""

import os
import sys
import json
import logging
import threading
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Optional, Dict, Any, Set
from dataclasses import dataclass, field


# =============================================================================
# LOGGING LEVELS AND FEATURES
# =============================================================================

TRACE = 5
VERBOSE = 15
NOTICE = 25


class FeatureArea(Enum):
    """Feature areas for targeted logging."""
    CORE = auto()       # Package-level operations
    MONITOR = auto()    # MemoryMonitor orchestration
    SAMPLER = auto()    # Metric sampling
    HISTORY = auto()    # History storage
    ANALYSIS = auto()   # Leak/pattern/forecast/advice
    ALERTS = auto()     # Alert state machine
    IMPORTER = auto()   # Streaming importer and sources
    CONFIG = auto()     # Configuration loading
    CLI = auto()        # Command line


# Logger names owned by each feature area
FEATURE_LOGGERS = {
    FeatureArea.CORE: ('membound.utils', 'membound.constants'),
    FeatureArea.MONITOR: ('membound.memory_monitor',),
    FeatureArea.SAMPLER: ('membound.sampler',),
    FeatureArea.HISTORY: ('membound.history',),
    FeatureArea.ANALYSIS: ('membound.analysis',),
    FeatureArea.ALERTS: ('membound.alerts',),
    FeatureArea.IMPORTER: ('membound.importer',),
    FeatureArea.CONFIG: ('membound.config',),
    FeatureArea.CLI: ('membound.cli',),
}


logging.addLevelName(TRACE, 'TRACE')
logging.addLevelName(VERBOSE, 'VERBOSE')
logging.addLevelName(NOTICE, 'NOTICE')


@dataclass
class LoggingState:
    """Thread-safe logging configuration state."""
    verbose: bool = False
    trace: bool = False
    log_file: Optional[str] = None
    console_enabled: bool = True
    json_format: bool = False
    enabled_features: Set[FeatureArea] = field(default_factory=lambda: set(FeatureArea))
    initialized: bool = False
    _lock: threading.RLock = field(default_factory=threading.RLock)


_state = LoggingState()


# =============================================================================
# CUSTOM FORMATTER
# =============================================================================

class MemboundFormatter(logging.Formatter):
    """Formatter with color support and structured output."""

    COLORS = {
        'TRACE': '\033[90m',      # Gray
        'DEBUG': '\033[36m',      # Cyan
        'VERBOSE': '\033[94m',    # Light blue
        'INFO': '\033[32m',       # Green
        'NOTICE': '\033[33m',     # Yellow
        'WARNING': '\033[33;1m',  # Bold yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[31;1m', # Bold red
        'RESET': '\033[0m',
    }

    def __init__(self, use_colors: bool = True, json_format: bool = False):
        self.use_colors = use_colors and sys.stdout.isatty()
        self.json_format = json_format
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            return self._format_json(record)
        return self._format_text(record)

    def _format_text(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        level_name = record.levelname

        if self.use_colors:
            color = self.COLORS.get(level_name, '')
            reset = self.COLORS['RESET']
            level_str = f"{color}{level_name:8}{reset}"
        else:
            level_str = f"{level_name:8}"

        feature_str = f"[{self._extract_feature(record.name)}]"
        msg = record.getMessage()

        extra_str = ""
        extra_data = getattr(record, 'extra_data', None)
        if extra_data:
            extra_items = [f"{k}={v}" for k, v in extra_data.items()]
            extra_str = f" | {', '.join(extra_items)}"

        line = f"{timestamp} {level_str} {feature_str:12} {msg}{extra_str}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line

    def _format_json(self, record: logging.LogRecord) -> str:
        data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'feature': self._extract_feature(record.name),
        }

        extra_data = getattr(record, 'extra_data', None)
        if extra_data:
            data['extra'] = extra_data

        if record.exc_info:
            data['exception'] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)

    def _extract_feature(self, logger_name: str) -> str:
        """Extract feature area from logger name."""
        parts = logger_name.split('.')
        if len(parts) >= 2 and parts[0] == 'membound':
            # membound.analysis.leaks -> analysis
            return parts[1]
        return parts[0] if parts else 'core'


# =============================================================================
# CUSTOM LOGGER CLASS
# =============================================================================

class MemboundLogger(logging.Logger):
    """Logger with extra verbosity levels and pipeline helpers."""

    FEATURE_MAP = {
        'memory_monitor': FeatureArea.MONITOR,
        'sampler': FeatureArea.SAMPLER,
        'history': FeatureArea.HISTORY,
        'analysis': FeatureArea.ANALYSIS,
        'alerts': FeatureArea.ALERTS,
        'importer': FeatureArea.IMPORTER,
        'config': FeatureArea.CONFIG,
        'cli': FeatureArea.CLI,
    }

    def __init__(self, name: str, level: int = logging.NOTSET):
        super().__init__(name, level)
        self.feature = self._detect_feature(name)

    def _detect_feature(self, name: str) -> FeatureArea:
        name_lower = name.lower()
        for key, feature in self.FEATURE_MAP.items():
            if key in name_lower:
                return feature
        return FeatureArea.CORE

    def trace(self, msg: str, *args, **kwargs):
        """Log at TRACE level (ultra-verbose)."""
        if self.isEnabledFor(TRACE):
            self._log(TRACE, msg, args, **kwargs)

    def verbose(self, msg: str, *args, **kwargs):
        """Log at VERBOSE level."""
        if self.isEnabledFor(VERBOSE):
            self._log(VERBOSE, msg, args, **kwargs)

    def notice(self, msg: str, *args, **kwargs):
        """Log at NOTICE level."""
        if self.isEnabledFor(NOTICE):
            self._log(NOTICE, msg, args, **kwargs)

    def log_with_data(self, level: int, msg: str, data: Dict[str, Any], **kwargs):
        """Log with structured extra data."""
        extra = kwargs.get('extra', {})
        extra['extra_data'] = data
        kwargs['extra'] = extra
        if self.isEnabledFor(level):
            self._log(level, msg, (), **kwargs)

    def pipeline_start(self, pipeline_name: str, **data):
        """Log pipeline start."""
        self.info(f"Pipeline START: {pipeline_name}", extra={'extra_data': data})

    def pipeline_end(self, pipeline_name: str, success: bool, **data):
        """Log pipeline end."""
        status = "SUCCESS" if success else "FAILED"
        level = logging.INFO if success else logging.ERROR
        if self.isEnabledFor(level):
            self._log(level, f"Pipeline END: {pipeline_name} - {status}",
                      (), extra={'extra_data': data})

    def pipeline_step(self, step_name: str, **data):
        """Log pipeline step."""
        self.verbose(f"  Step: {step_name}", extra={'extra_data': data})


# Set our custom logger class
logging.setLoggerClass(MemboundLogger)


# =============================================================================
# SETUP AND CONFIGURATION
# =============================================================================

def setup_logging(
    verbose: bool = False,
    trace: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
    features: Optional[Set[FeatureArea]] = None,
) -> None:
    """
    Initialize the logging system.

    Args:
        verbose: Enable verbose logging (VERBOSE level)
        trace: Enable trace logging (TRACE level, implies verbose)
        log_file: Optional file path for log output
        console: Enable console output
        json_format: Use JSON format for logs
        features: Set of features logged at the base level (others WARNING+)
    """
    with _state._lock:
        _state.verbose = verbose or trace
        _state.trace = trace
        _state.log_file = log_file
        _state.console_enabled = console
        _state.json_format = json_format
        _state.enabled_features = set(FeatureArea) if features is None else set(features)

        if trace:
            base_level = TRACE
        elif verbose:
            base_level = VERBOSE
        else:
            base_level = logging.INFO

        root = logging.getLogger()
        root.setLevel(base_level)

        for handler in root.handlers[:]:
            root.removeHandler(handler)

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(base_level)
            console_handler.setFormatter(MemboundFormatter(
                use_colors=True,
                json_format=json_format
            ))
            root.addHandler(console_handler)

        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(base_level)
            file_handler.setFormatter(MemboundFormatter(
                use_colors=False,
                json_format=json_format
            ))
            root.addHandler(file_handler)

        for feature, names in FEATURE_LOGGERS.items():
            level = logging.NOTSET if feature in _state.enabled_features else logging.WARNING
            for name in names:
                logging.getLogger(name).setLevel(level)

        _state.initialized = True


def get_logger(name: str) -> MemboundLogger:
    """
    Get a feature-aware logger.

    Args:
        name: Logger name (e.g., 'membound.importer.stream')

    Returns:
        MemboundLogger instance
    """
    logger = logging.getLogger(name)
    if not isinstance(logger, MemboundLogger):
        # Created before this module was imported; upgrade in place
        logger.__class__ = MemboundLogger
        logger.feature = MemboundLogger._detect_feature(logger, name)
    return logger


def set_verbose(enabled: bool) -> None:
    """Toggle verbose mode at runtime."""
    with _state._lock:
        _state.verbose = enabled
        level = VERBOSE if enabled else logging.INFO

        root = logging.getLogger()
        root.setLevel(level)
        for handler in root.handlers:
            handler.setLevel(level)


def is_verbose() -> bool:
    """Check if verbose mode is enabled."""
    return _state.verbose


def get_logging_state() -> Dict[str, Any]:
    """Get current logging configuration state."""
    with _state._lock:
        return {
            'verbose': _state.verbose,
            'trace': _state.trace,
            'log_file': _state.log_file,
            'console_enabled': _state.console_enabled,
            'json_format': _state.json_format,
            'enabled_features': sorted(f.name for f in _state.enabled_features),
            'initialized': _state.initialized,
        }


def configure_from_environment() -> None:
    """Configure logging from MEMBOUND_* environment variables."""
    def flag(name: str) -> bool:
        return os.environ.get(name, '').lower() in ('1', 'true', 'yes')

    setup_logging(
        verbose=flag('MEMBOUND_VERBOSE'),
        trace=flag('MEMBOUND_TRACE'),
        log_file=os.environ.get('MEMBOUND_LOG_FILE'),
        console=not flag('MEMBOUND_LOG_NO_CONSOLE'),
        json_format=flag('MEMBOUND_LOG_JSON'),
    )


__all__ = [
    'TRACE',
    'VERBOSE',
    'NOTICE',
    'FeatureArea',
    'FEATURE_LOGGERS',
    'setup_logging',
    'configure_from_environment',
    'get_logger',
    'set_verbose',
    'is_verbose',
    'get_logging_state',
    'MemboundLogger',
    'MemboundFormatter',
]
