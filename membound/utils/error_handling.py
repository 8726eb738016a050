"""
Error Handling Utilities for membound

Provides consistent error handling for the monitor and the importer:
1. Detailed error logging with context
2. Error categorization and severity levels
3. Bounded retry with exponential backoff
4. Per-owner error aggregation and reporting

USAGE:
    from membound.utils.error_handling import (
        ErrorAggregator,
        ErrorCategory,
        handle_error,
        retry_call,
    )

    aggregator = ErrorAggregator()
    try:
        risky_operation()
    except Exception as e:
        handle_error(e, "operation_name", ErrorCategory.EXTERNAL, aggregator=aggregator)

    page = retry_call(fetch, attempts=4, retry_on=(TimeoutError,))
"""

import logging
import sys
import time
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    Type,
    TypeVar,
)

from ..exceptions import (
    ConfigValidationError,
    ResourceExhaustedError,
    TransientSourceError,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ErrorCategory(Enum):
    """Categories of errors for proper handling and reporting."""
    # Configuration errors
    CONFIG = "configuration"

    # Memory budget / resource exhaustion
    RESOURCE = "resource"

    # External content source errors
    EXTERNAL = "external"

    # Network-related errors
    NETWORK = "network"

    # Bad or unexpected data (item handler failures)
    DATA = "data"

    # Process/system errors (sampling)
    SYSTEM = "system"

    # Unknown/uncategorized
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Detailed context information for an error."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    thread_name: str = field(default_factory=lambda: threading.current_thread().name)
    stack_trace: str = ""
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.stack_trace and sys.exc_info()[0] is not None:
            self.stack_trace = traceback.format_exc()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            'error_type': type(self.error).__name__,
            'error_message': str(self.error),
            'category': self.category.value,
            'severity': self.severity.value,
            'operation': self.operation,
            'timestamp': self.timestamp,
            'thread_name': self.thread_name,
            'additional_context': self.additional_context,
        }

    def format_log_message(self) -> str:
        """Format a detailed log message."""
        lines = [
            f"ERROR [{self.severity.value.upper()}] in {self.operation}",
            f"  Category: {self.category.value}",
            f"  Type: {type(self.error).__name__}",
            f"  Message: {self.error}",
            f"  Thread: {self.thread_name}",
        ]

        if self.additional_context:
            lines.append("  Context:")
            for key, value in self.additional_context.items():
                lines.append(f"    {key}: {value}")

        if self.stack_trace:
            lines.append("  Stack Trace:")
            for line in self.stack_trace.split('\n'):
                if line.strip():
                    lines.append(f"    {line}")

        return '\n'.join(lines)


class ErrorAggregator:
    """
    Aggregates and tracks errors for reporting and analysis.

    Thread-safe error collection with deduplication. Each monitor or importer
    owns its own aggregator so that instances do not interfere.
    """

    def __init__(self, max_errors: int = 1000, dedup_window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.time):
        self._errors: List[ErrorContext] = []
        self._lock = threading.Lock()
        self._max_errors = max_errors
        self._dedup_window = dedup_window_seconds
        self._clock = clock
        self._error_counts: Dict[str, int] = {}
        self._last_error_times: Dict[str, float] = {}

    def add_error(self, context: ErrorContext) -> bool:
        """
        Add an error to the aggregator.

        Returns True if error was added, False if deduplicated.
        """
        error_key = f"{context.category.value}:{type(context.error).__name__}:{context.operation}"
        current_time = self._clock()

        with self._lock:
            self._error_counts[error_key] = self._error_counts.get(error_key, 0) + 1

            last_time = self._last_error_times.get(error_key)
            if last_time is not None and current_time - last_time < self._dedup_window:
                return False

            self._errors.append(context)
            self._last_error_times[error_key] = current_time

            if len(self._errors) > self._max_errors:
                self._errors = self._errors[-self._max_errors:]

            return True

    def get_error_summary(self) -> Dict[str, Any]:
        """Get a summary of aggregated errors."""
        with self._lock:
            by_category: Dict[str, int] = {}
            by_severity: Dict[str, int] = {}

            for ctx in self._errors:
                cat = ctx.category.value
                sev = ctx.severity.value
                by_category[cat] = by_category.get(cat, 0) + 1
                by_severity[sev] = by_severity.get(sev, 0) + 1

            return {
                'total_errors': sum(self._error_counts.values()),
                'recorded_errors': len(self._errors),
                'by_category': by_category,
                'by_severity': by_severity,
                'counts_by_key': dict(self._error_counts),
            }

    def get_recent_errors(self, count: int = 10) -> List[Dict[str, Any]]:
        """Get the most recent errors."""
        with self._lock:
            return [e.to_dict() for e in self._errors[-count:]]

    def clear(self):
        """Clear all aggregated errors."""
        with self._lock:
            self._errors.clear()
            self._error_counts.clear()
            self._last_error_times.clear()


def determine_severity(
    error: Exception,
    category: ErrorCategory,
) -> ErrorSeverity:
    """
    Determine the severity level for an error based on type and category.
    """
    if isinstance(error, ResourceExhaustedError) or category == ErrorCategory.RESOURCE:
        return ErrorSeverity.CRITICAL

    if isinstance(error, ConfigValidationError):
        return ErrorSeverity.ERROR

    # Retryable source failures and timeouts are warnings
    if isinstance(error, (TransientSourceError, TimeoutError)):
        return ErrorSeverity.WARNING

    if 'timeout' in type(error).__name__.lower():
        return ErrorSeverity.WARNING

    # A single bad item is not worth more than a warning
    if category == ErrorCategory.DATA:
        return ErrorSeverity.WARNING

    return ErrorSeverity.ERROR


_LOG_LEVELS = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


def handle_error(
    error: Exception,
    operation: str,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    severity: Optional[ErrorSeverity] = None,
    additional_context: Optional[Dict[str, Any]] = None,
    aggregator: Optional[ErrorAggregator] = None,
    reraise: bool = False,
    log_level: Optional[int] = None,
) -> ErrorContext:
    """
    Handle an error with logging and optional aggregation.

    Args:
        error: The exception that occurred
        operation: Name of the operation that failed
        category: Category of the error
        severity: Severity level (auto-determined if not provided)
        additional_context: Additional context information
        aggregator: Aggregator that records the error (none = log only)
        reraise: Whether to re-raise the exception after handling
        log_level: Override the log level (auto-determined if not provided)

    Returns:
        ErrorContext with full error details
    """
    if severity is None:
        severity = determine_severity(error, category)

    context = ErrorContext(
        error=error,
        category=category,
        severity=severity,
        operation=operation,
        additional_context=additional_context or {},
    )

    was_added = aggregator.add_error(context) if aggregator is not None else True

    if log_level is None:
        log_level = _LOG_LEVELS.get(severity, logging.ERROR)

    if was_added:
        logger.log(log_level, context.format_log_message())
    else:
        logger.log(
            min(log_level, logging.DEBUG),
            f"[DEDUPLICATED] {operation}: {type(error).__name__}: {error}"
        )

    if reraise:
        raise error

    return context


def retry_call(
    func: Callable[[], T],
    attempts: int = 1,
    delay: float = 1.0,
    backoff: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientSourceError, TimeoutError),
    operation: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Call func, retrying retryable failures with exponential backoff.

    Args:
        func: Zero-argument callable to invoke
        attempts: Total attempts (first call included), at least 1
        delay: Initial delay between attempts
        backoff: Multiplier for delay on each retry
        retry_on: Exception types that are retried; anything else propagates
        operation: Name used in log messages
        sleep: Sleep function (injectable for tests)
        on_retry: Called with (attempt_number, error) before each retry

    Returns:
        The value returned by func

    Raises:
        The last retryable error once attempts are exhausted, or any
        non-retryable error immediately.
    """
    op_name = operation or getattr(func, '__name__', 'call')
    attempts = max(1, attempts)
    current_delay = delay

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt >= attempts:
                logger.warning(f"{op_name} failed after {attempt} attempts: {e}")
                raise

            wait = current_delay
            retry_after = getattr(e, 'retry_after', None)
            if retry_after is not None:
                wait = max(wait, float(retry_after))

            logger.info(
                f"Retrying {op_name} in {wait:.1f}s "
                f"(attempt {attempt}/{attempts}): {type(e).__name__}: {e}"
            )
            if on_retry is not None:
                on_retry(attempt, e)
            sleep(wait)
            current_delay *= backoff

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{op_name}: retry loop exited without result")


__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorAggregator',
    'determine_severity',
    'handle_error',
    'retry_call',
]
