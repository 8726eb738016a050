"""
Utility modules for membound.

Provides common utilities including:
- Error handling with verbose logging
- Bounded retry with exponential backoff
"""

from .error_handling import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ErrorAggregator,
    determine_severity,
    handle_error,
    retry_call,
)

__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorAggregator',
    'determine_severity',
    'handle_error',
    'retry_call',
]
