"""
Named error kinds for membound.

Failures that threaten the memory bound or configuration correctness
propagate to callers as one of these. Failures local to a single sample,
chunk or item are contained and reported through aggregate counters instead.
"""

from typing import Any, List, Optional


class MemboundError(Exception):
    """Base class for all membound errors."""


class ConfigValidationError(MemboundError, ValueError):
    """Configuration rejected at load time."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class ResourceExhaustedError(MemboundError):
    """Memory ceiling repeatedly breached despite cleanup."""

    def __init__(self, ceiling_mb: float, current_mb: float, breaches: int):
        self.ceiling_mb = ceiling_mb
        self.current_mb = current_mb
        self.breaches = breaches
        super().__init__(
            f"Memory ceiling {ceiling_mb:.1f} MB exceeded ({current_mb:.1f} MB) "
            f"after {breaches} cleanup cycles without improvement"
        )


class SourceError(MemboundError):
    """Base class for content source failures."""


class TransientSourceError(SourceError):
    """Retryable source failure (timeout, rate limit, connection reset)."""


class SourceTimeoutError(TransientSourceError, TimeoutError):
    """A single page fetch exceeded its per-request timeout."""


class RateLimitedError(TransientSourceError):
    """The source asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class SourceFetchError(SourceError):
    """A page could not be fetched after bounded retries, or the source misbehaved."""

    def __init__(self, message: str, cursor: Any = None, attempts: int = 0):
        self.cursor = cursor
        self.attempts = attempts
        super().__init__(message)


class ImportCancelledError(MemboundError):
    """Raised by stream() only when the caller asked for it on cancellation."""


__all__ = [
    'MemboundError',
    'ConfigValidationError',
    'ResourceExhaustedError',
    'SourceError',
    'TransientSourceError',
    'SourceTimeoutError',
    'RateLimitedError',
    'SourceFetchError',
    'ImportCancelledError',
]
