"""Tagged error variants raised by the quota and sync subsystem.

Each variant carries structured fields so callers never have to inspect
message strings. Retryable and fatal kinds are distinguished by the
``retryable`` class attribute, which the RetryCoordinator relies on.
"""

from typing import Any, Dict, Optional, Sequence


class QuotaSyncError(Exception):
    """Base class for all subsystem errors."""
    retryable: bool = False


# --- Remote failures ---

class NetworkError(QuotaSyncError):
    """Transient transport failure or 5xx-class remote error."""
    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimited(QuotaSyncError):
    """The remote store asked us to slow down (HTTP 429)."""
    retryable = True

    def __init__(self, message: str = "Rate limited by remote store", retry_after: Optional[float] = None):
        self.retry_after = retry_after # Seconds, as hinted by the server
        super().__init__(message)


class ValidationError(QuotaSyncError):
    """Malformed request or rejected action. Never retried."""

    def __init__(self, message: str, action_ids: Sequence[str] = ()):
        self.action_ids = tuple(action_ids)
        super().__init__(message)


class AuthError(QuotaSyncError):
    """Authentication failure; escalated to the caller for re-authentication."""

    def __init__(self, message: str = "Authentication required", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CorruptState(QuotaSyncError):
    """A local record failed integrity checks. Handled by the Validator."""

    def __init__(self, message: str, record: Optional[Dict[str, Any]] = None):
        self.record = record
        super().__init__(message)


# --- Coordinator outcomes ---

class ExhaustedRetries(QuotaSyncError):
    """Raised when max attempts are exceeded for a retryable failure."""

    def __init__(self, last_error: Exception, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"Gave up after {attempts} attempt(s). Last error: {last_error}")


class OperationCancelled(QuotaSyncError):
    """The cancellation flag was set between retry attempts."""


class CircuitOpenError(QuotaSyncError):
    """The circuit breaker is open; remote calls are short-circuited."""

    def __init__(self, retry_in: float):
        self.retry_in = retry_in
        super().__init__(f"Circuit breaker is open (retry in {retry_in:.1f}s)")


class ConfigurationError(QuotaSyncError):
    """Invalid configuration value."""
