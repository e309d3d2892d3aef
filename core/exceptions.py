"""
Custom exceptions for the sync engine with structured error context.

This module provides the exception hierarchy raised by the remote fetch
layer, the sinks and the import coordinator. Each exception carries context
information for debugging and monitoring, and may carry an explicit
severity or recovery strategy that the fault classifier honours.

Exception Hierarchy:
    SyncException (base)
    ├── RemoteAPIError
    │   ├── NetworkError
    │   ├── RateLimitError
    │   ├── RemoteServerError
    │   ├── RemoteClientError
    │   └── AuthenticationError
    ├── DataValidationError
    ├── ConflictError
    ├── ConfigurationError
    ├── LocalIOError
    │   ├── CheckpointError
    │   └── DeferredOperationError
    ├── ImportStateError
    │   ├── ImportAlreadyRunningError
    │   ├── NothingToResumeError
    │   └── InvalidPhaseTransitionError
    ├── DegradedModeError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (operation, item key, etc.)
        original_exception: The original exception that was caught (if any)
        severity: Optional severity override for the fault classifier
        strategy: Optional recovery strategy override for the fault classifier
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        severity: Optional[str] = None,
        strategy: Optional[str] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.severity = severity
        self.strategy = strategy
        self.timestamp = datetime.now(timezone.utc)

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncException):
    """
    Mixin for errors that are transient by nature.

    Use this for errors like:
    - Network timeouts and refused connections
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    - Temporary local write failures
    """
    pass


class NonRetryableError(SyncException):
    """
    Mixin for errors that will not go away by repeating the call.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Invalid data shape
    - Bad requests (HTTP 4xx)
    - Misconfiguration
    """
    pass


# ============================================================================
# Remote API Errors
# ============================================================================

class RemoteAPIError(SyncException):
    """
    Exception raised when the remote issue tracker call fails.

    Context should include:
        - api_url: The endpoint that failed
        - status_code: HTTP status code (if applicable)
        - response_body: Response body (truncated if large)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        **kwargs
    ):
        super().__init__(message, context, original_exception, **kwargs)
        self.status_code = status_code
        self.retry_after = retry_after  # Seconds to wait before retry
        if status_code is not None:
            self.context["status_code"] = status_code
        if retry_after is not None:
            self.context["retry_after"] = retry_after


class NetworkError(RetryableError, RemoteAPIError):
    """Connectivity failures (refused, reset, timed out) that should be retried."""
    pass


class RateLimitError(RetryableError, RemoteAPIError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None,
        **kwargs
    ):
        kwargs.setdefault("status_code", 429)
        super().__init__(
            message,
            context,
            original_exception,
            retry_after=retry_after,
            **kwargs
        )


class RemoteServerError(RetryableError, RemoteAPIError):
    """Server-side failures (HTTP 5xx)."""
    pass


class RemoteClientError(NonRetryableError, RemoteAPIError):
    """Client-side failures (HTTP 4xx other than 401, 403 and 429)."""
    pass


class AuthenticationError(NonRetryableError, RemoteAPIError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


# ============================================================================
# Data Errors
# ============================================================================

class DataValidationError(NonRetryableError):
    """
    Exception raised when a record or response has an unusable shape.

    Context should include:
        - item_key: Key of the offending item (if applicable)
        - field_name: Name of the field that failed validation
    """
    pass


class ConflictError(NonRetryableError):
    """Local and remote versions of an item disagree and need resolution."""
    pass


class ConfigurationError(NonRetryableError):
    """Sync settings are missing or invalid."""
    pass


# ============================================================================
# Local Persistence Errors
# ============================================================================

class LocalIOError(RetryableError):
    """
    Exception raised when writing to the local store fails.

    Context should include:
        - item_key: Key of the item being written (if applicable)
        - path: Target location (if applicable)
    """
    pass


class CheckpointError(LocalIOError):
    """
    Exception raised when checkpoint persistence fails.

    Context should include:
        - session_id: Import session the checkpoint belongs to
        - operation: Operation that failed (load, save, clear)
    """
    pass


class DeferredOperationError(LocalIOError):
    """Exception raised when a deferred operation cannot be queued durably."""
    pass


# ============================================================================
# Coordinator Errors
# ============================================================================

class ImportStateError(SyncException):
    """Base exception for invalid requests against the import coordinator."""
    pass


class ImportAlreadyRunningError(ImportStateError):
    """A session is already active on this coordinator."""
    pass


class NothingToResumeError(ImportStateError):
    """No checkpoint exists for the requested session."""
    pass


class InvalidPhaseTransitionError(ImportStateError):
    """The session state machine does not allow the requested phase change."""
    pass


class DegradedModeError(SyncException):
    """Write operations are disabled while degraded mode is active."""
    pass
