"""
Fault classification.

Turns any exception raised by the fetch layer, a sink or the durable store
into a ``Fault``: a category, a severity and the recovery strategy the
recovery service should apply.

Precedence (first match wins):
    1. HTTP 429 or a retry-after hint      -> rate_limit / low / retry
    2. Connectivity failure                -> network / medium / retry
    3. HTTP 5xx                            -> remote_5xx / medium / retry
    4. HTTP 4xx except 401, 403, 429       -> remote_4xx / medium / queue
    5. HTTP 401, 403                       -> auth / high / user_intervention
    6. Local write failure                 -> local_io / medium / retry
    7. Irrecoverable data shape            -> validation / medium / user_intervention
    8. Conflict                            -> conflict / medium / user_intervention
       Configuration                       -> configuration / high / user_intervention
    9. Anything else                       -> unknown / medium / retry

Severity and strategy overrides carried by a ``SyncException`` are applied
after the rules above.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple

import httpx
import pydantic

from core.exceptions import (
    SyncException,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    DataValidationError,
    ConflictError,
    ConfigurationError,
    LocalIOError,
)
from models.base import FaultCategory, FaultSeverity, RecoveryStrategy
from schemas.sync import FaultRecord


CONNECTIVITY_ERRORS = (
    NetworkError,
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

VALIDATION_ERRORS = (
    DataValidationError,
    pydantic.ValidationError,
)


@dataclass(frozen=True)
class Fault:
    """A classified failure. Read-only once created."""

    category: FaultCategory
    severity: FaultSeverity
    strategy: RecoveryStrategy
    message: str
    cause: Optional[BaseException] = None
    retry_after_ms: Optional[int] = None
    status_code: Optional[int] = None
    operation: Optional[str] = None
    item_key: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def requires_intervention(self) -> bool:
        return self.strategy == RecoveryStrategy.USER_INTERVENTION

    @property
    def is_transient(self) -> bool:
        return self.strategy in (RecoveryStrategy.RETRY, RecoveryStrategy.QUEUE, RecoveryStrategy.FALLBACK)

    def summary(self) -> str:
        parts = [f"[{self.category.value}/{self.severity.value}]"]
        if self.operation:
            parts.append(self.operation)
        if self.item_key:
            parts.append(self.item_key)
        if self.status_code is not None:
            parts.append(f"HTTP {self.status_code}")
        parts.append(self.message)
        return " ".join(parts)

    def to_record(self) -> FaultRecord:
        return FaultRecord(
            category=self.category,
            severity=self.severity,
            strategy=self.strategy,
            message=self.message,
            operation=self.operation,
            item_key=self.item_key,
            status_code=self.status_code,
            requires_intervention=self.requires_intervention,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_record().model_dump(mode="json")
        data["retry_after_ms"] = self.retry_after_ms
        data["timestamp"] = self.timestamp.isoformat()
        return data


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def _retry_after_ms(error: BaseException) -> Optional[int]:
    retry_after = getattr(error, "retry_after", None)

    if retry_after is None and isinstance(error, httpx.HTTPStatusError):
        header = error.response.headers.get("Retry-After")
        if header is not None:
            try:
                retry_after = float(header)
            except ValueError:
                # HTTP-date form is not worth parsing here; fall back to backoff
                retry_after = None

    if retry_after is None:
        return None
    return max(int(float(retry_after) * 1000), 0)


def _message(error: BaseException) -> str:
    if isinstance(error, SyncException):
        return error.message
    text = str(error)
    return text or type(error).__name__


def _base_classification(
    error: BaseException,
    status: Optional[int],
    retry_after_ms: Optional[int]
) -> Tuple[FaultCategory, FaultSeverity, RecoveryStrategy]:
    if status == 429 or retry_after_ms is not None or isinstance(error, RateLimitError):
        return FaultCategory.RATE_LIMIT, FaultSeverity.LOW, RecoveryStrategy.RETRY

    if isinstance(error, CONNECTIVITY_ERRORS):
        return FaultCategory.NETWORK, FaultSeverity.MEDIUM, RecoveryStrategy.RETRY

    if status is not None and 500 <= status < 600:
        return FaultCategory.REMOTE_5XX, FaultSeverity.MEDIUM, RecoveryStrategy.RETRY

    if status is not None and 400 <= status < 500 and status not in (401, 403):
        return FaultCategory.REMOTE_4XX, FaultSeverity.MEDIUM, RecoveryStrategy.QUEUE

    if status in (401, 403) or isinstance(error, AuthenticationError):
        return FaultCategory.AUTH, FaultSeverity.HIGH, RecoveryStrategy.USER_INTERVENTION

    if isinstance(error, (LocalIOError, OSError)):
        return FaultCategory.LOCAL_IO, FaultSeverity.MEDIUM, RecoveryStrategy.RETRY

    if isinstance(error, VALIDATION_ERRORS):
        return FaultCategory.VALIDATION, FaultSeverity.MEDIUM, RecoveryStrategy.USER_INTERVENTION

    if isinstance(error, ConflictError):
        return FaultCategory.CONFLICT, FaultSeverity.MEDIUM, RecoveryStrategy.USER_INTERVENTION

    if isinstance(error, ConfigurationError):
        return FaultCategory.CONFIGURATION, FaultSeverity.HIGH, RecoveryStrategy.USER_INTERVENTION

    return FaultCategory.UNKNOWN, FaultSeverity.MEDIUM, RecoveryStrategy.RETRY


def classify_fault(
    error: BaseException,
    operation: Optional[str] = None,
    item_key: Optional[str] = None
) -> Fault:
    """
    Classify an exception raised while executing ``operation``.

    Args:
        error: The raised exception (an existing Fault is returned as-is)
        operation: Name of the operation that failed (e.g. "fetch_page")
        item_key: Key of the item being processed, if any

    Returns:
        Fault with category, severity and strategy assigned
    """
    if isinstance(error, Fault):
        return error

    status = _status_code(error)
    retry_after_ms = _retry_after_ms(error)
    category, severity, strategy = _base_classification(error, status, retry_after_ms)

    if isinstance(error, SyncException):
        if error.severity is not None:
            severity = FaultSeverity(error.severity)
            if severity == FaultSeverity.CRITICAL and error.strategy is None:
                strategy = RecoveryStrategy.GRACEFUL_DEGRADATION
        if error.strategy is not None:
            strategy = RecoveryStrategy(error.strategy)
        if item_key is None:
            item_key = error.context.get("item_key")

    return Fault(
        category=category,
        severity=severity,
        strategy=strategy,
        message=_message(error),
        cause=error,
        retry_after_ms=retry_after_ms,
        status_code=status,
        operation=operation,
        item_key=item_key,
    )
