"""
Recovery strategies for classified faults.

The recovery service receives a ``Fault`` and applies its strategy:

- retry: hand back a backoff delay while the category's attempt ceiling
  allows another attempt, otherwise degrade to queue
- queue: persist a deferred-operation descriptor through the durable store
- fallback: run the category's registered fallback once, queue on failure
- graceful_degradation: switch the process-wide degraded mode on
- user_intervention: nothing automatic; the caller surfaces the fault

The service never sleeps itself. Callers that get ``retry=True`` wait for
``delay_ms`` the way that suits them (the query executor waits in
cancellable slices).
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.config import settings
from core.exceptions import DegradedModeError, DeferredOperationError
from ingestion.backoff import calculate_backoff_ms
from ingestion.faults import Fault
from ingestion.interfaces import DurableStore
from ingestion.statistics import StatisticsAggregator
from models.base import FaultCategory, RecoveryStrategy
from schemas.sync import DeferredOperationDescriptor
import logging

logger = logging.getLogger(__name__)

FallbackHandler = Callable[[Fault, Dict[str, Any]], Awaitable[Any]]
DegradedModeListener = Callable[[bool, Optional[str]], None]

INTERVENTION_MESSAGES = {
    FaultCategory.AUTH: "Authentication failed. Please update the tracker credentials.",
    FaultCategory.CONFIGURATION: "Configuration error. Please check the sync settings.",
    FaultCategory.CONFLICT: "Sync conflict requires resolution.",
    FaultCategory.VALIDATION: "Remote data could not be interpreted and needs manual review.",
}


# ============================================================================
# Retry policy
# ============================================================================

def _default_ceilings() -> Dict[FaultCategory, int]:
    return {
        FaultCategory.NETWORK: settings.MAX_ATTEMPTS_NETWORK,
        FaultCategory.RATE_LIMIT: settings.MAX_ATTEMPTS_RATE_LIMIT,
        FaultCategory.REMOTE_5XX: settings.MAX_ATTEMPTS_REMOTE_5XX,
    }


@dataclass
class RetryPolicy:
    """
    Backoff parameters and per-category attempt ceilings.

    A ceiling is the total number of attempts one operation may consume,
    the first attempt included.
    """

    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter: bool = True
    max_attempts: Dict[FaultCategory, int] = field(default_factory=_default_ceilings)
    default_max_attempts: int = 1

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_delay_ms=settings.BACKOFF_BASE_MS,
            max_delay_ms=settings.BACKOFF_MAX_MS,
            jitter=settings.BACKOFF_JITTER,
            max_attempts=_default_ceilings(),
            default_max_attempts=settings.MAX_ATTEMPTS_DEFAULT,
        )

    def attempts_for(self, category: FaultCategory) -> int:
        return self.max_attempts.get(category, self.default_max_attempts)

    def delay_for(self, fault: Fault, attempt: int) -> int:
        # The server knows best when it will accept requests again
        if fault.retry_after_ms is not None:
            return fault.retry_after_ms
        return calculate_backoff_ms(attempt, self.base_delay_ms, self.max_delay_ms, self.jitter)


# ============================================================================
# Degraded mode
# ============================================================================

class DegradedModeState:
    """
    Process-wide "degraded" flag shared by every session.

    While active, new write operations are refused. Entering and exiting
    are serialized by a single lock; exiting is idempotent.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active = False
        self._reason: Optional[str] = None
        self._since: Optional[datetime] = None
        self._listeners: List[DegradedModeListener] = []

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    @property
    def since(self) -> Optional[datetime]:
        with self._lock:
            return self._since

    def add_listener(self, listener: DegradedModeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def enter(self, reason: str) -> bool:
        """Switch degraded mode on. Returns False if it already was."""
        with self._lock:
            if self._active:
                return False
            self._active = True
            self._reason = reason
            self._since = datetime.now(timezone.utc)
            listeners = list(self._listeners)

        logger.warning(f"Entering degraded mode: {reason}. Disabling write operations.")
        self._notify(listeners, True, reason)
        return True

    def exit(self) -> bool:
        """Switch degraded mode off. Returns False if it was not on."""
        with self._lock:
            if not self._active:
                return False
            self._active = False
            self._reason = None
            self._since = None
            listeners = list(self._listeners)

        logger.info("Exiting degraded mode. Full functionality restored.")
        self._notify(listeners, False, None)
        return True

    def ensure_writable(self) -> None:
        with self._lock:
            active, reason = self._active, self._reason
        if active:
            raise DegradedModeError(
                "Write operations are disabled while degraded mode is active",
                context={"reason": reason}
            )

    @staticmethod
    def _notify(listeners, active: bool, reason: Optional[str]) -> None:
        for listener in listeners:
            try:
                listener(active, reason)
            except Exception:
                logger.exception("Degraded mode listener failed")


# ============================================================================
# Recovery service
# ============================================================================

@dataclass
class RecoveryOutcome:
    """What the recovery service did with a fault"""

    success: bool
    attempts: int
    strategy: RecoveryStrategy
    retry: bool = False
    delay_ms: int = 0
    descriptor: Optional[DeferredOperationDescriptor] = None
    requires_intervention: bool = False
    message: Optional[str] = None


class RecoveryService:
    """
    Applies recovery strategies to classified faults.

    Every fault that passes through ``recover`` or ``record`` is counted in
    the statistics aggregator.
    """

    def __init__(
        self,
        store: DurableStore,
        statistics: Optional[StatisticsAggregator] = None,
        policy: Optional[RetryPolicy] = None,
        degraded_mode: Optional[DegradedModeState] = None
    ):
        self.store = store
        self.statistics = statistics or StatisticsAggregator()
        self.policy = policy or RetryPolicy.from_settings()
        self.degraded_mode = degraded_mode or DegradedModeState()
        self._fallbacks: Dict[FaultCategory, FallbackHandler] = {}

    def register_fallback(self, category: FaultCategory, handler: FallbackHandler) -> None:
        """Register the degraded alternative for a fault category"""
        self._fallbacks[category] = handler

    def record(self, fault: Fault) -> None:
        """Count a fault the caller recovers from locally"""
        self.statistics.record_failure(fault.category)

    async def recover(
        self,
        fault: Fault,
        attempt: int = 1,
        payload: Optional[Dict[str, Any]] = None
    ) -> RecoveryOutcome:
        """
        Apply the fault's strategy.

        Args:
            fault: Classified fault
            attempt: Attempts already made for this operation (1 after the first failure)
            payload: Serializable description of the operation, kept if it gets queued

        Returns:
            RecoveryOutcome describing the action taken

        Raises:
            DeferredOperationError: If a queued operation could not be persisted
        """
        self.record(fault)
        payload = payload or {}

        strategy = fault.strategy
        if strategy == RecoveryStrategy.RETRY:
            return await self._retry(fault, attempt, payload)
        if strategy == RecoveryStrategy.QUEUE:
            return await self._queue(fault, attempt, payload)
        if strategy == RecoveryStrategy.FALLBACK:
            return await self._fallback(fault, attempt, payload)
        if strategy == RecoveryStrategy.GRACEFUL_DEGRADATION:
            return self._degrade(fault, attempt)
        return self._user_intervention(fault, attempt)

    async def _retry(self, fault: Fault, attempt: int, payload: Dict[str, Any]) -> RecoveryOutcome:
        ceiling = self.policy.attempts_for(fault.category)

        if attempt < ceiling:
            delay_ms = self.policy.delay_for(fault, attempt)
            logger.warning(
                f"{fault.summary()} - retrying in {delay_ms} ms "
                f"(attempt {attempt}/{ceiling})"
            )
            return RecoveryOutcome(
                success=False,
                attempts=attempt,
                strategy=RecoveryStrategy.RETRY,
                retry=True,
                delay_ms=delay_ms,
            )

        logger.warning(f"{fault.summary()} - {attempt} attempt(s) exhausted, queueing")
        return await self._queue(fault, attempt, payload)

    async def _queue(self, fault: Fault, attempt: int, payload: Dict[str, Any]) -> RecoveryOutcome:
        descriptor = DeferredOperationDescriptor(
            operation=fault.operation or "unknown",
            item_key=fault.item_key,
            payload=payload,
            attempts=attempt,
            category=fault.category,
            severity=fault.severity,
            fault_summary=fault.summary(),
        )

        try:
            await self.store.enqueue(descriptor)
        except Exception as e:
            raise DeferredOperationError(
                "Failed to queue deferred operation",
                context={
                    "operation": descriptor.operation,
                    "item_key": descriptor.item_key,
                    "category": fault.category.value,
                },
                original_exception=e
            )

        logger.warning(f"Operation queued for retry: {fault.summary()}")
        return RecoveryOutcome(
            success=True,
            attempts=attempt,
            strategy=RecoveryStrategy.QUEUE,
            descriptor=descriptor,
        )

    async def _fallback(self, fault: Fault, attempt: int, payload: Dict[str, Any]) -> RecoveryOutcome:
        handler = self._fallbacks.get(fault.category)
        if handler is None:
            logger.info(f"No fallback for {fault.category.value}, queueing instead")
            return await self._queue(fault, attempt, payload)

        logger.info(f"Attempting {fault.category.value} fallback for {fault.operation or 'operation'}")
        try:
            await handler(fault, payload)
        except Exception as e:
            logger.warning(f"Fallback for {fault.category.value} failed: {e}")
            return await self._queue(fault, attempt, payload)

        return RecoveryOutcome(
            success=True,
            attempts=attempt,
            strategy=RecoveryStrategy.FALLBACK,
        )

    def _degrade(self, fault: Fault, attempt: int) -> RecoveryOutcome:
        self.degraded_mode.enter(fault.summary())
        return RecoveryOutcome(
            success=True,
            attempts=attempt,
            strategy=RecoveryStrategy.GRACEFUL_DEGRADATION,
            message="Sync temporarily unavailable; write operations disabled.",
        )

    def _user_intervention(self, fault: Fault, attempt: int) -> RecoveryOutcome:
        message = INTERVENTION_MESSAGES.get(
            fault.category,
            "Automatic recovery is not possible. Manual action required."
        )
        logger.error(f"{fault.summary()} - {message}")
        return RecoveryOutcome(
            success=False,
            attempts=attempt,
            strategy=RecoveryStrategy.USER_INTERVENTION,
            requires_intervention=True,
            message=message,
        )
