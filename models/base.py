from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class FaultCategory(str, enum.Enum):
    """Classified failure categories"""
    NETWORK = "network"
    REMOTE_4XX = "remote_4xx"
    REMOTE_5XX = "remote_5xx"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    CONFIGURATION = "configuration"
    LOCAL_IO = "local_io"
    UNKNOWN = "unknown"


class FaultSeverity(str, enum.Enum):
    """How badly a fault affects the run"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryStrategy(str, enum.Enum):
    """What the recovery service does with a fault"""
    RETRY = "retry"
    QUEUE = "queue"
    FALLBACK = "fallback"
    GRACEFUL_DEGRADATION = "graceful_degradation"
    USER_INTERVENTION = "user_intervention"


class ImportPhase(str, enum.Enum):
    """Import session phase"""
    IDLE = "idle"
    FETCHING = "fetching"
    IMPORTING = "importing"
    PAUSED = "paused"
    RESUMING = "resuming"
    CANCELLED = "cancelled"
    COMPLETE = "complete"
    ERROR = "error"


class DeferredStatus(str, enum.Enum):
    """Deferred operation lifecycle"""
    PENDING = "pending"
    DONE = "done"
    ABANDONED = "abandoned"
