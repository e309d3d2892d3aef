"""
Pydantic schemas for queries, pages, checkpoints and import results
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, timezone
from models.base import FaultCategory, FaultSeverity, RecoveryStrategy, ImportPhase


# Fields requested when a query does not name its own
DEFAULT_FIELDS: Tuple[str, ...] = (
    "summary",
    "status",
    "assignee",
    "priority",
    "created",
    "updated",
    "description",
    "issuetype",
    "project",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuerySpec(BaseModel):
    """
    What to pull from the remote tracker.

    Immutable once an import is executing; resuming builds a new spec
    with resume_after_key set.
    """
    model_config = ConfigDict(frozen=True)

    query: str = Field(..., min_length=1)
    fields: Tuple[str, ...] = DEFAULT_FIELDS
    page_size: int = Field(50, gt=0)
    max_results: int = Field(1000, ge=0)
    resume_after_key: Optional[str] = None

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Query cannot be empty")
        return v

    def resumed_after(self, last_key: Optional[str], already_processed: int) -> "QuerySpec":
        """Query that only asks for items after last_key, within the remaining cap"""
        return self.model_copy(update={
            "resume_after_key": last_key,
            "max_results": max(self.max_results - already_processed, 0),
        })


class PageResult(BaseModel):
    """One page returned by the remote fetch collaborator"""
    model_config = ConfigDict(frozen=True)

    items: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = Field(0, ge=0)
    is_last: bool = False
    next_page_token: Optional[str] = None


class ItemCounts(BaseModel):
    """Per-item or accumulated sink outcome counts"""

    created: int = Field(0, ge=0)
    updated: int = Field(0, ge=0)
    skipped: int = Field(0, ge=0)

    @property
    def total(self) -> int:
        return self.created + self.updated + self.skipped

    @property
    def imported(self) -> int:
        return self.created + self.updated

    def __add__(self, other: "ItemCounts") -> "ItemCounts":
        return ItemCounts(
            created=self.created + other.created,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
        )

    @classmethod
    def created_one(cls) -> "ItemCounts":
        return cls(created=1)

    @classmethod
    def updated_one(cls) -> "ItemCounts":
        return cls(updated=1)

    @classmethod
    def skipped_one(cls) -> "ItemCounts":
        return cls(skipped=1)


class Checkpoint(BaseModel):
    """Persisted resume state for one import session"""

    session_id: str
    processed_count: int = Field(0, ge=0)
    last_key: Optional[str] = None
    query: QuerySpec
    batch_size: int = Field(..., gt=0)
    phase: ImportPhase = ImportPhase.IMPORTING
    updated_at: datetime = Field(default_factory=_utcnow)


class DeferredOperationDescriptor(BaseModel):
    """Durable description of an operation handed to the queue strategy"""

    operation: str
    item_key: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = Field(0, ge=0)
    category: FaultCategory
    severity: FaultSeverity
    fault_summary: str
    created_at: datetime = Field(default_factory=_utcnow)


class ItemFailure(BaseModel):
    """A single item the sink could not apply"""

    item_key: str
    message: str
    category: FaultCategory = FaultCategory.UNKNOWN
    severity: FaultSeverity = FaultSeverity.MEDIUM
    requires_intervention: bool = False


class FaultRecord(BaseModel):
    """Serializable view of a classified fault"""

    category: FaultCategory
    severity: FaultSeverity
    strategy: RecoveryStrategy
    message: str
    operation: Optional[str] = None
    item_key: Optional[str] = None
    status_code: Optional[int] = None
    requires_intervention: bool = False


class ImportSummary(BaseModel):
    """Result of one coordinator run"""

    session_id: str
    phase: ImportPhase
    imported: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    processed: int = 0
    total: int = 0
    batches: int = 0
    duration_ms: int = 0
    items_per_second: float = 0.0
    average_ms_per_item: float = 0.0
    rolling_items_per_second: float = 0.0
    cancelled: bool = False
    resumed_from: Optional[str] = None
    failures: List[ItemFailure] = Field(default_factory=list)
    faults: List[FaultRecord] = Field(default_factory=list)

    @property
    def requires_intervention(self) -> bool:
        return any(f.requires_intervention for f in self.faults)

    def error_report(self) -> str:
        """Human-readable breakdown of item failures by category"""
        if not self.failures:
            return "No errors occurred during import"

        category_counts: Dict[str, int] = {}
        for failure in self.failures:
            category_counts[failure.category.value] = category_counts.get(failure.category.value, 0) + 1

        lines = [f"Total Errors: {len(self.failures)}", "", "Error Categories:"]
        for category, count in category_counts.items():
            lines.append(f"- {category}: {count}")

        lines.extend(["", "Error Details:"])
        for failure in self.failures:
            lines.append(f"- {failure.item_key}: {failure.message}")

        return "\n".join(lines)
