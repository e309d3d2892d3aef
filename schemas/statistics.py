"""
Pydantic schemas for sync statistics snapshots
"""

from pydantic import BaseModel, Field
from typing import Dict, List


class HourlyStatsEntry(BaseModel):
    """Aggregates for one wall-clock hour"""

    hour: int  # Unix timestamp (seconds) rounded down to the hour
    syncs: int = 0
    items: int = 0
    errors: int = 0


class ErrorCategorySummary(BaseModel):
    total_errors: int = 0
    most_common_error: str = ""
    categories_count: int = 0


class StatisticsSnapshot(BaseModel):
    """Point-in-time copy of the statistics aggregator"""

    # Operation counters
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0

    # Timing (milliseconds)
    average_duration_ms: float = 0.0
    last_duration_ms: float = 0.0
    longest_duration_ms: float = 0.0

    # Volume
    items_total: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_skipped: int = 0

    # Errors
    errors_by_category: Dict[str, int] = Field(default_factory=dict)
    consecutive_failures: int = 0

    # Throughput
    average_items_per_second: float = 0.0
    api_calls_this_hour: int = 0

    # Last 24 hours, oldest first
    hourly_stats: List[HourlyStatsEntry] = Field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.successful_operations / self.total_operations
