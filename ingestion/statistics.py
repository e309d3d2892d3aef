"""
Rolling sync statistics.

Aggregates counters, rolling averages and a 24-hour window of hourly
buckets for sync operations and classified faults.

Averages are running sums over successful operations only, so failed
operations never distort duration or throughput. Items-per-second is the
unweighted mean of per-operation rates: a 1-second run and a 1-hour run
count the same.

Counters never wrap: once any of them passes ``max_safe_counter`` every
counter is divided down together, keeping ratios (success rate, created
share, ...) and averages intact.
"""

import threading
import time
from typing import Dict, List, Optional

from core.config import settings
from models.base import FaultCategory
from schemas.statistics import HourlyStatsEntry, ErrorCategorySummary, StatisticsSnapshot
from schemas.sync import ItemCounts
import logging

logger = logging.getLogger(__name__)

HOUR_SECONDS = 60 * 60
MAX_HOURLY_ENTRIES = 24
RESCALE_DIVISOR = 100


def hour_bucket(timestamp: float) -> int:
    """Round a Unix timestamp (seconds) down to its hour"""
    return int(timestamp // HOUR_SECONDS) * HOUR_SECONDS


class StatisticsAggregator:
    """
    Mutable sync statistics, safe to share between sessions.

    Invariants after every mutation:
        total_operations == successful_operations + failed_operations
        items_total == items_created + items_updated + items_skipped
    """

    def __init__(self, max_safe_counter: Optional[int] = None):
        self.max_safe_counter = max_safe_counter or settings.STATS_MAX_SAFE_COUNTER
        self._lock = threading.Lock()

        self.total_operations = 0
        self.successful_operations = 0
        self.failed_operations = 0

        self.last_duration_ms = 0.0
        self.longest_duration_ms = 0.0

        self.items_total = 0
        self.items_created = 0
        self.items_updated = 0
        self.items_skipped = 0

        self.errors_by_category: Dict[str, int] = {}
        self.consecutive_failures = 0
        self.api_calls_this_hour = 0

        # Running sums for averages
        self._duration_sum_ms = 0.0
        self._duration_samples = 0
        self._rate_sum = 0.0
        self._rate_samples = 0

        self._hourly: List[HourlyStatsEntry] = []

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_success(
        self,
        duration_ms: float,
        item_counts: ItemCounts,
        timestamp: Optional[float] = None
    ) -> None:
        """Record a successful operation and the items it processed"""
        duration_ms = max(float(duration_ms), 0.0)

        with self._lock:
            self.total_operations += 1
            self.successful_operations += 1
            self.consecutive_failures = 0

            self.last_duration_ms = duration_ms
            self.longest_duration_ms = max(self.longest_duration_ms, duration_ms)

            self.items_created += item_counts.created
            self.items_updated += item_counts.updated
            self.items_skipped += item_counts.skipped
            self.items_total += item_counts.total

            self._duration_sum_ms += duration_ms
            self._duration_samples += 1

            # Zero-length operations have no meaningful rate
            if duration_ms > 0:
                self._rate_sum += item_counts.total / (duration_ms / 1000.0)
                self._rate_samples += 1

            self._update_hourly(1, item_counts.total, 0, timestamp)
            self._prevent_overflow()

    def record_failure(self, category, timestamp: Optional[float] = None) -> None:
        """Record a failed operation under its fault category"""
        key = category.value if isinstance(category, FaultCategory) else str(category)

        with self._lock:
            self.total_operations += 1
            self.failed_operations += 1
            self.consecutive_failures += 1
            self.errors_by_category[key] = self.errors_by_category.get(key, 0) + 1

            self._update_hourly(1, 0, 1, timestamp)
            self._prevent_overflow()

    def record_api_calls(self, count: int) -> None:
        """Track API calls for rate-limit monitoring"""
        with self._lock:
            self.api_calls_this_hour += max(count, 0)
            self._prevent_overflow()

    def reset_hourly_api_calls(self) -> None:
        with self._lock:
            self.api_calls_this_hour = 0

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def average_duration_ms(self) -> float:
        if self._duration_samples == 0:
            return 0.0
        return self._duration_sum_ms / self._duration_samples

    @property
    def average_items_per_second(self) -> float:
        if self._rate_samples == 0:
            return 0.0
        return self._rate_sum / self._rate_samples

    @property
    def success_rate(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.successful_operations / self.total_operations

    def hourly_stats(self) -> List[HourlyStatsEntry]:
        """Up to 24 hourly buckets, oldest first"""
        with self._lock:
            return [entry.model_copy() for entry in self._hourly]

    def hourly_stats_range(self, from_ts: float, to_ts: float) -> List[HourlyStatsEntry]:
        start, end = hour_bucket(from_ts), hour_bucket(to_ts)
        return [e for e in self.hourly_stats() if start <= e.hour <= end]

    def total_syncs_last_24_hours(self) -> int:
        return sum(e.syncs for e in self.hourly_stats())

    def total_items_last_24_hours(self) -> int:
        return sum(e.items for e in self.hourly_stats())

    def total_errors_last_24_hours(self) -> int:
        return sum(e.errors for e in self.hourly_stats())

    def error_category_summary(self) -> ErrorCategorySummary:
        with self._lock:
            errors = dict(self.errors_by_category)

        most_common = ""
        max_count = 0
        for category, count in errors.items():
            if count > max_count:
                max_count = count
                most_common = category

        return ErrorCategorySummary(
            total_errors=sum(errors.values()),
            most_common_error=most_common,
            categories_count=len(errors),
        )

    def snapshot(self) -> StatisticsSnapshot:
        with self._lock:
            return StatisticsSnapshot(
                total_operations=self.total_operations,
                successful_operations=self.successful_operations,
                failed_operations=self.failed_operations,
                average_duration_ms=self.average_duration_ms,
                last_duration_ms=self.last_duration_ms,
                longest_duration_ms=self.longest_duration_ms,
                items_total=self.items_total,
                items_created=self.items_created,
                items_updated=self.items_updated,
                items_skipped=self.items_skipped,
                errors_by_category=dict(self.errors_by_category),
                consecutive_failures=self.consecutive_failures,
                average_items_per_second=self.average_items_per_second,
                api_calls_this_hour=self.api_calls_this_hour,
                hourly_stats=[entry.model_copy() for entry in self._hourly],
            )

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _update_hourly(self, syncs: int, items: int, errors: int, timestamp: Optional[float]) -> None:
        hour = hour_bucket(time.time() if timestamp is None else timestamp)

        entry = next((e for e in self._hourly if e.hour == hour), None)
        if entry is None:
            entry = HourlyStatsEntry(hour=hour)
            self._hourly.append(entry)
            self._hourly.sort(key=lambda e: e.hour)
            if len(self._hourly) > MAX_HOURLY_ENTRIES:
                self._hourly = self._hourly[-MAX_HOURLY_ENTRIES:]

        entry.syncs += syncs
        entry.items += items
        entry.errors += errors

    def _near_overflow(self) -> bool:
        counters = (
            self.total_operations,
            self.items_total,
            self.api_calls_this_hour,
            max(self.errors_by_category.values(), default=0),
        )
        return any(c > self.max_safe_counter for c in counters)

    def _prevent_overflow(self) -> None:
        while self._near_overflow():
            self._rescale(RESCALE_DIVISOR)

    def _rescale(self, divisor: int) -> None:
        logger.warning(
            f"Statistics counters near overflow (operations={self.total_operations}, "
            f"items={self.items_total}); rescaling by 1/{divisor}"
        )

        if self.total_operations > 0:
            success_ratio = self.successful_operations / self.total_operations
            scaled_total = self.total_operations // divisor
            self.successful_operations = round(scaled_total * success_ratio)
            self.failed_operations = scaled_total - self.successful_operations
            self.total_operations = scaled_total

        self.items_created //= divisor
        self.items_updated //= divisor
        self.items_skipped //= divisor
        self.items_total = self.items_created + self.items_updated + self.items_skipped

        self.errors_by_category = {
            category: count // divisor for category, count in self.errors_by_category.items()
        }
        self.api_calls_this_hour //= divisor

        # Keep averages while shrinking their sample counts
        if self._duration_samples:
            average = self._duration_sum_ms / self._duration_samples
            self._duration_samples = max(self._duration_samples // divisor, 1)
            self._duration_sum_ms = average * self._duration_samples
        if self._rate_samples:
            average = self._rate_sum / self._rate_samples
            self._rate_samples = max(self._rate_samples // divisor, 1)
            self._rate_sum = average * self._rate_samples
