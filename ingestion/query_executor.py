"""
Paginated query execution against the remote tracker.

Drives repeated ``fetch_page`` calls until the query is exhausted, the
result cap is reached, or the caller cancels. Failed fetches go through
the fault classifier and the recovery service; a retry re-issues the very
same page request after a backoff that can be cut short by cancellation.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.config import settings
from ingestion.faults import Fault, classify_fault
from ingestion.interfaces import RemoteFetcher
from ingestion.recovery import RecoveryService
from ingestion.statistics import StatisticsAggregator
from schemas.sync import QuerySpec, PageResult
import logging

logger = logging.getLogger(__name__)

PageCallback = Callable[[List[Dict[str, Any]], int, int], Awaitable[None]]
CancelCheck = Callable[[], bool]


def _never_cancelled() -> bool:
    return False


@dataclass
class ExecutionResult:
    """Outcome of one executor run"""

    items_fetched: int = 0
    total: int = 0
    truncated: bool = False
    cancelled: bool = False
    pages: int = 0
    faults: List[Fault] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.faults)


class PaginatedQueryExecutor:
    """
    Streams query results page by page.

    The executor holds no reference to its caller: progress flows out
    through the ``on_page`` callback and cancellation flows in through
    ``is_cancelled``. Only one fetch is in flight at a time.
    """

    def __init__(
        self,
        fetcher: RemoteFetcher,
        recovery: RecoveryService,
        page_size: Optional[int] = None,
        statistics: Optional[StatisticsAggregator] = None,
        poll_interval_ms: Optional[int] = None
    ):
        self.fetcher = fetcher
        self.recovery = recovery
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.statistics = statistics or recovery.statistics
        self.poll_interval_ms = poll_interval_ms or settings.CANCEL_POLL_INTERVAL_MS

    async def run(
        self,
        spec: QuerySpec,
        on_page: PageCallback,
        is_cancelled: Optional[CancelCheck] = None
    ) -> ExecutionResult:
        """
        Execute the query until exhausted, capped, cancelled or failed.

        Args:
            spec: Query to execute
            on_page: Awaited with (items, fetched_so_far, total) after every page
            is_cancelled: Checked between pages and during backoff sleeps

        Returns:
            ExecutionResult. ``truncated`` is set when results remain that
            were not fetched (cap, cancellation or unrecoverable fault).
        """
        is_cancelled = is_cancelled or _never_cancelled
        result = ExecutionResult()
        page_token: Optional[str] = None
        cap = spec.max_results
        page_size = min(spec.page_size, self.page_size)

        logger.info(f"Executing query '{spec.query}' (cap={cap}, page_size={page_size})")

        while result.items_fetched < cap:
            if is_cancelled():
                logger.info(f"Query cancelled after {result.items_fetched} items")
                result.cancelled = True
                result.truncated = True
                break

            remaining = cap - result.items_fetched
            request_size = min(remaining, page_size)

            page = await self._fetch_with_recovery(spec, page_token, request_size, result, is_cancelled)
            if page is None:
                result.truncated = True
                break

            items = page.items[:remaining]
            result.items_fetched += len(items)
            result.total = page.total
            result.pages += 1

            logger.debug(
                f"Page {result.pages}: {len(items)} items "
                f"({result.items_fetched}/{result.total})"
            )

            await on_page(items, result.items_fetched, result.total)

            if page.is_last or not page.items:
                break

            if page.next_page_token is None:
                logger.warning("Remote reported more pages but returned no continuation token; stopping")
                break
            page_token = page.next_page_token

        else:
            # Cap reached; anything the remote still holds is left behind
            if result.total > result.items_fetched:
                result.truncated = True

        logger.info(
            f"Query finished: fetched={result.items_fetched}, total={result.total}, "
            f"pages={result.pages}, truncated={result.truncated}, faults={len(result.faults)}"
        )
        return result

    async def validate(self, spec: QuerySpec) -> bool:
        """Check the query with the remote before running it"""
        valid = await self.fetcher.validate_query(spec)
        self.statistics.record_api_calls(1)
        if not valid:
            logger.warning(f"Remote rejected query: {spec.query!r}")
        return valid

    async def _fetch_with_recovery(
        self,
        spec: QuerySpec,
        page_token: Optional[str],
        request_size: int,
        result: ExecutionResult,
        is_cancelled: CancelCheck
    ) -> Optional[PageResult]:
        """Fetch one page, retrying as the recovery service directs. None means stop."""
        attempt = 0

        while True:
            attempt += 1
            try:
                page = await self.fetcher.fetch_page(spec, page_token, request_size)
                self.statistics.record_api_calls(1)
                return page

            except Exception as e:
                self.statistics.record_api_calls(1)
                fault = classify_fault(e, operation="fetch_page")
                outcome = await self.recovery.recover(
                    fault,
                    attempt=attempt,
                    payload={
                        "query": spec.model_dump(mode="json"),
                        "page_token": page_token,
                        "max_results": request_size,
                    }
                )

                if not outcome.retry:
                    logger.error(f"Page fetch abandoned ({outcome.strategy.value}): {fault.summary()}")
                    result.faults.append(fault)
                    return None

                if not await self._sleep_unless_cancelled(outcome.delay_ms, is_cancelled):
                    logger.info("Cancelled during backoff")
                    result.cancelled = True
                    return None

    async def _sleep_unless_cancelled(self, delay_ms: int, is_cancelled: CancelCheck) -> bool:
        """Sleep in short slices. Returns False as soon as cancellation is seen."""
        deadline = time.monotonic() + delay_ms / 1000.0
        slice_s = self.poll_interval_ms / 1000.0

        while True:
            if is_cancelled():
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            await asyncio.sleep(min(slice_s, remaining))
