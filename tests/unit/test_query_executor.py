"""
Unit tests for the paginated query executor
"""

import pytest

from core.exceptions import AuthenticationError, NetworkError, RateLimitError, RemoteServerError
from ingestion.query_executor import PaginatedQueryExecutor
from ingestion.recovery import RecoveryService, RetryPolicy
from models.base import FaultCategory
from schemas.sync import QuerySpec


class PageCollector:
    def __init__(self):
        self.calls = []

    async def __call__(self, items, fetched, total):
        self.calls.append(([i["key"] for i in items], fetched, total))


@pytest.fixture
def collector():
    return PageCollector()


class TestPagination:

    @pytest.mark.asyncio
    async def test_fetches_every_page(self, recovery, make_fetcher, issues, spec, collector):
        fetcher = make_fetcher(issues(25))
        executor = PaginatedQueryExecutor(fetcher, recovery, page_size=10)

        result = await executor.run(spec, collector)

        assert result.items_fetched == 25
        assert result.total == 25
        assert result.pages == 3
        assert result.truncated is False
        assert result.cancelled is False
        assert [c[1] for c in collector.calls] == [10, 20, 25]
        assert [call["token"] for call in fetcher.calls] == [None, "10", "20"]

    @pytest.mark.asyncio
    async def test_page_size_is_min_of_spec_and_executor(self, recovery, make_fetcher, issues, collector):
        fetcher = make_fetcher(issues(12))
        executor = PaginatedQueryExecutor(fetcher, recovery, page_size=50)

        await executor.run(QuerySpec(query="project = SYNC", page_size=5), collector)

        assert [call["max_results"] for call in fetcher.calls] == [5, 5, 5]

    @pytest.mark.asyncio
    async def test_cap_truncates(self, recovery, make_fetcher, issues, collector):
        fetcher = make_fetcher(issues(25))
        executor = PaginatedQueryExecutor(fetcher, recovery, page_size=10)

        result = await executor.run(QuerySpec(query="project = SYNC", max_results=15), collector)

        assert result.items_fetched == 15
        assert result.truncated is True
        assert [call["max_results"] for call in fetcher.calls] == [10, 5]

    @pytest.mark.asyncio
    async def test_cap_equal_to_total_is_not_truncated(self, recovery, make_fetcher, issues, collector):
        executor = PaginatedQueryExecutor(make_fetcher(issues(20)), recovery, page_size=10)
        result = await executor.run(QuerySpec(query="project = SYNC", max_results=20), collector)
        assert result.items_fetched == 20
        assert result.truncated is False

    @pytest.mark.asyncio
    async def test_empty_result(self, recovery, make_fetcher, spec, collector):
        result = await PaginatedQueryExecutor(make_fetcher([]), recovery).run(spec, collector)
        assert result.items_fetched == 0
        assert result.truncated is False
        assert collector.calls == [([], 0, 0)]

    @pytest.mark.asyncio
    async def test_api_calls_counted(self, recovery, statistics, make_fetcher, issues, spec, collector):
        await PaginatedQueryExecutor(make_fetcher(issues(25)), recovery, page_size=10).run(spec, collector)
        assert statistics.api_calls_this_hour == 3


class TestRetries:

    @pytest.mark.asyncio
    async def test_retries_then_succeeds_within_ceiling(self, recovery, make_fetcher, issues, spec, collector):
        errors = [NetworkError("reset")] * 4
        fetcher = make_fetcher(issues(5), errors=errors)
        executor = PaginatedQueryExecutor(fetcher, recovery, page_size=10)

        result = await executor.run(spec, collector)

        assert result.truncated is False
        assert result.items_fetched == 5
        assert result.faults == []
        assert len(fetcher.calls) == 5  # network ceiling
        # Every retry re-issues the same request
        assert {(c["token"], c["max_results"]) for c in fetcher.calls} == {(None, 10)}

    @pytest.mark.parametrize("error,ceiling", [
        (NetworkError("reset"), 5),
        (RateLimitError("slow down"), 3),
        (RemoteServerError("down", status_code=503), 3),
    ])
    @pytest.mark.asyncio
    async def test_exhausted_ceiling_queues_and_truncates(
        self, recovery, store, make_fetcher, issues, spec, collector, error, ceiling
    ):
        fetcher = make_fetcher(issues(5), errors=[error] * (ceiling + 2))
        executor = PaginatedQueryExecutor(fetcher, recovery, page_size=10)

        result = await executor.run(spec, collector)

        assert len(fetcher.calls) == ceiling
        assert result.truncated is True
        assert len(result.faults) == 1
        assert len(store.deferred) == 1
        assert store.deferred[0].operation == "fetch_page"
        assert store.deferred[0].attempts == ceiling
        assert collector.calls == []

    @pytest.mark.asyncio
    async def test_auth_failure_stops_immediately(self, recovery, make_fetcher, issues, spec, collector):
        fetcher = make_fetcher(issues(5), errors=[AuthenticationError("denied", status_code=401)])

        result = await PaginatedQueryExecutor(fetcher, recovery).run(spec, collector)

        assert len(fetcher.calls) == 1
        assert result.truncated is True
        assert result.faults[0].category == FaultCategory.AUTH
        assert result.faults[0].requires_intervention

    @pytest.mark.asyncio
    async def test_failure_after_first_page_keeps_collected(self, recovery, make_fetcher, issues, spec, collector):
        fetcher = make_fetcher(issues(25))
        executor = PaginatedQueryExecutor(fetcher, recovery, page_size=10)

        async def on_page(items, fetched, total):
            await collector(items, fetched, total)
            fetcher.errors.append(AuthenticationError("token revoked", status_code=403))

        result = await executor.run(spec, on_page)

        assert result.items_fetched == 10
        assert result.truncated is True
        assert len(collector.calls) == 1


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_between_pages(self, recovery, make_fetcher, issues, spec, collector):
        fetcher = make_fetcher(issues(30))
        executor = PaginatedQueryExecutor(fetcher, recovery, page_size=10)

        result = await executor.run(spec, collector, is_cancelled=lambda: len(collector.calls) >= 2)

        assert result.items_fetched == 20
        assert result.cancelled is True
        assert result.truncated is True
        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_is_immediate(self, store, statistics, make_fetcher, issues, spec, collector):
        slow = RetryPolicy(base_delay_ms=60_000, max_delay_ms=60_000, jitter=False)
        recovery = RecoveryService(store, statistics=statistics, policy=slow)
        fetcher = make_fetcher(issues(5), errors=[NetworkError("reset")])
        executor = PaginatedQueryExecutor(fetcher, recovery, poll_interval_ms=10)

        checks = []

        def is_cancelled():
            checks.append(True)
            return len(checks) > 1  # first check is before the first fetch

        result = await executor.run(spec, collector, is_cancelled=is_cancelled)

        assert result.cancelled is True
        assert result.truncated is True
        assert result.faults == []
        assert len(fetcher.calls) == 1
        assert store.deferred == []


class TestValidate:

    @pytest.mark.asyncio
    async def test_accepted_query(self, recovery, statistics, make_fetcher, issues, spec):
        fetcher = make_fetcher(issues(5))
        assert await PaginatedQueryExecutor(fetcher, recovery).validate(spec) is True
        assert fetcher.calls == [{"token": None, "max_results": 0, "after": None}]
        assert statistics.api_calls_this_hour == 1

    @pytest.mark.asyncio
    async def test_rejected_query(self, recovery, store, make_fetcher, issues, spec):
        fetcher = make_fetcher(issues(5), errors=[AuthenticationError("denied")])
        assert await PaginatedQueryExecutor(fetcher, recovery).validate(spec) is False
        assert store.deferred == []
