"""
Pytest configuration and fixtures
"""

import pytest
from typing import Any, Dict, List, Optional

from ingestion.interfaces import ImportObserver, ItemSink, RemoteFetcher
from ingestion.recovery import DegradedModeState, RecoveryService, RetryPolicy
from ingestion.statistics import StatisticsAggregator
from ingestion.stores.memory_store import InMemoryStore
from models.base import FaultCategory
from schemas.sync import ItemCounts, PageResult, QuerySpec


def make_issues(count: int, prefix: str = "ISSUE") -> List[Dict[str, Any]]:
    """Issues with zero-padded keys so key order matches list order"""
    return [{"key": f"{prefix}-{i:03d}", "fields": {"summary": f"Issue {i}"}} for i in range(1, count + 1)]


class FakeFetcher(RemoteFetcher):
    """
    Serves a fixed list of issues with offset tokens.

    Honours ``resume_after_key`` the way the tracker does, and can be told
    to raise a sequence of errors before answering.
    """

    def __init__(self, issues: List[Dict[str, Any]], errors: Optional[List[Exception]] = None):
        self.issues = issues
        self.errors = list(errors or [])
        self.calls: List[Dict[str, Any]] = []

    async def fetch_page(self, spec: QuerySpec, page_token: Optional[str], max_results: int) -> PageResult:
        self.calls.append({"token": page_token, "max_results": max_results, "after": spec.resume_after_key})
        if self.errors:
            raise self.errors.pop(0)

        matching = self.issues
        if spec.resume_after_key:
            matching = [i for i in matching if i["key"] > spec.resume_after_key]

        start = int(page_token) if page_token else 0
        items = matching[start:start + max_results]
        next_offset = start + len(items)
        is_last = next_offset >= len(matching)
        return PageResult(
            items=items,
            total=len(matching),
            is_last=is_last,
            next_page_token=None if is_last else str(next_offset),
        )


class RecordingSink(ItemSink):
    """Applies items into a dict and records the order they arrived in"""

    def __init__(self, failures: Optional[Dict[str, Exception]] = None):
        self.failures = failures or {}
        self.applied: List[str] = []
        self.store: Dict[str, Dict[str, Any]] = {}

    async def apply(self, item: Dict[str, Any]) -> ItemCounts:
        key = item["key"]
        if key in self.failures:
            raise self.failures[key]
        self.applied.append(key)
        existed = key in self.store
        self.store[key] = item
        return ItemCounts.updated_one() if existed else ItemCounts.created_one()


class RecordingObserver(ImportObserver):

    def __init__(self):
        self.progress: List[tuple] = []
        self.errors: List[tuple] = []

    def on_progress(self, processed, total, phase, detail=None):
        self.progress.append((processed, total, phase, detail))

    def on_error(self, item_key, message):
        self.errors.append((item_key, message))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def statistics():
    return StatisticsAggregator()


@pytest.fixture
def degraded_mode():
    return DegradedModeState()


@pytest.fixture
def fast_policy():
    """Retry policy that never sleeps"""
    return RetryPolicy(
        base_delay_ms=0,
        max_delay_ms=0,
        jitter=False,
        max_attempts={
            FaultCategory.NETWORK: 5,
            FaultCategory.RATE_LIMIT: 3,
            FaultCategory.REMOTE_5XX: 3,
        },
        default_max_attempts=1,
    )


@pytest.fixture
def recovery(store, statistics, fast_policy, degraded_mode):
    return RecoveryService(store, statistics=statistics, policy=fast_policy, degraded_mode=degraded_mode)


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def spec():
    return QuerySpec(query="project = SYNC", page_size=10, max_results=1000)


@pytest.fixture
def issues():
    return make_issues


@pytest.fixture
def make_fetcher():
    return FakeFetcher


@pytest.fixture
def make_sink():
    return RecordingSink
