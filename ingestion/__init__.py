"""
Resilient batch synchronization engine.

This package pulls large result sets from a paginated, rate-limited issue
tracker and imports them into a local store, resumably.

Modules:
    backoff: Exponential backoff delay calculation
    faults: Classification of raised errors into category/severity/strategy
    recovery: Retry policy, degraded mode and recovery strategies
    statistics: Rolling counters, averages and hourly buckets
    interfaces: Collaborator contracts (fetcher, sink, store, observer)
    query_executor: Paginated query execution with cancellable retries
    coordinator: Progressive, checkpointed, pausable batch import
    scheduler: APScheduler integration for automatic syncs

Subpackages:
    fetchers: Remote tracker fetchers (Jira search API)
    stores: Durable stores for checkpoints and deferred work (memory, PostgreSQL)

Architecture:
    ImportCoordinator -> PaginatedQueryExecutor -> RemoteFetcher
                                 |
                        classify_fault + RecoveryService
                                 |
                        StatisticsAggregator

    Results flow back through the coordinator into the item sink, one item
    at a time, with a checkpoint after every chunk.

Usage:
    from ingestion.coordinator import ImportCoordinator
    from ingestion.fetchers.jira_fetcher import JiraSearchFetcher
    from ingestion.stores.memory_store import InMemoryStore
    from schemas.sync import QuerySpec

    coordinator = ImportCoordinator(JiraSearchFetcher(), InMemoryStore())
    summary = await coordinator.start(QuerySpec(query="project = ABC"), 25, sink)
    print(summary.error_report())
"""

__all__ = [
    "backoff",
    "faults",
    "recovery",
    "statistics",
    "interfaces",
    "query_executor",
    "coordinator",
    "scheduler",
]
