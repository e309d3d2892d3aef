"""
Pydantic schemas shared across the sync engine.

Modules:
    sync: Query specifications, pages, checkpoints, deferred operations and
          import summaries
    statistics: Statistics snapshots and hourly aggregates

Usage:
    from schemas.sync import QuerySpec, PageResult, ItemCounts
    from schemas.statistics import StatisticsSnapshot
"""

__all__ = [
    "sync",
    "statistics",
]
