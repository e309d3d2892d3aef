"""
SQLAlchemy ORM models for database tables.

This package defines the persistence schema the durable store writes to:

Models:
    base: Base declarative class and shared enums (FaultCategory, ImportPhase, ...)
    checkpoint: Resume state for import sessions
    deferred_operation: Operations queued by the recovery service

Database Schema:
    All models inherit from the Base declarative class and use
    PostgreSQL JSONB for query specifications and payloads.

Usage:
    from models.checkpoint import ImportCheckpoint
    from models.base import FaultCategory, ImportPhase
"""

__all__ = [
    "base",
    "checkpoint",
    "deferred_operation",
]
