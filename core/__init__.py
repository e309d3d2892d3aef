"""
Core utilities and configuration for the issue sync engine.

This package provides foundational components used throughout the engine:

Modules:
    config: Application configuration and environment variable management
    database: Async SQLAlchemy engine and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import get_session_maker
    from core.exceptions import NetworkError, RateLimitError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with get_session_maker()() as session:
        store = PostgresStore(session)
"""

__all__ = [
    "config",
    "database",
    "exceptions",
    "logging",
]
