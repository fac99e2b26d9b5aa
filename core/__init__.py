"""
Core utilities and configuration for the star-schema ETL service.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session factory management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import get_session_maker
    from core.exceptions import SourceUnavailable, LoadConflict
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with get_session_maker()() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "get_session_maker",
    "setup_logging",
    # Exceptions
    "ETLException",
    "RetryableError",
    "NonRetryableError",
    "ExtractionError",
    "SourceUnavailable",
    "SourceSchemaError",
    "SourceAccessDenied",
    "TransformationError",
    "TransformFatal",
    "LoadError",
    "LoadConflict",
    "TargetUnavailable",
    "ConcurrentWriteError",
    "WatermarkError",
    "StaleAdvance",
    "CoordinationError",
    "AlreadyRunning",
    "RunCancelled",
    "RetriesExhausted",
    "StepTimeout",
    "StepFailed",
    "PipelineNotFound",
]
