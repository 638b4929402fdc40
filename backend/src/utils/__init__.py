"""
Utility modules for the lifecycle engine backend.

This package contains shared utilities used across the application:
- logging_config: Named loggers under the lifecycle namespace
- periodic: Asyncio runner for cron-style jobs
"""

from backend.src.utils.logging_config import get_logger, init_logging

__all__ = [
    "get_logger",
    "init_logging",
]
