"""Core module - Logging, errors, monitoring, retry policy and time budgets."""

from marketplace_sync.core.logger import setup_logger

__all__ = ["setup_logger"]
