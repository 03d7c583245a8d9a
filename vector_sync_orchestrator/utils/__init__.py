"""
Utilities package for Vector Sync Orchestrator

Logging setup and Prometheus metrics.
"""

from .logger import setup_logger, get_logger, set_log_context, clear_log_context, LoggerContext
from .metrics import SyncMetrics

__all__ = [
    "setup_logger",
    "get_logger",
    "set_log_context",
    "clear_log_context",
    "LoggerContext",
    "SyncMetrics"
]
