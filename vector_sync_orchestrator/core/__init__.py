"""
Core package for Vector Sync Orchestrator

Contains the exception taxonomy, typed configuration and the main
orchestrator class.
"""

from .exceptions import (
    VectorSyncError,
    JobNotFoundError,
    DuplicateSubmissionError,
    InvalidStateTransitionError,
    ConfigurationError,
    SchedulerError,
    AdapterError,
    AdapterConnectionError,
    OperationTimeoutError,
    ValidationError,
    DimensionMismatchError,
    WriteRejectedError,
    ConsistencyError,
    RetryExhaustedError,
    ErrorRegistry
)
from .config import (
    OrchestratorConfig,
    SchedulerSettings,
    RetrySettings,
    SyncSettings,
    ConsistencySettings,
    TierSettings,
    GovernorSettings,
    LoggingSettings,
    load_job_definitions
)
from .orchestrator import SyncOrchestrator

__all__ = [
    "SyncOrchestrator",
    "OrchestratorConfig",
    "SchedulerSettings",
    "RetrySettings",
    "SyncSettings",
    "ConsistencySettings",
    "TierSettings",
    "GovernorSettings",
    "LoggingSettings",
    "load_job_definitions",
    "VectorSyncError",
    "JobNotFoundError",
    "DuplicateSubmissionError",
    "InvalidStateTransitionError",
    "ConfigurationError",
    "SchedulerError",
    "AdapterError",
    "AdapterConnectionError",
    "OperationTimeoutError",
    "ValidationError",
    "DimensionMismatchError",
    "WriteRejectedError",
    "ConsistencyError",
    "RetryExhaustedError",
    "ErrorRegistry"
]
