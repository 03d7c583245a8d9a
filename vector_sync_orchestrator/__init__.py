"""
Vector Sync Orchestrator

Keeps vector-store collections in sync with relational tables. Jobs run as
full or incremental syncs under a priority scheduler with bounded
concurrency, write in memory-sized batches with retry and timeout, and can
be verified and repaired afterwards by sampling consistency checks.

Key Features:
- Priority scheduling with FIFO tie-break, pause/resume and cancellation
- Cron, fixed-rate and fixed-interval schedules
- Idempotent batch writes with bounded retry and an error-record log
- Read-only consistency checks and confirmed compensation
- Tiered worker pools and memory-based batch sizing
- Structured logging and Prometheus metrics

Usage:
    from vector_sync_orchestrator import SyncOrchestrator, SyncJob, JobKind, SourceDescriptor

    orchestrator = SyncOrchestrator(source_adapter, vectorizer, vector_store)
    await orchestrator.start()

    job = SyncJob(
        job_id="articles",
        job_name="Articles to vectors",
        kind=JobKind.INCREMENTAL,
        source=SourceDescriptor(
            source_id="cms",
            source_type="postgresql",
            host="localhost",
            database="cms",
            username="sync",
            table="articles",
            increment_column="updated_at",
            text_fields=["title", "body"]
        ),
        target_collection="articles",
        dimension=384
    )
    orchestrator.register_job(job)

    print(await orchestrator.trigger("articles"))
    print(orchestrator.progress("articles"))
"""

__version__ = "1.0.0"
__author__ = "Vector Sync Orchestrator Team"
__license__ = "MIT"

# Core orchestrator and configuration
from .core.orchestrator import SyncOrchestrator
from .core.config import OrchestratorConfig, load_job_definitions

# Data models
from .models.job import SyncJob, JobStatus, JobKind, ScheduleSpec, ScheduleType
from .models.source import SourceDescriptor, SourceType
from .models.execution import BatchResult, ErrorRecord, ErrorType, SyncStage, ProcessStatus
from .models.consistency import ConsistencyCheckResult, CompensationOutcome
from .models.worker import Tier, TierName, MemoryBudget

# Adapters
from .adapters.base import SourceAdapter, Vectorizer, VectorStoreAdapter, CollectionStats
from .adapters.postgres import PostgresSourceAdapter

# Services (for advanced usage)
from .services.task_scheduler import TaskScheduler
from .services.sync_engine import BatchSyncEngine
from .services.consistency_service import ConsistencyService
from .services.resource_governor import ResourceGovernor

# Utilities
from .utils.logger import setup_logger, get_logger
from .utils.metrics import SyncMetrics

# Exceptions
from .core.exceptions import (
    VectorSyncError,
    JobNotFoundError,
    DuplicateSubmissionError,
    ConfigurationError,
    AdapterConnectionError,
    OperationTimeoutError,
    ValidationError,
    DimensionMismatchError,
    ConsistencyError,
    RetryExhaustedError
)

__all__ = [
    # Core
    "SyncOrchestrator",
    "OrchestratorConfig",
    "load_job_definitions",

    # Models
    "SyncJob",
    "JobStatus",
    "JobKind",
    "ScheduleSpec",
    "ScheduleType",
    "SourceDescriptor",
    "SourceType",
    "BatchResult",
    "ErrorRecord",
    "ErrorType",
    "SyncStage",
    "ProcessStatus",
    "ConsistencyCheckResult",
    "CompensationOutcome",
    "Tier",
    "TierName",
    "MemoryBudget",

    # Adapters
    "SourceAdapter",
    "Vectorizer",
    "VectorStoreAdapter",
    "CollectionStats",
    "PostgresSourceAdapter",

    # Services (for advanced usage)
    "TaskScheduler",
    "BatchSyncEngine",
    "ConsistencyService",
    "ResourceGovernor",

    # Utilities
    "setup_logger",
    "get_logger",
    "SyncMetrics",

    # Exceptions
    "VectorSyncError",
    "JobNotFoundError",
    "DuplicateSubmissionError",
    "ConfigurationError",
    "AdapterConnectionError",
    "OperationTimeoutError",
    "ValidationError",
    "DimensionMismatchError",
    "ConsistencyError",
    "RetryExhaustedError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())
