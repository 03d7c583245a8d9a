"""
Data models for Vector Sync Orchestrator

Jobs and schedules, source descriptors, batch results and error records,
consistency results, and worker tier and memory models.
"""

# Worker tier models
from .worker import (
    TierName,
    SaturationPolicy,
    Tier,
    MemoryBudget,
    format_bytes
)

# Source models
from .source import SourceDescriptor, SourceType

# Job models
from .job import (
    SyncJob,
    JobStatus,
    JobKind,
    ScheduleSpec,
    ScheduleType,
    JOB_STATUS_TRANSITIONS,
    can_transition_to,
    get_valid_transitions,
    utc_now
)

# Execution models
from .execution import (
    Batch,
    BatchResult,
    ErrorRecord,
    ErrorType,
    SyncStage,
    ProcessStatus
)

# Consistency models
from .consistency import (
    ConsistencyCheckResult,
    CompensationOutcome,
    DiscrepancyType,
    format_discrepancy
)

__all__ = [
    "TierName",
    "SaturationPolicy",
    "Tier",
    "MemoryBudget",
    "format_bytes",
    "SourceDescriptor",
    "SourceType",
    "SyncJob",
    "JobStatus",
    "JobKind",
    "ScheduleSpec",
    "ScheduleType",
    "JOB_STATUS_TRANSITIONS",
    "can_transition_to",
    "get_valid_transitions",
    "utc_now",
    "Batch",
    "BatchResult",
    "ErrorRecord",
    "ErrorType",
    "SyncStage",
    "ProcessStatus",
    "ConsistencyCheckResult",
    "CompensationOutcome",
    "DiscrepancyType",
    "format_discrepancy"
]
