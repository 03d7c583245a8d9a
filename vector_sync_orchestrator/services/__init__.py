"""
Services package for Vector Sync Orchestrator

Contains the scheduler, sync engine, consistency service and resource
governor used by the orchestrator.
"""

from .fault_tolerance import RetryExecutor, RetryPolicy
from .job_registry import JobRegistry, CancellationToken
from .resource_governor import ResourceGovernor, WorkerPool, system_memory_probe
from .sync_engine import BatchSyncEngine
from .consistency_service import ConsistencyService
from .task_scheduler import TaskScheduler, ScheduledEntry

__all__ = [
    "RetryExecutor",
    "RetryPolicy",
    "JobRegistry",
    "CancellationToken",
    "ResourceGovernor",
    "WorkerPool",
    "system_memory_probe",
    "BatchSyncEngine",
    "ConsistencyService",
    "TaskScheduler",
    "ScheduledEntry"
]
