"""
Batch execution models for Vector Sync Orchestrator

Defines batches, their additive results, and the error records produced for
records that could not be synced.
"""

import uuid
from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from .job import utc_now


class ErrorType(Enum):
    """Classification of a sync failure."""
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    DIMENSION_MISMATCH = "dimension_mismatch"
    UNKNOWN = "unknown"


class SyncStage(Enum):
    """Pipeline stage where a failure happened."""
    EXTRACT = "extract"
    VECTORIZE = "vectorize"
    WRITE = "write"
    COMPENSATE = "compensate"


class ProcessStatus(Enum):
    """Follow-up state of an error record."""
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


@dataclass
class Batch:
    """Ordered chunk of source records written together."""

    job_id: str
    batch_number: int
    records: List[Dict[str, Any]]

    @property
    def size(self) -> int:
        return len(self.records)

    def keys(self, primary_key: str) -> List[Any]:
        return [record.get(primary_key) for record in self.records]


@dataclass
class BatchResult:
    """
    Outcome of one batch, or the sum over a whole run.

    Results add up: ``a + b`` sums record and batch counts and latency and
    concatenates written keys, so ``processed`` always equals
    ``succeeded + failed``.
    """

    succeeded: int = 0
    failed: int = 0
    latency_seconds: float = 0.0
    batches_succeeded: int = 0
    batches_failed: int = 0
    written_keys: List[Any] = field(default_factory=list)
    cancelled: bool = False
    error_message: Optional[str] = None
    high_watermark: Any = None

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    @property
    def batches_total(self) -> int:
        return self.batches_succeeded + self.batches_failed

    @property
    def throughput(self) -> float:
        """Records per second over the accumulated latency."""
        if self.latency_seconds <= 0:
            return 0.0
        return self.processed / self.latency_seconds

    @property
    def all_succeeded(self) -> bool:
        return self.failed == 0 and self.batches_failed == 0 and not self.cancelled

    def __add__(self, other: "BatchResult") -> "BatchResult":
        return BatchResult(
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
            latency_seconds=self.latency_seconds + other.latency_seconds,
            batches_succeeded=self.batches_succeeded + other.batches_succeeded,
            batches_failed=self.batches_failed + other.batches_failed,
            written_keys=self.written_keys + other.written_keys,
            cancelled=self.cancelled or other.cancelled,
            error_message=self.error_message or other.error_message
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "processed": self.processed,
            "latency_seconds": round(self.latency_seconds, 4),
            "throughput": round(self.throughput, 2),
            "batches_succeeded": self.batches_succeeded,
            "batches_failed": self.batches_failed,
            "cancelled": self.cancelled,
            "error_message": self.error_message
        }


@dataclass
class ErrorRecord:
    """A failed group of records kept for later selective retry."""

    job_id: str
    record_ids: List[Any]
    error_type: ErrorType
    sync_stage: SyncStage
    error_message: str
    batch_number: Optional[int] = None
    retry_count: int = 0
    process_status: ProcessStatus = ProcessStatus.PENDING
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    error_time: datetime = field(default_factory=utc_now)
    last_retry_time: Optional[datetime] = None

    def mark_retrying(self):
        self.process_status = ProcessStatus.RETRYING
        self.last_retry_time = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error record to dictionary for the error log."""
        return {
            "error_id": self.error_id,
            "job_id": self.job_id,
            "batch_number": self.batch_number,
            "record_ids": self.record_ids,
            "error_type": self.error_type.value,
            "sync_stage": self.sync_stage.value,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "process_status": self.process_status.value,
            "error_time": self.error_time.isoformat(),
            "last_retry_time": self.last_retry_time.isoformat() if self.last_retry_time else None
        }
